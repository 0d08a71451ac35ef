#!/usr/bin/env python3
"""
Approximate convex decomposition pipeline.

Pipeline stage
--------------
This module wires the stages together: a mesh source is flattened into one
triangle soup, split recursively into regions, each region is wrapped by a
QuickHull, and the resulting hulls are handed to a collision sink. The
command-line entry point loads a mesh file with `trimesh` and exports the hull
set as one OBJ plus an optional diagnostic JSON.

Input / output
--------------
Input is any mesh `trimesh` can load (STL, OBJ, GLB, ...), or in-memory
sections for library callers. Output is a list of convex point hulls, each
with at least 4 distinct points and an axis-aligned bounding box.

Key parameters
--------------
`hull_count` is the target number of hulls (1-64).
`max_hull_verts` lets small regions stop splitting once the target is met.
`hull_precision` maps onto the maximum recursion depth.
`time_budget` bounds the wall-clock time of one decomposition.

Failure model
-------------
Degenerate regions (too few points, collinear or coplanar) silently
contribute no hull. Only an empty final hull list is reported as failure.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

import numpy as np
import trimesh

from decomp_geometry import EPS, BoundingBox, TriangleMesh
from mesh_flattener import FlattenResult, flatten_any
from result_assembler import CollisionSink, TrimeshHullSink, assemble_collision_hulls
from spatial_decomposer import DecompParams, DecompositionResult, DecompStats, decompose


def load_mesh(mesh_path: Path) -> FlattenResult:
    """
    Load a mesh file and flatten all of its geometry.

    Parameters
    ----------
    mesh_path : Path
        Path to a mesh file readable by `trimesh`.

    Returns
    -------
    FlattenResult
        Flattened mesh, or `INSUFFICIENT_GEOMETRY` for files that are too
        small to decompose.

    Notes
    -----
    Scenes are kept as scenes so every geometry becomes its own section, which
    mirrors how multi-section meshes are flattened in memory.

    Assumptions
    -----------
    The file contains triangle geometry.
    """

    mesh_path = Path(mesh_path)
    if not mesh_path.exists():
        raise FileNotFoundError(f"Mesh file not found: {mesh_path}")

    loaded = trimesh.load(mesh_path)
    if isinstance(loaded, trimesh.Scene):
        if not loaded.geometry:
            raise ValueError(f"No geometry found in {mesh_path}")
    elif not isinstance(loaded, trimesh.Trimesh):
        raise TypeError("Input file does not contain a valid triangular mesh.")
    return flatten_any(loaded)


def generate_convex_hulls(
    source,
    params: DecompParams | None = None,
    sink: CollisionSink | None = None,
) -> DecompositionResult:
    """
    Run the full decomposition on a mesh source.

    Parameters
    ----------
    source : TriangleMesh, trimesh.Trimesh, trimesh.Scene or list of sections
        Mesh to decompose.
    params : DecompParams, optional
        Tuning parameters; defaults to `DecompParams.from_settings()`.
    sink : CollisionSink, optional
        When given, every produced hull is passed to `sink.add_convex`.

    Returns
    -------
    DecompositionResult
        `success` is False with `INSUFFICIENT_GEOMETRY` for meshes that are too
        small and with `CONVERGENCE_FAILURE` when no region produced a hull.
    """

    params = params or DecompParams.from_settings()
    flat = flatten_any(source)
    if not flat.success:
        return DecompositionResult(success=False, error=flat.error, stats=DecompStats())

    result = decompose(flat.mesh, params)
    if result.success and sink is not None:
        assemble_collision_hulls(result.hulls, sink)
    return result


def hull_set_metrics(mesh: TriangleMesh, result: DecompositionResult) -> dict[str, float]:
    """Bounding-volume metrics used to compare decompositions of one mesh."""

    mesh_box = mesh.bounds()
    mesh_volume = mesh.enclosed_volume()
    if not result.hulls:
        return {
            "mesh_volume": mesh_volume,
            "mesh_bbox_volume": mesh_box.volume,
            "hull_bbox_volume": 0.0,
            "bbox_excess": -mesh_volume,
            "hull_points": 0,
            "covers_mesh_bbox": False,
        }
    union = BoundingBox.union(h.bbox for h in result.hulls)
    hull_bbox_volume = float(sum(h.bbox.volume for h in result.hulls))
    return {
        "mesh_volume": mesh_volume,
        "mesh_bbox_volume": mesh_box.volume,
        "hull_bbox_volume": hull_bbox_volume,
        "bbox_excess": hull_bbox_volume - mesh_volume,
        "hull_points": int(sum(h.point_count for h in result.hulls)),
        "covers_mesh_bbox": union.contains_box(mesh_box, tolerance=1e-9),
    }


def write_debug_json(
    json_path: Path,
    source: str,
    params: DecompParams,
    result: DecompositionResult,
) -> None:
    """
    Write parameters, stage counters and per-hull bounds as JSON.

    Parameters
    ----------
    json_path : Path
        Output path.
    source : str
        Label of the decomposed mesh, usually its path.
    params : DecompParams
        Parameters the decomposition ran with.
    result : DecompositionResult
        Decomposition outcome.
    """

    payload = {
        "source": source,
        "success": result.success,
        "error": result.error.value if result.error is not None else None,
        "params": {
            "target_hull_count": params.target_hull_count,
            "max_hull_vertices": params.max_hull_vertices,
            "max_depth": params.max_depth,
            "min_volume_ratio": params.min_volume_ratio,
            "max_hull_points": params.max_hull_points,
            "time_budget_s": params.time_budget_s,
        },
        "stats": result.stats.as_dict(),
        "hulls": [
            {
                "points": hull.point_count,
                "bbox": hull.bbox.as_dict(),
                "bbox_volume": hull.bbox.volume,
            }
            for hull in result.hulls
        ],
    }
    json_path = Path(json_path)
    json_path.parent.mkdir(parents=True, exist_ok=True)
    json_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Define and parse the command-line interface.

    Returns
    -------
    argparse.Namespace
        Parsed command-line arguments; validation is deferred to
        `validate_args`.
    """

    parser = argparse.ArgumentParser(
        description="Approximate a mesh by a small set of convex collision hulls"
    )
    parser.add_argument("--mesh", type=Path, default=None, help="Input mesh file")
    parser.add_argument("--out", type=Path, default=None, help="Output OBJ with all hulls")
    parser.add_argument("--json", type=Path, default=None, help="Optional debug JSON path")
    parser.add_argument("--hull-count", type=int, default=8, help="Target hull count (1-64)")
    parser.add_argument(
        "--max-hull-verts",
        type=int,
        default=16,
        help="Vertex count under which regions stop splitting once the target is met (6-32).",
    )
    parser.add_argument(
        "--hull-precision",
        type=int,
        default=100000,
        help="Precision knob; higher values allow deeper recursion.",
    )
    parser.add_argument(
        "--min-volume-ratio",
        type=float,
        default=0.001,
        help="Drop hulls whose box volume is below this fraction of the mesh box volume.",
    )
    parser.add_argument("--time-budget", type=float, default=30.0, help="Wall-clock budget in seconds")
    parser.add_argument(
        "--smoke-test",
        action="store_true",
        help="Run the built-in unit-cube decomposition check and exit.",
    )
    return parser.parse_args(argv)


def validate_args(args: argparse.Namespace) -> None:
    """
    Validate CLI parameters.

    Notes
    -----
    Hull and vertex counts are not range-checked here because
    `DecompParams.from_settings` clamps them, matching the editor sliders they
    come from.
    """

    if args.smoke_test:
        return
    if args.mesh is None:
        raise ValueError("--mesh is required")
    if args.hull_precision <= 0:
        raise ValueError("--hull-precision must be > 0")
    if args.min_volume_ratio < 0 or args.min_volume_ratio >= 1.0:
        raise ValueError("--min-volume-ratio must be in [0, 1)")
    if args.time_budget <= EPS:
        raise ValueError("--time-budget must be > 0")


def params_from_args(args: argparse.Namespace) -> DecompParams:
    return DecompParams.from_settings(
        hull_count=args.hull_count,
        max_hull_vertices=args.max_hull_verts,
        hull_precision=args.hull_precision,
        min_volume_ratio=float(args.min_volume_ratio),
        time_budget_s=float(args.time_budget),
    )


def run(args: argparse.Namespace) -> int:
    """
    Execute one decomposition for a command-line invocation.

    Returns
    -------
    int
        `0` on success, `1` when the decomposition produced no hull.
    """

    validate_args(args)
    if args.smoke_test:
        unit_cube_decomposition_smoke_test()
        return 0

    params = params_from_args(args)
    flat = load_mesh(args.mesh)
    if not flat.success:
        print(f"[ERROR] Mesh too small to decompose: {args.mesh} ({flat.error.value})", file=sys.stderr)
        return 1

    sink = TrimeshHullSink()
    result = generate_convex_hulls(flat.mesh, params=params, sink=sink)
    stats = result.stats

    print(f"[OK] Mesh loaded: {args.mesh} ({flat.section_count} section(s))")
    print(f"[OK] Vertices: {stats.input_vertices} | Triangles: {stats.input_triangles}")
    print(
        "[OK] Regions: "
        f"{stats.regions} | leaves={stats.leaves} | depth={stats.max_depth_reached}/{params.max_depth}"
    )
    if stats.hull_failures:
        failures = ", ".join(f"{k}={v}" for k, v in sorted(stats.hull_failures.items()))
        print(f"[OK] Regions without hull: {failures}")

    if args.json is not None:
        write_debug_json(args.json, str(args.mesh), params, result)
        print(f"[OK] JSON saved: {args.json}")

    if not result.success:
        print(f"[ERROR] Decomposition produced no hulls ({result.error.value})", file=sys.stderr)
        return 1

    metrics = hull_set_metrics(flat.mesh, result)
    print(f"[OK] Hulls generated: {len(result.hulls)} (target {params.target_hull_count})")
    print(
        f"[OK] Hull box volume: {metrics['hull_bbox_volume']:.6g} | "
        f"mesh box volume: {metrics['mesh_bbox_volume']:.6g}"
    )
    if stats.timed_out:
        print("[OK] Time budget reached; remaining regions were not split further.")
    if args.out is not None:
        sink.export(args.out)
        print(f"[OK] OBJ saved: {args.out}")
    return 0


def unit_cube_decomposition_smoke_test() -> dict[str, int]:
    """
    Run a deterministic decomposition smoke test on a unit cube.

    Returns
    -------
    dict[str, int]
        Summary counters of the single-hull decomposition.

    Notes
    -----
    A regression check for the whole chain, not a formal test suite: one hull
    is requested, so the result must be exactly the eight cube corners.
    """

    cube = trimesh.creation.box(extents=(1.0, 1.0, 1.0))
    params = DecompParams.from_settings(hull_count=1)
    result = generate_convex_hulls(cube, params=params)

    if not result.success:
        raise AssertionError(f"Cube decomposition failed: {result.error}")
    if len(result.hulls) != 1:
        raise AssertionError(f"Expected one hull, got {len(result.hulls)}")

    hull = result.hulls[0]
    corners = {tuple(np.round(v, 6)) for v in np.asarray(cube.vertices)}
    points = {tuple(np.round(p, 6)) for p in hull.points}
    if points != corners:
        raise AssertionError("Cube hull points differ from the cube corners.")

    print(
        "Unit cube decomposition test | "
        f"triangles={result.stats.input_triangles} | hulls={len(result.hulls)} | points={hull.point_count}"
    )
    return {
        "triangles": result.stats.input_triangles,
        "hulls": len(result.hulls),
        "points": hull.point_count,
    }


def main(argv: list[str] | None = None) -> int:
    """
    Command-line entry point.

    Notes
    -----
    Exceptions are converted into a non-zero exit code after a readable stderr
    message, which keeps batch runs going.
    """

    args = parse_args(argv)
    try:
        return run(args)
    except Exception as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

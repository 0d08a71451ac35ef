#!/usr/bin/env python3
"""
Validation pack for the convex decomposition.

Why this script exists:
- Decompose a small, repeatable set of meshes at several hull counts.
- Produce a readable report with objective metrics before tuning parameters.
- Make parameter experiments reproducible with one command.

This script does NOT replace checking the hulls in a physics engine:
it prepares a consistent set of OBJ files and numbers for that step.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path

import numpy as np
import trimesh

from decomp_pipeline import generate_convex_hulls, hull_set_metrics, load_mesh
from mesh_flattener import flatten_any
from result_assembler import TrimeshHullSink
from spatial_decomposer import DecompParams


DEFAULT_HULL_COUNTS = (1, 2, 4, 8)


@dataclass
class CaseSummary:
    model: str
    hull_count: int
    vertices: int
    triangles: int
    success: bool
    error: str
    hulls: int
    hull_points: int
    mesh_bbox_volume: float
    hull_bbox_volume: float
    bbox_excess: float
    covers_mesh_bbox: bool
    regions: int
    leaves: int
    failed_regions: int
    max_depth_reached: int
    elapsed_s: float
    obj_file: str


def l_shape_mesh() -> trimesh.Trimesh:
    """Concave L extrusion: a 1x3 bar joined to a 2x1 foot, both 1 deep."""
    bar = trimesh.creation.box(bounds=((0.0, 0.0, 0.0), (1.0, 3.0, 1.0)))
    foot = trimesh.creation.box(bounds=((1.0, 0.0, 0.0), (3.0, 1.0, 1.0)))
    return trimesh.util.concatenate([bar, foot])


def two_cubes_mesh(gap: float = 10.0) -> trimesh.Trimesh:
    left = trimesh.creation.box(extents=(1.0, 1.0, 1.0))
    right = trimesh.creation.box(extents=(1.0, 1.0, 1.0))
    right.apply_translation((gap, 0.0, 0.0))
    return trimesh.util.concatenate([left, right])


def builtin_models() -> dict[str, trimesh.Trimesh]:
    """
    Reference meshes with known shape, so runs do not depend on local files.
    """
    return {
        "unit_cube": trimesh.creation.box(extents=(1.0, 1.0, 1.0)),
        "two_cubes": two_cubes_mesh(),
        "l_shape": l_shape_mesh(),
        "capsule": trimesh.creation.capsule(height=2.0, radius=0.5),
        "icosphere": trimesh.creation.icosphere(subdivisions=2),
    }


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Generate a repeatable convex decomposition validation pack (OBJ + report)."
    )
    parser.add_argument(
        "--models",
        nargs="*",
        type=Path,
        default=None,
        help="Optional mesh files. If omitted, the built-in reference meshes are used.",
    )
    parser.add_argument(
        "--out-dir",
        type=Path,
        default=Path("out") / "decomp_validation",
        help="Output directory for generated hull files and report.",
    )
    parser.add_argument("--hull-counts", nargs="*", type=int, default=list(DEFAULT_HULL_COUNTS))
    parser.add_argument("--max-hull-verts", type=int, default=16)
    parser.add_argument("--hull-precision", type=int, default=100000)
    parser.add_argument("--time-budget", type=float, default=30.0)
    return parser.parse_args(argv)


def resolve_models(args_models: list[Path] | None) -> dict[str, object]:
    """
    Resolve model sources, falling back to the built-in meshes.
    """
    if not args_models:
        return dict(builtin_models())

    resolved = [p.resolve() for p in args_models]
    missing = [p for p in resolved if not p.exists()]
    if missing:
        raise FileNotFoundError(f"Missing mesh files: {', '.join(str(m) for m in missing)}")
    return {p.name: p for p in resolved}


def run_case(name: str, source, hull_count: int, args: argparse.Namespace, out_dir: Path) -> CaseSummary:
    """
    Decompose one model at one hull count and export the hulls.
    """
    flat = load_mesh(source) if isinstance(source, Path) else flatten_any(source)
    params = DecompParams.from_settings(
        hull_count=hull_count,
        max_hull_vertices=int(args.max_hull_verts),
        hull_precision=int(args.hull_precision),
        time_budget_s=float(args.time_budget),
    )

    obj_name = ""
    if not flat.success:
        return CaseSummary(
            model=name, hull_count=hull_count, vertices=0, triangles=0, success=False,
            error=flat.error.value, hulls=0, hull_points=0, mesh_bbox_volume=0.0,
            hull_bbox_volume=0.0, bbox_excess=0.0, covers_mesh_bbox=False, regions=0,
            leaves=0, failed_regions=0, max_depth_reached=0, elapsed_s=0.0, obj_file=obj_name,
        )

    sink = TrimeshHullSink()
    result = generate_convex_hulls(flat.mesh, params=params, sink=sink)
    metrics = hull_set_metrics(flat.mesh, result)
    if result.success:
        obj_path = out_dir / f"{Path(name).stem}__{hull_count:02d}.obj"
        sink.export(obj_path)
        obj_name = obj_path.name

    stats = result.stats
    return CaseSummary(
        model=name,
        hull_count=hull_count,
        vertices=stats.input_vertices,
        triangles=stats.input_triangles,
        success=result.success,
        error=result.error.value if result.error is not None else "",
        hulls=len(result.hulls),
        hull_points=int(metrics["hull_points"]),
        mesh_bbox_volume=float(metrics["mesh_bbox_volume"]),
        hull_bbox_volume=float(metrics["hull_bbox_volume"]),
        bbox_excess=float(metrics["bbox_excess"]),
        covers_mesh_bbox=bool(metrics["covers_mesh_bbox"]),
        regions=stats.regions,
        leaves=stats.leaves,
        failed_regions=int(sum(stats.hull_failures.values())),
        max_depth_reached=stats.max_depth_reached,
        elapsed_s=float(stats.elapsed_s),
        obj_file=obj_name,
    )


def write_markdown_report(
    report_path: Path,
    cases: list[CaseSummary],
    config: dict[str, object],
) -> None:
    """
    Human-readable report with a physics-engine checklist.
    """
    lines: list[str] = []
    lines.append("# Convex Decomposition Validation Report")
    lines.append("")
    lines.append(f"- Generated: {datetime.now().isoformat(timespec='seconds')}")
    lines.append("- Goal: check hull counts, coverage and box-volume excess before using hulls as collision.")
    lines.append("")
    lines.append("## Configuration")
    lines.append("")
    for k, v in config.items():
        lines.append(f"- `{k}`: `{v}`")
    lines.append("")
    lines.append("## Cases")
    lines.append("")
    lines.append("| Model | Target | Verts | Tris | Hulls | Points | Box Vol (mesh) | Box Vol (hulls) | Covers | Regions | Failed | Depth | Time (s) |")
    lines.append("|---|---:|---:|---:|---:|---:|---:|---:|---:|---:|---:|---:|---:|")
    for c in cases:
        status = "" if c.success else f" ({c.error})"
        lines.append(
            f"| `{c.model}`{status} | {c.hull_count} | {c.vertices} | {c.triangles} | {c.hulls} | {c.hull_points} | "
            f"{c.mesh_bbox_volume:.4g} | {c.hull_bbox_volume:.4g} | {'yes' if c.covers_mesh_bbox else 'no'} | "
            f"{c.regions} | {c.failed_regions} | {c.max_depth_reached} | {c.elapsed_s:.3f} |"
        )
    lines.append("")
    lines.append("## Physics Checklist")
    lines.append("")
    lines.append("1. Import each `.obj` next to its source mesh and check that no visible part is left uncovered.")
    lines.append("2. Concave models should show a lower box-volume excess as the target hull count grows.")
    lines.append("3. `Failed` regions are flat or degenerate pieces; many of them suggest lowering the precision.")
    lines.append("4. Drop a dynamic body onto the hulls and confirm resting contact matches the visual mesh.")
    lines.append("")
    report_path.write_text("\n".join(lines), encoding="utf-8")


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if not args.hull_counts or any(n <= 0 for n in args.hull_counts):
        raise ValueError("--hull-counts must be positive integers")

    models = resolve_models(args.models)
    out_dir = args.out_dir.resolve()
    out_dir.mkdir(parents=True, exist_ok=True)

    cases: list[CaseSummary] = []
    for name, source in models.items():
        for hull_count in args.hull_counts:
            cases.append(run_case(name, source, int(hull_count), args, out_dir))

    report_md = out_dir / "validation_report.md"
    report_json = out_dir / "validation_report.json"

    config = {
        "hull_counts": list(args.hull_counts),
        "max_hull_verts": args.max_hull_verts,
        "hull_precision": args.hull_precision,
        "time_budget": args.time_budget,
    }

    write_markdown_report(report_md, cases, config=config)
    report_json.write_text(
        json.dumps(
            {
                "generated_at": datetime.now().isoformat(timespec="seconds"),
                "config": config,
                "cases": [asdict(c) for c in cases],
                "mean_elapsed_s": float(np.mean([c.elapsed_s for c in cases])) if cases else 0.0,
            },
            indent=2,
        ),
        encoding="utf-8",
    )

    print(f"[OK] Validation pack saved in: {out_dir}")
    print(f"[OK] Markdown report: {report_md.name}")
    print(f"[OK] JSON report: {report_json.name}")
    for c in cases:
        print(
            f" - {c.model:16s} | target={c.hull_count:2d} | hulls={c.hulls:2d} | "
            f"excess={c.bbox_excess:8.4g} | covers={'yes' if c.covers_mesh_bbox else 'no ':3s} | "
            f"t={c.elapsed_s:6.3f} s"
        )
    return 0


def main() -> int:
    return run()


if __name__ == "__main__":
    raise SystemExit(main())

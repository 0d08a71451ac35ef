"""
Hand finished hulls to a collision sink.

A sink accepts one convex point set (at least 4 points) plus its bounding box
and returns a handle of its own choosing. Two sinks ship here: an in-memory
list, and one that cooks each hull into a `trimesh.Trimesh` so the set can be
exported as a single OBJ for physics engines.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Protocol

import numpy as np
import trimesh

from decomp_geometry import BoundingBox, ConvexHull


class CollisionSink(Protocol):
    def add_convex(self, points: np.ndarray, bbox: BoundingBox) -> Any: ...


class ListHullSink:
    """Keeps raw point arrays; the handle is the position in `self.hulls`."""

    def __init__(self) -> None:
        self.hulls: list[np.ndarray] = []
        self.boxes: list[BoundingBox] = []

    def add_convex(self, points: np.ndarray, bbox: BoundingBox) -> int:
        self.hulls.append(np.array(points, dtype=np.float64))
        self.boxes.append(bbox)
        return len(self.hulls) - 1


class TrimeshHullSink:
    """Cooks every hull into a closed convex `trimesh.Trimesh`."""

    def __init__(self) -> None:
        self.meshes: list[trimesh.Trimesh] = []

    def add_convex(self, points: np.ndarray, bbox: BoundingBox) -> trimesh.Trimesh:
        mesh = trimesh.convex.convex_hull(np.array(points, dtype=np.float64))
        self.meshes.append(mesh)
        return mesh

    def combined(self) -> trimesh.Trimesh:
        if not self.meshes:
            raise ValueError("No hulls were added to the sink.")
        return trimesh.util.concatenate(self.meshes)

    def export(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.combined().export(path)
        return path


def assemble_collision_hulls(hulls: list[ConvexHull], sink: CollisionSink) -> list[Any]:
    """
    Pass every hull with at least 4 points to `sink`.

    Returns
    -------
    list
        Sink handles in hull order; skipped hulls contribute nothing.
    """

    handles: list[Any] = []
    for hull in hulls:
        if hull.point_count < 4:
            continue
        handles.append(sink.add_convex(hull.points, hull.bbox))
    return handles

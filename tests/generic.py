"""
Shared fixtures for the decomposition tests.

Usage from a test module:

    try:
        from . import generic as g
    except BaseException:
        import generic as g
"""

import unittest

import numpy as np
import trimesh

from decomp_geometry import TriangleMesh


def to_mesh(mesh: trimesh.Trimesh) -> TriangleMesh:
    return TriangleMesh(np.asarray(mesh.vertices), np.asarray(mesh.faces).reshape(-1))


def unit_cube() -> trimesh.Trimesh:
    return trimesh.creation.box(extents=(1.0, 1.0, 1.0))


def two_cubes(gap: float = 10.0) -> trimesh.Trimesh:
    right = unit_cube()
    right.apply_translation((gap, 0.0, 0.0))
    return trimesh.util.concatenate([unit_cube(), right])


def l_shape() -> trimesh.Trimesh:
    # 1x3 bar plus a 2x1 foot; the bounding box is 3x3x1 but the volume is 5
    bar = trimesh.creation.box(bounds=((0.0, 0.0, 0.0), (1.0, 3.0, 1.0)))
    foot = trimesh.creation.box(bounds=((1.0, 0.0, 0.0), (3.0, 1.0, 1.0)))
    return trimesh.util.concatenate([bar, foot])


def rounded_set(points, decimals: int = 6) -> set:
    return {tuple(float(c) + 0.0 for c in np.round(p, decimals)) for p in np.asarray(points)}


def sphere_with_interior(seed: int = 7, interior: int = 60):
    """Icosphere vertices plus random points well inside the sphere."""
    shell = np.asarray(trimesh.creation.icosphere(subdivisions=2).vertices)
    rng = np.random.default_rng(seed)
    inner = rng.uniform(-0.4, 0.4, size=(interior, 3))
    return shell, np.vstack([shell, inner])


__all__ = [
    "np",
    "trimesh",
    "unittest",
    "to_mesh",
    "unit_cube",
    "two_cubes",
    "l_shape",
    "rounded_set",
    "sphere_with_interior",
]

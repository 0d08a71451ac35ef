"""
Shared geometry records and predicates for convex decomposition.

Every stage of the decomposition (outside-set partition, horizon search and
mesh splitting) classifies points against planes. They all go through
`classify_distances` so the three stages agree on what "on the plane" means.

Coordinate conventions
----------------------
Points are rows of a float64 array of shape `(N, 3)` in mesh units. Triangle
meshes are stored as a flat index array whose consecutive triples are
triangles, matching the layout of the collision sink that consumes the hulls.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

import numpy as np


EPS = 1e-12
# WARNING: scaled by the point-set diagonal (at least 1) before use.
PLANE_EPSILON = 1e-4
# WARNING: hull input points that round to the same grid cell are merged
# before seeding, so detail finer than 1e-4 mesh units is lost.
DEDUP_DECIMALS = 4


class DecompError(enum.Enum):
    """Failure kinds reported by the hull builder, flattener and decomposer."""

    INSUFFICIENT_POINTS = "insufficient_points"
    DEGENERATE_COLLINEAR = "degenerate_collinear"
    DEGENERATE_COPLANAR = "degenerate_coplanar"
    INSUFFICIENT_GEOMETRY = "insufficient_geometry"
    CONVERGENCE_FAILURE = "convergence_failure"


def as_points(points) -> np.ndarray:
    """
    Convert arbitrary point input into a read-only `(N, 3)` float64 array.

    Parameters
    ----------
    points : array-like
        Sequence of 3D coordinates.

    Returns
    -------
    np.ndarray
        Copy of the input with shape `(N, 3)`; the copy is flagged read-only
        because points are immutable once loaded.

    Assumptions
    -----------
    Coordinates are finite.
    """

    arr = np.array(points, dtype=np.float64, copy=True)
    if arr.size == 0:
        arr = np.zeros((0, 3), dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"Expected points of shape (N, 3), got {arr.shape}")
    arr.setflags(write=False)
    return arr


def plane_tolerance(points: np.ndarray) -> float:
    """Plane-side tolerance for a point set, scaled by its bounding diagonal."""

    if len(points) == 0:
        return PLANE_EPSILON
    diagonal = float(np.linalg.norm(np.ptp(points, axis=0)))
    return PLANE_EPSILON * max(1.0, diagonal)


def classify_distances(distances, epsilon: float) -> np.ndarray:
    """
    Classify signed plane distances into sides.

    Parameters
    ----------
    distances : array-like
        Signed distances to a plane, in mesh units.
    epsilon : float
        Half-thickness of the plane. Distances within `[-epsilon, epsilon]`
        count as lying on the plane.

    Returns
    -------
    np.ndarray
        int8 array with `1` for strictly in front, `-1` for strictly behind and
        `0` for on the plane.

    Notes
    -----
    This is the only plane-side rule in the package. The hull builder treats
    `1` as "outside a face", the splitter treats `0` as a tie to be resolved by
    a vertex vote.
    """

    d = np.asarray(distances, dtype=np.float64)
    sides = np.zeros(d.shape, dtype=np.int8)
    sides[d > epsilon] = 1
    sides[d < -epsilon] = -1
    return sides


def is_outside(distance: float, epsilon: float) -> bool:
    """Scalar form of `classify_distances(...) > 0`."""

    return bool(classify_distances(distance, epsilon) > 0)


def dedupe_points(points: np.ndarray, decimals: int = DEDUP_DECIMALS) -> np.ndarray:
    """
    Merge near-duplicate points by rounding them onto a grid.

    Parameters
    ----------
    points : np.ndarray
        Point array of shape `(N, 3)`.
    decimals : int
        Decimal precision of the quantization grid.

    Returns
    -------
    np.ndarray
        The first input point of every occupied grid cell, in input order.
        Coordinates are the original (unrounded) ones.
    """

    if len(points) == 0:
        return np.zeros((0, 3), dtype=np.float64)
    keys = np.round(np.asarray(points, dtype=np.float64), decimals)
    # -0.0 and 0.0 must land in the same cell.
    keys = keys + 0.0
    _unique, first_idx = np.unique(keys, axis=0, return_index=True)
    return np.asarray(points, dtype=np.float64)[np.sort(first_idx)]


@dataclass(frozen=True)
class BoundingBox:
    """
    Axis-aligned bounding box.

    Parameters
    ----------
    minimum : tuple[float, float, float]
        Lower corner in mesh units.
    maximum : tuple[float, float, float]
        Upper corner in mesh units.
    """

    minimum: tuple[float, float, float]
    maximum: tuple[float, float, float]

    @classmethod
    def from_points(cls, points) -> "BoundingBox":
        pts = np.asarray(points, dtype=np.float64)
        if pts.ndim != 2 or len(pts) == 0:
            raise ValueError("Cannot bound an empty point set.")
        lo = pts.min(axis=0)
        hi = pts.max(axis=0)
        return cls(
            minimum=(float(lo[0]), float(lo[1]), float(lo[2])),
            maximum=(float(hi[0]), float(hi[1]), float(hi[2])),
        )

    @classmethod
    def union(cls, boxes) -> "BoundingBox":
        boxes = list(boxes)
        if not boxes:
            raise ValueError("Cannot take the union of zero boxes.")
        lo = np.min([b.minimum for b in boxes], axis=0)
        hi = np.max([b.maximum for b in boxes], axis=0)
        return cls(
            minimum=(float(lo[0]), float(lo[1]), float(lo[2])),
            maximum=(float(hi[0]), float(hi[1]), float(hi[2])),
        )

    @property
    def center(self) -> np.ndarray:
        return 0.5 * (np.asarray(self.minimum) + np.asarray(self.maximum))

    @property
    def size(self) -> np.ndarray:
        return np.asarray(self.maximum) - np.asarray(self.minimum)

    @property
    def volume(self) -> float:
        return float(np.prod(self.size))

    @property
    def longest_axis(self) -> int:
        # Ties prefer x, then y.
        size = self.size
        if size[0] >= size[1] and size[0] >= size[2]:
            return 0
        if size[1] >= size[2]:
            return 1
        return 2

    def expanded(self, margin: float) -> "BoundingBox":
        lo = np.asarray(self.minimum) - margin
        hi = np.asarray(self.maximum) + margin
        return BoundingBox(
            minimum=(float(lo[0]), float(lo[1]), float(lo[2])),
            maximum=(float(hi[0]), float(hi[1]), float(hi[2])),
        )

    def contains(self, points) -> np.ndarray:
        """Boolean mask of the points lying inside the closed box."""

        pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        lo = np.asarray(self.minimum)
        hi = np.asarray(self.maximum)
        return np.all((pts >= lo) & (pts <= hi), axis=1)

    def contains_box(self, other: "BoundingBox", tolerance: float = 0.0) -> bool:
        lo = np.asarray(self.minimum) - tolerance
        hi = np.asarray(self.maximum) + tolerance
        return bool(np.all(lo <= np.asarray(other.minimum)) and np.all(np.asarray(other.maximum) <= hi))

    def as_dict(self) -> dict[str, list[float]]:
        return {"min": list(self.minimum), "max": list(self.maximum)}


@dataclass
class TriangleMesh:
    """
    Flattened triangle soup consumed by the decomposer.

    Parameters
    ----------
    vertices : np.ndarray
        Vertex array of shape `(N, 3)` in mesh units.
    indices : np.ndarray
        Flat index array; consecutive triples are triangles.

    Notes
    -----
    Both arrays are copied and frozen on construction. Invalid layouts are
    programming errors and raise `ValueError`; a mesh that is merely too small
    to decompose is reported by the flattener instead.
    """

    vertices: np.ndarray
    indices: np.ndarray

    def __post_init__(self) -> None:
        self.vertices = as_points(self.vertices)
        idx = np.array(self.indices, dtype=np.int64, copy=True).reshape(-1)
        if idx.size % 3 != 0:
            raise ValueError(f"Index count {idx.size} is not a multiple of 3.")
        if idx.size and (idx.min() < 0 or idx.max() >= len(self.vertices)):
            raise ValueError("Triangle index out of range of the vertex array.")
        idx.setflags(write=False)
        self.indices = idx

    @property
    def triangle_count(self) -> int:
        return int(self.indices.size // 3)

    def triangles(self) -> np.ndarray:
        """Index array reshaped to `(M, 3)`."""

        return self.indices.reshape(-1, 3)

    def bounds(self) -> BoundingBox:
        referenced = np.unique(self.indices)
        return BoundingBox.from_points(self.vertices[referenced])

    def enclosed_volume(self) -> float:
        """
        Volume enclosed by the triangles, by the divergence theorem.

        Only meaningful for closed, consistently wound meshes; the absolute
        value is returned so inward winding does not flip the sign.
        """

        tri = self.vertices[self.triangles()]
        signed = np.einsum("ij,ij->i", tri[:, 0], np.cross(tri[:, 1], tri[:, 2]))
        return float(abs(signed.sum()) / 6.0)


@dataclass(frozen=True, eq=False)
class ConvexHull:
    """
    Finished convex hull snapshot.

    Parameters
    ----------
    points : np.ndarray
        Hull points of shape `(K, 3)` with `K >= 4`, pairwise distinct.
    bbox : BoundingBox
        Bounding box of `points`, derived once.
    """

    points: np.ndarray
    bbox: BoundingBox

    @classmethod
    def from_points(cls, points) -> "ConvexHull":
        pts = as_points(points)
        if len(pts) < 4:
            raise ValueError("A convex hull needs at least 4 points.")
        return cls(points=pts, bbox=BoundingBox.from_points(pts))

    @property
    def point_count(self) -> int:
        return int(len(self.points))


@dataclass
class HullResult:
    """Outcome of one hull build: a hull on success, a failure kind otherwise."""

    success: bool
    hull: ConvexHull | None = None
    error: DecompError | None = None
    stats: dict[str, int] = field(default_factory=dict)

    @classmethod
    def ok(cls, hull: ConvexHull, **stats: int) -> "HullResult":
        return cls(success=True, hull=hull, stats=dict(stats))

    @classmethod
    def failed(cls, error: DecompError, **stats: int) -> "HullResult":
        return cls(success=False, error=error, stats=dict(stats))

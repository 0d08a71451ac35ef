"""
Recursive bounding-box bisection of a triangle mesh into convex hulls.

Pipeline stage
--------------
Takes the flattened `TriangleMesh`, splits its triangles by the center plane
of the longest bounding-box axis until a leaf condition holds, and runs
QuickHull on every leaf. A post-processing pass prunes tiny hulls, bisects the
largest hulls when the count is below target and truncates when above it.

Key parameters
--------------
`target_hull_count` bounds the output size and is also handed down the
recursion as a per-region hull budget. `max_depth` is normally derived from
the precision knob through `DecompParams.from_settings`.
"""

from __future__ import annotations

import math
import time
from dataclasses import asdict, dataclass, field

import numpy as np

from decomp_geometry import (
    EPS,
    BoundingBox,
    ConvexHull,
    DecompError,
    TriangleMesh,
    classify_distances,
    plane_tolerance,
)
from quickhull import MAX_HULL_POINTS, build_convex_hull


HULL_COUNT_RANGE = (1, 64)
HULL_VERTEX_RANGE = (6, 32)
DEPTH_RANGE = (5, 15)
# WARNING: bounding-box volume stands in for true hull volume when ranking
# hulls; it overestimates thin diagonal pieces.
DEFAULT_MIN_VOLUME_RATIO = 0.001


def clamp(value, low, high):
    return max(low, min(high, value))


@dataclass
class DecompParams:
    """
    Tuning parameters for one decomposition.

    Parameters
    ----------
    target_hull_count : int
        Desired number of hulls, in `[1, 64]`.
    max_hull_vertices : int
        Vertex count under which a region may stop splitting once the target
        is met, in `[6, 32]`.
    max_depth : int
        Maximum recursion depth.
    min_volume_ratio : float
        Hulls whose bounding-box volume is below this fraction of the mesh
        bounding-box volume are dropped, unless that would drop everything.
    max_hull_points : int or None
        Simplification cap applied to every hull.
    leaf_triangle_count : int
        Regions with at most this many triangles are always leaves.
    min_split_ratio : float
        A split leaving less than this share of triangles on one side is
        recomputed once from area-weighted side centroids.
    bounds_margin : float
        Expansion of a region's bounding box when filtering leaf vertices.
    time_budget_s : float or None
        Wall-clock budget in seconds; once spent, remaining regions become
        leaves and pending hull builds are abandoned.
    """

    target_hull_count: int = 8
    max_hull_vertices: int = 16
    max_depth: int = 10
    min_volume_ratio: float = DEFAULT_MIN_VOLUME_RATIO
    max_hull_points: int | None = MAX_HULL_POINTS
    leaf_triangle_count: int = 3
    min_split_ratio: float = 0.1
    bounds_margin: float = 1e-4
    time_budget_s: float | None = 30.0

    @classmethod
    def from_settings(
        cls,
        hull_count: int = 8,
        max_hull_vertices: int = 16,
        hull_precision: int = 100000,
        **overrides,
    ) -> "DecompParams":
        """
        Map user-facing knobs onto decomposition parameters.

        Notes
        -----
        Counts are clamped into range rather than rejected. The precision knob
        only controls depth: `floor(log2(precision / 3000)) + 5`, clamped to
        `[5, 15]`, so the default precision of 100000 gives depth 10.
        """

        if hull_precision <= 0:
            raise ValueError("hull_precision must be > 0")
        depth = math.floor(math.log2(float(hull_precision) / 3000.0)) + 5
        params = cls(
            target_hull_count=int(clamp(int(hull_count), *HULL_COUNT_RANGE)),
            max_hull_vertices=int(clamp(int(max_hull_vertices), *HULL_VERTEX_RANGE)),
            max_depth=int(clamp(depth, *DEPTH_RANGE)),
            **overrides,
        )
        params.validate()
        return params

    def validate(self) -> None:
        lo, hi = HULL_COUNT_RANGE
        if not lo <= self.target_hull_count <= hi:
            raise ValueError(f"target_hull_count must be in [{lo}, {hi}]")
        lo, hi = HULL_VERTEX_RANGE
        if not lo <= self.max_hull_vertices <= hi:
            raise ValueError(f"max_hull_vertices must be in [{lo}, {hi}]")
        if not 0 <= self.max_depth <= 64:
            raise ValueError("max_depth must be in [0, 64]")
        if not 0.0 <= self.min_volume_ratio < 1.0:
            raise ValueError("min_volume_ratio must be in [0, 1)")
        if self.max_hull_points is not None and self.max_hull_points < 4:
            raise ValueError("max_hull_points must be >= 4")
        if self.leaf_triangle_count < 1:
            raise ValueError("leaf_triangle_count must be >= 1")
        if not 0.0 <= self.min_split_ratio < 0.5:
            raise ValueError("min_split_ratio must be in [0, 0.5)")
        if self.bounds_margin < 0:
            raise ValueError("bounds_margin must be >= 0")
        if self.time_budget_s is not None and self.time_budget_s <= 0:
            raise ValueError("time_budget_s must be > 0")


@dataclass
class DecompStats:
    """Per-stage counters exposed for tuning `DecompParams`."""

    input_vertices: int = 0
    input_triangles: int = 0
    regions: int = 0
    leaves: int = 0
    rebalanced_splits: int = 0
    max_depth_reached: int = 0
    hulls_built: int = 0
    hull_failures: dict[str, int] = field(default_factory=dict)
    pruned: int = 0
    post_splits: int = 0
    truncated: int = 0
    final_hulls: int = 0
    timed_out: bool = False
    elapsed_s: float = 0.0

    def record_failure(self, kind: DecompError) -> None:
        self.hull_failures[kind.value] = self.hull_failures.get(kind.value, 0) + 1

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class DecompositionResult:
    """Decomposition outcome: `success` is False only when no hull survived."""

    success: bool
    hulls: list[ConvexHull] = field(default_factory=list)
    error: DecompError | None = None
    stats: DecompStats = field(default_factory=DecompStats)


def allot_budget(budget: int, left_count: int, right_count: int) -> tuple[int, int]:
    """Share a region's hull budget between its two halves by triangle count."""

    total = left_count + right_count
    if budget <= 1 or total == 0:
        return budget, budget
    left = int(math.floor(budget * left_count / total + 0.5))
    left = clamp(left, 1, budget - 1)
    return left, budget - left


class SpatialDecomposer:
    """
    Decomposition context for one mesh.

    Parameters
    ----------
    mesh : TriangleMesh
        Flattened input mesh.
    params : DecompParams
        Validated tuning parameters.

    Notes
    -----
    Triangle centroids and areas are precomputed once; recursive calls only
    pass index arrays around. Each leaf builds its hull in a fresh
    `HullBuilder`, so no face state is shared between sibling regions.
    """

    def __init__(self, mesh: TriangleMesh, params: DecompParams) -> None:
        params.validate()
        self.mesh = mesh
        self.params = params
        self.triangles = mesh.triangles()
        corners = mesh.vertices[self.triangles]
        self.centroids = corners.mean(axis=1)
        self.areas = 0.5 * np.linalg.norm(
            np.cross(corners[:, 1] - corners[:, 0], corners[:, 2] - corners[:, 0]),
            axis=1,
        )
        self.epsilon = plane_tolerance(mesh.vertices)
        self.hulls: list[ConvexHull] = []
        self.stats = DecompStats(
            input_vertices=len(mesh.vertices),
            input_triangles=mesh.triangle_count,
        )
        self.deadline: float | None = None

    def _out_of_time(self) -> bool:
        if self.deadline is not None and time.perf_counter() > self.deadline:
            self.stats.timed_out = True
            return True
        return False

    # ------------------------------------------------------------------
    # splitting
    # ------------------------------------------------------------------
    def split_by_plane(self, tri_ids: np.ndarray, axis: int, position: float) -> tuple[np.ndarray, np.ndarray]:
        """
        Partition triangles by an axis-aligned plane.

        Triangles go by the side of their centroid. A centroid on the plane is
        resolved by vote: the triangle goes left when at least two of its
        vertices lie strictly on the negative side.
        """

        sides = classify_distances(self.centroids[tri_ids, axis] - position, self.epsilon)
        vertex_coords = self.mesh.vertices[self.triangles[tri_ids]][:, :, axis]
        votes = np.sum(classify_distances(vertex_coords - position, self.epsilon) < 0, axis=1)
        goes_left = (sides < 0) | ((sides == 0) & (votes >= 2))
        return tri_ids[goes_left], tri_ids[~goes_left]

    def weighted_centroid(self, tri_ids: np.ndarray) -> np.ndarray:
        weights = self.areas[tri_ids]
        total = float(np.sum(weights))
        if total <= EPS:
            return self.centroids[tri_ids].mean(axis=0)
        return (weights[:, None] * self.centroids[tri_ids]).sum(axis=0) / total

    def split_region(self, tri_ids: np.ndarray, vertex_ids: np.ndarray) -> tuple[np.ndarray, np.ndarray] | None:
        """
        Bisect a region along the longest axis of its bounding box.

        Returns
        -------
        tuple[np.ndarray, np.ndarray] or None
            Left and right triangle ids, or None when one side stays empty.

        Notes
        -----
        An unbalanced first split (either side below `min_split_ratio`) moves
        the plane to the midpoint of the two sides' area-weighted centroids and
        splits once more; that second split is committed as is.
        """

        bounds = BoundingBox.from_points(self.mesh.vertices[vertex_ids])
        axis = bounds.longest_axis
        position = float(bounds.center[axis])
        left, right = self.split_by_plane(tri_ids, axis, position)

        minimum = self.params.min_split_ratio * tri_ids.size
        if (left.size < minimum or right.size < minimum) and left.size and right.size:
            self.stats.rebalanced_splits += 1
            position = 0.5 * float(self.weighted_centroid(left)[axis] + self.weighted_centroid(right)[axis])
            left, right = self.split_by_plane(tri_ids, axis, position)

        if left.size == 0 or right.size == 0:
            return None
        return left, right

    # ------------------------------------------------------------------
    # recursion
    # ------------------------------------------------------------------
    def _emit_leaf(self, tri_ids: np.ndarray, vertex_ids: np.ndarray) -> None:
        self.stats.leaves += 1
        region_points = self.mesh.vertices[self.triangles[tri_ids].reshape(-1)]
        bounds = BoundingBox.from_points(region_points).expanded(self.params.bounds_margin)
        points = self.mesh.vertices[vertex_ids]
        points = points[bounds.contains(points)]

        result = build_convex_hull(points, max_points=self.params.max_hull_points, deadline=self.deadline)
        if result.success:
            self.hulls.append(result.hull)
            self.stats.hulls_built += 1
        else:
            self.stats.record_failure(result.error)

    def decompose_region(self, tri_ids: np.ndarray, depth: int, budget: int) -> None:
        if tri_ids.size == 0:
            return
        self.stats.regions += 1
        self.stats.max_depth_reached = max(self.stats.max_depth_reached, depth)
        params = self.params
        vertex_ids = np.unique(self.triangles[tri_ids])

        is_leaf = (
            tri_ids.size <= params.leaf_triangle_count
            or depth >= params.max_depth
            or (vertex_ids.size <= params.max_hull_vertices and len(self.hulls) >= params.target_hull_count)
            or budget <= 1
            or self._out_of_time()
        )
        if is_leaf:
            self._emit_leaf(tri_ids, vertex_ids)
            return

        halves = self.split_region(tri_ids, vertex_ids)
        if halves is None:
            self._emit_leaf(tri_ids, vertex_ids)
            return

        left, right = halves
        left_budget, right_budget = allot_budget(budget, left.size, right.size)
        self.decompose_region(left, depth + 1, left_budget)
        self.decompose_region(right, depth + 1, right_budget)

    # ------------------------------------------------------------------
    # post-processing
    # ------------------------------------------------------------------
    def bisect_hull(self, hull: ConvexHull) -> tuple[ConvexHull, ConvexHull] | None:
        """Split a hull's points at its own longest-axis center plane and rebuild both halves."""

        axis = hull.bbox.longest_axis
        center = float(hull.bbox.center[axis])
        sides = classify_distances(hull.points[:, axis] - center, self.epsilon)
        left_points = hull.points[sides < 0]
        right_points = hull.points[sides >= 0]
        if len(left_points) < 4 or len(right_points) < 4:
            return None
        left = build_convex_hull(left_points, max_points=self.params.max_hull_points, deadline=self.deadline)
        right = build_convex_hull(right_points, max_points=self.params.max_hull_points, deadline=self.deadline)
        if not (left.success and right.success):
            return None
        return left.hull, right.hull

    def prune_small(self, hulls: list[ConvexHull]) -> list[ConvexHull]:
        threshold = self.params.min_volume_ratio * self.mesh.bounds().volume
        kept = [h for h in hulls if h.bbox.volume >= threshold]
        if not kept:
            return hulls
        self.stats.pruned = len(hulls) - len(kept)
        return kept

    def split_largest(self, hulls: list[ConvexHull]) -> list[ConvexHull]:
        target = self.params.target_hull_count
        ordered = sorted(hulls, key=lambda h: h.bbox.volume, reverse=True)
        survivors: list[ConvexHull] = []
        produced: list[ConvexHull] = []
        count = len(ordered)
        for hull in ordered:
            halves = self.bisect_hull(hull) if count < target else None
            if halves is None:
                survivors.append(hull)
                continue
            produced.extend(halves)
            count += 1
            self.stats.post_splits += 1
        return survivors + produced

    def post_process(self, hulls: list[ConvexHull]) -> list[ConvexHull]:
        target = self.params.target_hull_count
        hulls = self.prune_small(hulls)
        if 0 < len(hulls) < target:
            hulls = self.split_largest(hulls)
        if len(hulls) > target:
            self.stats.truncated = len(hulls) - target
            hulls = sorted(hulls, key=lambda h: h.bbox.volume, reverse=True)[:target]
        return hulls

    def run(self) -> DecompositionResult:
        start = time.perf_counter()
        if self.params.time_budget_s is not None:
            self.deadline = start + self.params.time_budget_s

        if self.mesh.triangle_count == 0 or len(self.mesh.vertices) < 4:
            self.stats.elapsed_s = time.perf_counter() - start
            return DecompositionResult(success=False, error=DecompError.INSUFFICIENT_GEOMETRY, stats=self.stats)

        all_triangles = np.arange(self.mesh.triangle_count, dtype=np.int64)
        self.decompose_region(all_triangles, depth=0, budget=self.params.target_hull_count)
        hulls = self.post_process(self.hulls)

        self.stats.final_hulls = len(hulls)
        self.stats.elapsed_s = time.perf_counter() - start
        if not hulls:
            return DecompositionResult(success=False, error=DecompError.CONVERGENCE_FAILURE, stats=self.stats)
        return DecompositionResult(success=True, hulls=hulls, stats=self.stats)


def decompose(mesh: TriangleMesh, params: DecompParams | None = None) -> DecompositionResult:
    """Decompose `mesh` into convex hulls; see `SpatialDecomposer`."""

    return SpatialDecomposer(mesh, params or DecompParams()).run()

"""
Incremental 3D convex hull (QuickHull) over a face-adjacency graph.

Pipeline stage
--------------
Builds one convex hull per spatial region of the decomposition. Degenerate
input is reported as a `DecompError` inside a `HullResult`; the decomposer
absorbs those failures region by region.

Face graph
----------
Faces live in an arena (`HullBuilder.faces`) and reference each other by
integer handle. Removing a face only tombstones it, so handles held during the
horizon rebuild never dangle. Edge slot `k` of a face joins vertex `k` to
vertex `k + 1` (mod 3); `neighbors[k]` is the face across that edge.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field

import numpy as np

from decomp_geometry import (
    EPS,
    ConvexHull,
    DecompError,
    HullResult,
    classify_distances,
    dedupe_points,
    is_outside,
    plane_tolerance,
)


# WARNING: keeping only the points farthest from the centroid is a lossy
# approximation; the truncated set is not guaranteed to span the original hull.
MAX_HULL_POINTS = 32


@dataclass
class Face:
    """
    Triangular hull face stored in the builder arena.

    Parameters
    ----------
    vertices : tuple[int, int, int]
        Point indices in outward (counter-clockwise) winding.
    normal : np.ndarray
        Unit outward normal, or zeros for a sliver face.
    offset : float
        Plane offset so that `normal . p + offset` is the signed distance.
    neighbors : list[int]
        Handle of the face across each edge slot, `-1` while unwired.
    outside : list[int]
        Indices of unassigned points strictly in front of the plane.
    """

    vertices: tuple[int, int, int]
    normal: np.ndarray
    offset: float
    neighbors: list[int] = field(default_factory=lambda: [-1, -1, -1])
    outside: list[int] = field(default_factory=list)
    visited: bool = False
    alive: bool = True

    def edge(self, slot: int) -> tuple[int, int]:
        return self.vertices[slot], self.vertices[(slot + 1) % 3]

    def slot_of_edge(self, a: int, b: int) -> int:
        for slot in range(3):
            if self.edge(slot) == (a, b):
                return slot
        return -1


@dataclass
class BoundaryEdge:
    """Horizon edge between a visible face and its invisible neighbor."""

    v0: int
    v1: int
    neighbor: int


class HullBuildError(Exception):
    """Internal signal carrying a failure kind out of the build loop."""

    def __init__(self, kind: DecompError, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind


class HullBuilder:
    """
    Per-invocation QuickHull context.

    Parameters
    ----------
    points : np.ndarray
        Deduplicated point array of shape `(N, 3)`.
    epsilon : float, optional
        Plane half-thickness. Defaults to `plane_tolerance(points)`.
    max_iterations : int, optional
        Hard cap on point insertions. Every insertion consumes one point, so
        the default of `N` can only be hit by a bookkeeping fault.
    deadline : float, optional
        `time.perf_counter()` value after which the build gives up.

    Notes
    -----
    A builder owns its arena; it is never shared between regions.
    """

    def __init__(
        self,
        points: np.ndarray,
        epsilon: float | None = None,
        max_iterations: int | None = None,
        deadline: float | None = None,
    ) -> None:
        self.points = np.asarray(points, dtype=np.float64)
        self.epsilon = plane_tolerance(self.points) if epsilon is None else float(epsilon)
        self.max_iterations = len(self.points) + 1 if max_iterations is None else int(max_iterations)
        self.deadline = deadline
        self.faces: list[Face] = []
        self.pending: deque[int] = deque()
        self.iterations = 0
        self._seed: tuple[int, ...] = ()

    # ------------------------------------------------------------------
    # arena
    # ------------------------------------------------------------------
    def _new_face(self, a: int, b: int, c: int) -> int:
        p0, p1, p2 = self.points[a], self.points[b], self.points[c]
        normal = np.cross(p1 - p0, p2 - p0)
        length = float(np.linalg.norm(normal))
        if length > EPS:
            normal = normal / length
            offset = -float(np.dot(normal, p0))
        else:
            normal = np.zeros(3, dtype=np.float64)
            offset = 0.0
        self.faces.append(Face(vertices=(a, b, c), normal=normal, offset=offset))
        return len(self.faces) - 1

    def _remove_face(self, handle: int) -> None:
        face = self.faces[handle]
        face.alive = False
        face.outside = []

    def live_faces(self) -> list[int]:
        return [h for h, f in enumerate(self.faces) if f.alive]

    def distances(self, handle: int, point_ids) -> np.ndarray:
        face = self.faces[handle]
        return self.points[np.asarray(point_ids, dtype=np.int64)] @ face.normal + face.offset

    def _is_visible(self, handle: int, point_id: int) -> bool:
        return is_outside(float(self.distances(handle, [point_id])[0]), self.epsilon)

    def _link(self, handles: list[int]) -> None:
        """Wire neighbors among `handles` by matching opposite directed edges."""

        by_edge: dict[tuple[int, int], tuple[int, int]] = {}
        for h in handles:
            for slot in range(3):
                by_edge[self.faces[h].edge(slot)] = (h, slot)
        for h in handles:
            for slot in range(3):
                a, b = self.faces[h].edge(slot)
                twin = by_edge.get((b, a))
                if twin is not None:
                    self.faces[h].neighbors[slot] = twin[0]

    def _check_budget(self) -> None:
        self.iterations += 1
        if self.iterations > self.max_iterations:
            raise HullBuildError(DecompError.CONVERGENCE_FAILURE, "iteration budget exhausted")
        if self.deadline is not None and time.perf_counter() > self.deadline:
            raise HullBuildError(DecompError.CONVERGENCE_FAILURE, "time budget exhausted")

    # ------------------------------------------------------------------
    # seeding
    # ------------------------------------------------------------------
    def _non_collinear_triple(self) -> tuple[int, int, int]:
        pts = self.points
        i0 = 0
        i1 = int(np.argmax(np.linalg.norm(pts - pts[i0], axis=1)))
        direction = pts[i1] - pts[i0]
        length = float(np.linalg.norm(direction))
        if length <= self.epsilon:
            raise HullBuildError(DecompError.DEGENERATE_COLLINEAR)
        line_dist = np.linalg.norm(np.cross(direction, pts - pts[i0]), axis=1) / length
        i2 = int(np.argmax(line_dist))
        if line_dist[i2] <= self.epsilon:
            raise HullBuildError(DecompError.DEGENERATE_COLLINEAR)
        return i0, i1, i2

    def _is_collinear(self, a: int, b: int, c: int) -> bool:
        if len({a, b, c}) < 3:
            return True
        pa, pb, pc = self.points[a], self.points[b], self.points[c]
        base = float(np.linalg.norm(pb - pa))
        if base <= self.epsilon:
            return True
        return float(np.linalg.norm(np.cross(pb - pa, pc - pa))) / base <= self.epsilon

    def _seed_tetrahedron(self) -> list[int]:
        """
        Create the initial four faces.

        Returns
        -------
        list[int]
            Handles of the four tetrahedron faces.

        Notes
        -----
        The base is taken from extremal x/y points when those are not
        collinear, otherwise from the collinear scan. The apex is the point
        farthest above the base plane; when nothing lies above it the base is
        flipped once and the farthest point below is used instead.
        """

        fallback = self._non_collinear_triple()
        pts = self.points
        min_x = int(np.argmin(pts[:, 0]))
        max_x = int(np.argmax(pts[:, 0]))
        min_y = int(np.argmin(pts[:, 1]))
        if self._is_collinear(min_x, max_x, min_y):
            a, b, c = fallback
        else:
            a, b, c = min_x, max_x, min_y

        normal = np.cross(pts[b] - pts[a], pts[c] - pts[a])
        normal = normal / np.linalg.norm(normal)
        dist = (pts - pts[a]) @ normal
        dist[[a, b, c]] = 0.0
        sides = classify_distances(dist, self.epsilon)

        if np.any(sides > 0):
            apex = int(np.argmax(dist))
        elif np.any(sides < 0):
            a, c = c, a
            apex = int(np.argmin(dist))
        else:
            raise HullBuildError(DecompError.DEGENERATE_COPLANAR)

        # apex lies in front of (a, b, c); the base faces away from it
        handles = [
            self._new_face(a, c, b),
            self._new_face(a, b, apex),
            self._new_face(b, c, apex),
            self._new_face(c, a, apex),
        ]
        self._link(handles)
        self._seed = (a, b, c, apex)
        return handles

    # ------------------------------------------------------------------
    # outside sets
    # ------------------------------------------------------------------
    def _partition(self, new_faces: list[int], pool: np.ndarray) -> None:
        remaining = np.asarray(pool, dtype=np.int64)
        for handle in new_faces:
            face = self.faces[handle]
            if remaining.size == 0:
                break
            sides = classify_distances(self.distances(handle, remaining), self.epsilon)
            mask = sides > 0
            if np.any(mask):
                face.outside = remaining[mask].tolist()
                remaining = remaining[~mask]
        for handle in new_faces:
            if self.faces[handle].outside:
                self.pending.append(handle)

    def _furthest_point(self, handle: int) -> int:
        outside = self.faces[handle].outside
        dist = self.distances(handle, outside)
        return int(outside[int(np.argmax(dist))])

    # ------------------------------------------------------------------
    # horizon
    # ------------------------------------------------------------------
    def _find_horizon(self, eye: int, start: int) -> tuple[list[int], list[BoundaryEdge]]:
        """
        Flood-fill the faces visible from `eye` and collect the horizon.

        Returns
        -------
        tuple[list[int], list[BoundaryEdge]]
            Visible face handles and the boundary edges chained into one
            closed loop (`edges[i].v1 == edges[i + 1].v0`).
        """

        visible: list[int] = [start]
        boundary: list[BoundaryEdge] = []
        self.faces[start].visited = True
        touched: list[int] = [start]
        stack = [start]
        while stack:
            current = stack.pop()
            face = self.faces[current]
            for slot in range(3):
                nbr = face.neighbors[slot]
                if nbr < 0 or not self.faces[nbr].alive:
                    raise HullBuildError(DecompError.CONVERGENCE_FAILURE, "face graph is not closed")
                neighbor = self.faces[nbr]
                if neighbor.visited:
                    continue
                if self._is_visible(nbr, eye):
                    neighbor.visited = True
                    touched.append(nbr)
                    visible.append(nbr)
                    stack.append(nbr)
                else:
                    a, b = face.edge(slot)
                    boundary.append(BoundaryEdge(v0=a, v1=b, neighbor=nbr))

        for handle in touched:
            self.faces[handle].visited = False

        return visible, self._chain_loop(boundary)

    @staticmethod
    def _chain_loop(edges: list[BoundaryEdge]) -> list[BoundaryEdge]:
        if len(edges) < 3:
            raise HullBuildError(DecompError.CONVERGENCE_FAILURE, "horizon has fewer than 3 edges")
        by_start: dict[int, BoundaryEdge] = {}
        for edge in edges:
            if edge.v0 in by_start:
                raise HullBuildError(DecompError.CONVERGENCE_FAILURE, "horizon is not a simple loop")
            by_start[edge.v0] = edge
        ordered = [edges[0]]
        while len(ordered) < len(edges):
            nxt = by_start.get(ordered[-1].v1)
            if nxt is None or nxt is edges[0]:
                raise HullBuildError(DecompError.CONVERGENCE_FAILURE, "horizon does not close")
            ordered.append(nxt)
        if ordered[-1].v1 != ordered[0].v0:
            raise HullBuildError(DecompError.CONVERGENCE_FAILURE, "horizon does not close")
        return ordered

    def _rebuild(self, eye: int, horizon: list[BoundaryEdge]) -> list[int]:
        new_faces = [self._new_face(eye, edge.v0, edge.v1) for edge in horizon]
        count = len(new_faces)
        for i, (handle, edge) in enumerate(zip(new_faces, horizon)):
            face = self.faces[handle]
            face.neighbors[0] = new_faces[(i - 1) % count]
            face.neighbors[1] = edge.neighbor
            face.neighbors[2] = new_faces[(i + 1) % count]
            outer = self.faces[edge.neighbor]
            slot = outer.slot_of_edge(edge.v1, edge.v0)
            if slot < 0:
                raise HullBuildError(DecompError.CONVERGENCE_FAILURE, "horizon neighbor lost its edge")
            outer.neighbors[slot] = handle
        return new_faces

    # ------------------------------------------------------------------
    # driver
    # ------------------------------------------------------------------
    def build(self) -> list[int]:
        """
        Run QuickHull to completion.

        Returns
        -------
        list[int]
            Handles of the live hull faces.

        Raises
        ------
        HullBuildError
            For degenerate input or an exhausted budget.
        """

        if len(self.points) < 4:
            raise HullBuildError(DecompError.INSUFFICIENT_POINTS)

        seed_faces = self._seed_tetrahedron()
        pool = np.setdiff1d(np.arange(len(self.points)), np.asarray(self._seed), assume_unique=False)
        self._partition(seed_faces, pool)

        while self.pending:
            handle = self.pending.popleft()
            face = self.faces[handle]
            if not face.alive or not face.outside:
                continue
            self._check_budget()

            eye = self._furthest_point(handle)
            visible, horizon = self._find_horizon(eye, handle)

            pooled: list[int] = []
            for v in visible:
                pooled.extend(self.faces[v].outside)
            pooled = [p for p in pooled if p != eye]

            new_faces = self._rebuild(eye, horizon)
            for v in visible:
                self._remove_face(v)
            self._partition(new_faces, np.asarray(pooled, dtype=np.int64))

        return self.collect_faces()

    def collect_faces(self) -> list[int]:
        """Traverse the neighbor graph from any live face and return every face reached."""

        live = self.live_faces()
        if not live:
            return []
        start = live[0]
        seen = {start}
        stack = [start]
        order: list[int] = []
        while stack:
            current = stack.pop()
            order.append(current)
            for nbr in self.faces[current].neighbors:
                if nbr >= 0 and nbr not in seen and self.faces[nbr].alive:
                    seen.add(nbr)
                    stack.append(nbr)
        return order

    def hull_faces(self) -> np.ndarray:
        """Live faces as an `(F, 3)` index array into `self.points`."""

        return np.asarray([self.faces[h].vertices for h in self.collect_faces()], dtype=np.int64).reshape(-1, 3)

    def hull_vertex_ids(self) -> np.ndarray:
        return np.unique(self.hull_faces().reshape(-1))


def simplify_hull_points(points: np.ndarray, max_points: int) -> np.ndarray:
    """
    Keep the `max_points` hull points farthest from the centroid.

    Notes
    -----
    Lossy: the result bounds a smaller volume than the full hull. Ties keep
    input order and the survivors are returned in input order.
    """

    if max_points is None or len(points) <= max_points:
        return points
    centroid = points.mean(axis=0)
    dist_sq = np.sum((points - centroid) ** 2, axis=1)
    order = np.argsort(-dist_sq, kind="stable")
    keep = np.sort(order[:max_points])
    return points[keep]


def build_convex_hull(
    points,
    max_points: int | None = MAX_HULL_POINTS,
    deadline: float | None = None,
) -> HullResult:
    """
    Build a convex hull from an arbitrary point set.

    Parameters
    ----------
    points : array-like
        Input points of shape `(N, 3)` in mesh units.
    max_points : int or None
        Simplification cap on the hull point count; `None` disables it.
    deadline : float, optional
        `time.perf_counter()` value after which the build is abandoned.

    Returns
    -------
    HullResult
        On success, a `ConvexHull` whose points are the hull vertices in input
        order. On failure, one of `INSUFFICIENT_POINTS`,
        `DEGENERATE_COLLINEAR`, `DEGENERATE_COPLANAR` or
        `CONVERGENCE_FAILURE`.

    Notes
    -----
    Near-duplicate points are merged on a rounding grid before anything else,
    so every hull point is distinct from every other.
    """

    raw = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    unique = dedupe_points(raw)
    if len(unique) < 4:
        return HullResult.failed(DecompError.INSUFFICIENT_POINTS, input_points=len(raw), unique_points=len(unique))

    builder = HullBuilder(unique, deadline=deadline)
    try:
        builder.build()
    except HullBuildError as exc:
        return HullResult.failed(exc.kind, input_points=len(raw), unique_points=len(unique))

    vertex_ids = builder.hull_vertex_ids()
    if len(vertex_ids) < 4:
        return HullResult.failed(DecompError.CONVERGENCE_FAILURE, input_points=len(raw), unique_points=len(unique))

    hull_points = simplify_hull_points(unique[vertex_ids], max_points)
    hull = ConvexHull.from_points(hull_points)
    return HullResult.ok(
        hull,
        input_points=len(raw),
        unique_points=len(unique),
        hull_vertices=len(vertex_ids),
        faces=len(builder.collect_faces()),
        iterations=builder.iterations,
    )

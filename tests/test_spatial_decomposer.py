try:
    from . import generic as g
except BaseException:
    import generic as g

from decomp_geometry import BoundingBox, ConvexHull, DecompError, TriangleMesh
from quickhull import build_convex_hull
from spatial_decomposer import DecompParams, SpatialDecomposer, allot_budget, decompose


np = g.np


def cube_hull(size: float, offset=(0.0, 0.0, 0.0)) -> ConvexHull:
    corners = np.asarray(g.trimesh.creation.box(extents=(size, size, size)).vertices)
    return ConvexHull.from_points(corners + np.asarray(offset))


def flat_grid_mesh() -> TriangleMesh:
    xs, ys = np.meshgrid(np.arange(3.0), np.arange(3.0))
    vertices = np.column_stack([xs.ravel(), ys.ravel(), np.zeros(9)])
    indices = []
    for row in range(2):
        for col in range(2):
            a = row * 3 + col
            indices.extend([a, a + 1, a + 4, a, a + 4, a + 3])
    return TriangleMesh(vertices, np.asarray(indices))


def bbox_excess(mesh: TriangleMesh, hulls) -> float:
    return sum(h.bbox.volume for h in hulls) - mesh.enclosed_volume()


class DecompParamsTest(g.unittest.TestCase):
    def test_default_precision_gives_depth_ten(self):
        params = DecompParams.from_settings()
        self.assertEqual(params.max_depth, 10)
        self.assertEqual(params.target_hull_count, 8)
        self.assertEqual(params.max_hull_vertices, 16)
        self.assertAlmostEqual(params.min_volume_ratio, 0.001)

    def test_depth_mapping(self):
        self.assertEqual(DecompParams.from_settings(hull_precision=3000).max_depth, 5)
        self.assertEqual(DecompParams.from_settings(hull_precision=200000).max_depth, 11)
        self.assertEqual(DecompParams.from_settings(hull_precision=1).max_depth, 5)
        self.assertEqual(DecompParams.from_settings(hull_precision=10**9).max_depth, 15)

    def test_counts_are_clamped(self):
        self.assertEqual(DecompParams.from_settings(hull_count=0).target_hull_count, 1)
        self.assertEqual(DecompParams.from_settings(hull_count=100).target_hull_count, 64)
        self.assertEqual(DecompParams.from_settings(max_hull_vertices=2).max_hull_vertices, 6)
        self.assertEqual(DecompParams.from_settings(max_hull_vertices=100).max_hull_vertices, 32)

    def test_overrides(self):
        params = DecompParams.from_settings(hull_count=3, time_budget_s=5.0, max_hull_points=None)
        self.assertEqual(params.target_hull_count, 3)
        self.assertEqual(params.time_budget_s, 5.0)
        self.assertIsNone(params.max_hull_points)

    def test_invalid(self):
        with self.assertRaises(ValueError):
            DecompParams.from_settings(hull_precision=0)
        for bad in (
            DecompParams(target_hull_count=0),
            DecompParams(max_hull_vertices=40),
            DecompParams(min_volume_ratio=1.0),
            DecompParams(max_hull_points=3),
            DecompParams(min_split_ratio=0.5),
            DecompParams(time_budget_s=0.0),
        ):
            with self.assertRaises(ValueError):
                bad.validate()
        with self.assertRaises(ValueError):
            SpatialDecomposer(g.to_mesh(g.unit_cube()), DecompParams(leaf_triangle_count=0))


class BudgetTest(g.unittest.TestCase):
    def test_allot_budget(self):
        self.assertEqual(allot_budget(2, 14, 10), (1, 1))
        self.assertEqual(allot_budget(8, 12, 12), (4, 4))
        self.assertEqual(allot_budget(3, 1, 99), (1, 2))
        self.assertEqual(allot_budget(4, 99, 1), (3, 1))
        self.assertEqual(allot_budget(1, 5, 5), (1, 1))


class SplitTest(g.unittest.TestCase):
    def test_centroid_on_plane_goes_by_vote(self):
        vertices = np.array(
            [(-1, 0, 0), (-1, 1, 0), (2, 0, 0), (1, 0, 1), (1, 1, 1), (-2, 0, 1)],
            dtype=np.float64,
        )
        mesh = TriangleMesh(vertices, np.arange(6))
        decomposer = SpatialDecomposer(mesh, DecompParams())
        left, right = decomposer.split_by_plane(np.array([0, 1]), axis=0, position=0.0)
        self.assertEqual(left.tolist(), [0])
        self.assertEqual(right.tolist(), [1])

    def test_lopsided_split_is_rebalanced_once(self):
        vertices = []
        for i in range(20):
            x = 0.05 * i
            vertices.extend([(x, 0, 0), (x + 0.05, 0, 0), (x, 1, 0)])
        vertices.extend([(0, 0, 0), (10, 0, 0), (10, 1, 0)])
        mesh = TriangleMesh(np.asarray(vertices, dtype=np.float64), np.arange(63))
        decomposer = SpatialDecomposer(mesh, DecompParams())

        tri_ids = np.arange(21)
        halves = decomposer.split_region(tri_ids, np.arange(63))
        self.assertIsNotNone(halves)
        left, right = halves
        self.assertEqual(decomposer.stats.rebalanced_splits, 1)
        self.assertEqual(left.size + right.size, 21)
        self.assertEqual(right.tolist(), [20])


class DecomposeTest(g.unittest.TestCase):
    def test_cube_single_hull_is_its_corners(self):
        cube = g.unit_cube()
        result = decompose(g.to_mesh(cube), DecompParams.from_settings(hull_count=1))
        self.assertTrue(result.success)
        self.assertIsNone(result.error)
        self.assertEqual(len(result.hulls), 1)
        self.assertEqual(g.rounded_set(result.hulls[0].points), g.rounded_set(cube.vertices))

    def test_two_separated_cubes(self):
        mesh = g.to_mesh(g.two_cubes())
        result = decompose(mesh, DecompParams.from_settings(hull_count=2))
        self.assertTrue(result.success)
        self.assertEqual(len(result.hulls), 2)

        minimums = sorted(tuple(np.round(h.bbox.minimum, 6)) for h in result.hulls)
        self.assertEqual(minimums, [(-0.5, -0.5, -0.5), (9.5, -0.5, -0.5)])
        for hull in result.hulls:
            self.assertEqual(hull.point_count, 8)
            self.assertAlmostEqual(hull.bbox.volume, 1.0)

        stats = result.stats
        self.assertEqual(stats.input_vertices, 16)
        self.assertEqual(stats.input_triangles, 24)
        self.assertEqual(stats.regions, 3)
        self.assertEqual(stats.leaves, 2)
        self.assertEqual(stats.hulls_built, 2)
        self.assertEqual(stats.final_hulls, 2)
        self.assertEqual(stats.max_depth_reached, 1)
        self.assertEqual(stats.hull_failures, {})

    def test_l_shape_tighter_with_more_hulls(self):
        mesh = g.to_mesh(g.l_shape())
        self.assertAlmostEqual(mesh.enclosed_volume(), 5.0)

        one = decompose(mesh, DecompParams.from_settings(hull_count=1))
        two = decompose(mesh, DecompParams.from_settings(hull_count=2))
        self.assertEqual(len(one.hulls), 1)
        self.assertEqual(len(two.hulls), 2)
        self.assertAlmostEqual(bbox_excess(mesh, one.hulls), 4.0)
        self.assertAlmostEqual(bbox_excess(mesh, two.hulls), 0.0)
        self.assertLess(bbox_excess(mesh, two.hulls), bbox_excess(mesh, one.hulls))

    def test_coverage(self):
        for source, count in ((g.unit_cube(), 1), (g.two_cubes(), 2), (g.l_shape(), 2)):
            mesh = g.to_mesh(source)
            result = decompose(mesh, DecompParams.from_settings(hull_count=count))
            union = BoundingBox.union(h.bbox for h in result.hulls)
            self.assertTrue(union.contains_box(mesh.bounds(), tolerance=1e-9))

    def test_sphere_respects_target(self):
        mesh = g.to_mesh(g.trimesh.creation.icosphere(subdivisions=2))
        for target in (1, 2, 4, 8):
            result = decompose(mesh, DecompParams.from_settings(hull_count=target))
            self.assertTrue(result.success)
            self.assertGreaterEqual(len(result.hulls), 1)
            self.assertLessEqual(len(result.hulls), target)
            for hull in result.hulls:
                self.assertGreaterEqual(hull.point_count, 4)
                self.assertLessEqual(hull.point_count, 32)
                self.assertEqual(len(g.rounded_set(hull.points)), hull.point_count)

    def test_deterministic(self):
        mesh = g.to_mesh(g.trimesh.creation.icosphere(subdivisions=2))
        params = DecompParams.from_settings(hull_count=4)
        a = decompose(mesh, params)
        b = decompose(mesh, params)
        self.assertEqual(len(a.hulls), len(b.hulls))
        for ha, hb in zip(a.hulls, b.hulls):
            self.assertTrue(np.array_equal(ha.points, hb.points))

    def test_flat_mesh_fails_to_converge(self):
        result = decompose(flat_grid_mesh())
        self.assertFalse(result.success)
        self.assertEqual(result.hulls, [])
        self.assertEqual(result.error, DecompError.CONVERGENCE_FAILURE)
        self.assertGreaterEqual(sum(result.stats.hull_failures.values()), 1)
        self.assertEqual(result.stats.final_hulls, 0)

    def test_single_triangle_is_insufficient(self):
        mesh = TriangleMesh(np.array([(0, 0, 0), (1, 0, 0), (0, 1, 0)], dtype=np.float64), np.arange(3))
        result = decompose(mesh)
        self.assertFalse(result.success)
        self.assertEqual(result.error, DecompError.INSUFFICIENT_GEOMETRY)


class PostProcessTest(g.unittest.TestCase):
    def setUp(self):
        # bounding box volume of 8, so the default prune threshold is 0.008
        self.mesh = g.to_mesh(g.trimesh.creation.icosphere(subdivisions=2))

    def test_truncates_to_largest_boxes(self):
        decomposer = SpatialDecomposer(self.mesh, DecompParams(target_hull_count=2))
        hulls = [cube_hull(1.0), cube_hull(3.0, (5, 0, 0)), cube_hull(2.0, (10, 0, 0))]
        kept = decomposer.post_process(hulls)
        self.assertEqual([round(h.bbox.volume, 6) for h in kept], [27.0, 8.0])
        self.assertEqual(decomposer.stats.truncated, 1)

    def test_prunes_tiny_hulls(self):
        decomposer = SpatialDecomposer(self.mesh, DecompParams(target_hull_count=1))
        kept = decomposer.post_process([cube_hull(0.1, (3, 0, 0)), cube_hull(1.0)])
        self.assertEqual(len(kept), 1)
        self.assertAlmostEqual(kept[0].bbox.volume, 1.0)
        self.assertEqual(decomposer.stats.pruned, 1)

    def test_prune_never_empties(self):
        decomposer = SpatialDecomposer(self.mesh, DecompParams(target_hull_count=1))
        tiny = [cube_hull(0.1)]
        self.assertEqual(len(decomposer.prune_small(tiny)), 1)
        self.assertEqual(decomposer.stats.pruned, 0)

    def test_splits_largest_when_below_target(self):
        shell, _cloud = g.sphere_with_interior()
        sphere = build_convex_hull(shell, max_points=None).hull
        decomposer = SpatialDecomposer(self.mesh, DecompParams(target_hull_count=2))
        kept = decomposer.post_process([sphere])
        self.assertEqual(len(kept), 2)
        self.assertEqual(decomposer.stats.post_splits, 1)
        for hull in kept:
            self.assertTrue(sphere.bbox.contains_box(hull.bbox, tolerance=1e-9))

    def test_bisect_refuses_flat_halves(self):
        decomposer = SpatialDecomposer(self.mesh, DecompParams(target_hull_count=2))
        # only the x extremes are hull vertices, so each half is a coplanar square
        long_box = ConvexHull.from_points(
            np.asarray(g.trimesh.creation.box(bounds=((0, 0, 0), (4, 1, 1))).vertices)
        )
        self.assertIsNone(decomposer.bisect_hull(long_box))
        self.assertEqual(decomposer.split_largest([long_box]), [long_box])


if __name__ == "__main__":
    g.unittest.main()

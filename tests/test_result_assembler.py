try:
    from . import generic as g
except BaseException:
    import generic as g

import tempfile
from pathlib import Path

from decomp_geometry import BoundingBox, ConvexHull
from result_assembler import ListHullSink, TrimeshHullSink, assemble_collision_hulls


np = g.np


def cube_hull(offset=(0.0, 0.0, 0.0)) -> ConvexHull:
    return ConvexHull.from_points(np.asarray(g.unit_cube().vertices) + np.asarray(offset))


class AssembleTest(g.unittest.TestCase):
    def test_list_sink_handles(self):
        hulls = [cube_hull(), cube_hull((3, 0, 0))]
        sink = ListHullSink()
        handles = assemble_collision_hulls(hulls, sink)
        self.assertEqual(handles, [0, 1])
        self.assertEqual(len(sink.hulls), 2)
        self.assertTrue(np.allclose(sink.hulls[1], hulls[1].points))
        self.assertIs(sink.boxes[0], hulls[0].bbox)

    def test_short_hulls_skipped(self):
        triangle = np.array([(0, 0, 0), (1, 0, 0), (0, 1, 0)], dtype=np.float64)
        short = ConvexHull(points=triangle, bbox=BoundingBox.from_points(triangle))
        sink = ListHullSink()
        handles = assemble_collision_hulls([short, cube_hull()], sink)
        self.assertEqual(handles, [0])
        self.assertEqual(len(sink.hulls), 1)
        self.assertEqual(len(sink.hulls[0]), 8)

    def test_empty(self):
        self.assertEqual(assemble_collision_hulls([], ListHullSink()), [])


class TrimeshSinkTest(g.unittest.TestCase):
    def test_cooked_meshes(self):
        sink = TrimeshHullSink()
        handles = assemble_collision_hulls([cube_hull(), cube_hull((3, 0, 0))], sink)
        self.assertEqual(len(handles), 2)
        for mesh in handles:
            self.assertTrue(mesh.is_convex)
            self.assertTrue(mesh.is_watertight)
            self.assertAlmostEqual(mesh.volume, 1.0)

        combined = sink.combined()
        self.assertAlmostEqual(combined.volume, 2.0)
        self.assertEqual(len(combined.vertices), 16)

    def test_empty_sink(self):
        with self.assertRaises(ValueError):
            TrimeshHullSink().combined()

    def test_export(self):
        sink = TrimeshHullSink()
        assemble_collision_hulls([cube_hull()], sink)
        with tempfile.TemporaryDirectory() as d:
            path = sink.export(Path(d) / "nested" / "hulls.obj")
            self.assertTrue(path.exists())
            reloaded = g.trimesh.load(path, force="mesh")
            self.assertAlmostEqual(reloaded.volume, 1.0, places=4)


if __name__ == "__main__":
    g.unittest.main()

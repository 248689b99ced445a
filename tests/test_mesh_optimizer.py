import unittest

import numpy as np
import pytest

from dotmesh.core.dot_pattern import DotPattern, parse_csv
from dotmesh.core.errors import MeshGenerationError
from dotmesh.core.mesh_builder import generate_mesh
from dotmesh.core.mesh_data import Mesh, compute_mesh_stats
from dotmesh.core.mesh_optimizer import (
    _single_rectangle_groups,
    face_shells,
    merge_adjacent_faces,
    optimize_mesh,
    remove_unused_vertices,
    weld_vertices,
)
from dotmesh.core.params import Model3DParams


TOUCHING = Model3DParams(spacing=0.0, generate_base=False)


def _build(csv_text: str, params: Model3DParams = TOUCHING):
    pattern = parse_csv(csv_text)
    return pattern, generate_mesh(pattern, params)


def _assert_same_solid(testcase, before: Mesh, after: Mesh):
    np.testing.assert_allclose(after.bounds, before.bounds, atol=1e-9)
    testcase.assertAlmostEqual(after.volume, before.volume, places=6)


class TestMergeAdjacentFaces(unittest.TestCase):
    def test_two_touching_cubes_lose_their_shared_walls(self):
        pattern, mesh = _build("1,1")
        merged = merge_adjacent_faces(mesh, pattern)

        self.assertEqual(merged.n_faces, 20)
        self.assertEqual(merged.n_vertices, 12)
        self.assertEqual(merged.metadata["merged_faces"], 4)
        self.assertEqual(merged.metadata["blocks"], 1)
        _assert_same_solid(self, mesh, merged)
        self.assertTrue(compute_mesh_stats(merged).is_watertight)

    def test_x_pattern_has_nothing_to_merge(self):
        pattern, mesh = _build("1,0,1\n0,1,0\n1,0,1")
        merged = merge_adjacent_faces(mesh, pattern)

        self.assertEqual(merged.n_faces, 60)
        self.assertEqual(len(np.unique(face_shells(merged))), 5)
        np.testing.assert_array_equal(merged.faces, mesh.faces)

    def test_spaced_cubes_are_left_alone(self):
        pattern, mesh = _build("1,1", Model3DParams(spacing=0.1, generate_base=False))
        merged = merge_adjacent_faces(mesh, pattern)

        self.assertEqual(merged.n_faces, mesh.n_faces)
        self.assertIsNot(merged, mesh)

    def test_base_stays_a_separate_shell(self):
        pattern, mesh = _build("1,1\n1,1", Model3DParams(spacing=0.0))
        merged = merge_adjacent_faces(mesh, pattern)

        self.assertEqual(len(np.unique(face_shells(merged))), 2)
        self.assertTrue(compute_mesh_stats(merged).is_watertight)
        _assert_same_solid(self, mesh, merged)

    def test_requires_build_tags(self):
        pattern, mesh = _build("1,1")
        untagged = Mesh(vertices=mesh.vertices, faces=mesh.faces, metadata=mesh.metadata)
        with self.assertRaises(MeshGenerationError):
            merge_adjacent_faces(untagged, pattern)

    def test_pattern_must_match(self):
        _, mesh = _build("1,1")
        with self.assertRaises(MeshGenerationError):
            merge_adjacent_faces(mesh, parse_csv("1,1,1"))


class TestOptimizeMesh(unittest.TestCase):
    def test_bar_collapses_to_a_single_box(self):
        pattern, mesh = _build("1,1,1")
        optimized = optimize_mesh(merge_adjacent_faces(mesh, pattern))

        self.assertEqual(optimized.n_faces, 12)
        self.assertEqual(optimized.n_vertices, 8)
        self.assertTrue(optimized.metadata["optimized"])
        self.assertFalse(optimized.has_tags)
        _assert_same_solid(self, mesh, optimized)

    def test_l_shape_stays_watertight(self):
        pattern, mesh = _build("1,1\n1,0")
        merged = merge_adjacent_faces(mesh, pattern)
        optimized = optimize_mesh(merged)

        self.assertLess(optimized.n_faces, merged.n_faces)
        _assert_same_solid(self, mesh, optimized)
        self.assertTrue(compute_mesh_stats(optimized).is_watertight)
        self.assertTrue(optimized.to_trimesh().is_watertight)

    def test_ring_with_hole_stays_watertight(self):
        pattern, mesh = _build("1,1,1\n1,0,1\n1,1,1", Model3DParams(spacing=0.0))
        optimized = optimize_mesh(merge_adjacent_faces(mesh, pattern))

        _assert_same_solid(self, mesh, optimized)
        self.assertTrue(compute_mesh_stats(optimized).is_watertight)
        self.assertLess(optimized.n_faces, mesh.n_faces)

    def test_face_count_never_grows(self):
        pattern, mesh = _build("1,0,1\n0,1,0\n1,0,1")
        optimized = optimize_mesh(merge_adjacent_faces(mesh, pattern))
        self.assertLessEqual(optimized.n_faces, mesh.n_faces)
        _assert_same_solid(self, mesh, optimized)

    def test_empty_mesh(self):
        self.assertTrue(optimize_mesh(Mesh.empty()).is_empty)

    def test_spaced_cubes_are_returned_unchanged(self):
        pattern = DotPattern.from_array(np.ones((60, 60), dtype=bool))
        mesh = generate_mesh(pattern, Model3DParams(spacing=0.1))
        merged = merge_adjacent_faces(mesh, pattern)
        optimized = optimize_mesh(merged)

        self.assertEqual(optimized.n_faces, merged.n_faces)
        np.testing.assert_array_equal(optimized.faces, merged.faces)
        self.assertTrue(optimized.has_tags)
        self.assertNotIn("optimized", optimized.metadata)

    def test_chamfered_block_merges_and_stays_closed(self):
        params = Model3DParams(spacing=0.0, generate_base=False, chamfer_edges=True, chamfer_size=0.2)
        pattern, mesh = _build("1,1\n1,1", params)
        merged = merge_adjacent_faces(mesh, pattern)
        optimized = optimize_mesh(merged)

        self.assertLess(merged.n_faces, mesh.n_faces)
        self.assertLessEqual(optimized.n_faces, merged.n_faces)
        self.assertTrue(compute_mesh_stats(merged).is_watertight)
        self.assertTrue(compute_mesh_stats(optimized).is_watertight)
        _assert_same_solid(self, mesh, optimized)


def test_weld_vertices_merges_coincident_points():
    vertices = np.array(
        [[0, 0, 0], [1, 0, 0], [0, 1, 0], [1e-9, 0, 0], [0, 1, 0], [1, 1, 0]],
        dtype=np.float64,
    )
    faces = np.array([[0, 1, 2], [1, 5, 4]], dtype=np.int64)
    mesh = Mesh(vertices=vertices, faces=faces)

    welded = weld_vertices(mesh, tolerance=1e-6)

    assert welded.n_vertices == 4
    assert welded.n_faces == 2
    assert welded.faces[1].tolist() == [1, 3, 2]


def test_remove_unused_vertices_keeps_index_order():
    vertices = np.arange(15, dtype=np.float64).reshape(5, 3)
    mesh = Mesh(vertices=vertices, faces=np.array([[4, 2, 0]], dtype=np.int64))

    out = remove_unused_vertices(mesh)

    assert out.faces.tolist() == [[2, 1, 0]]
    np.testing.assert_array_equal(out.vertices, vertices[[0, 2, 4]])


@pytest.mark.parametrize("rows", [["1"], ["1,1", "1,1"], ["0,1,1", "1,1,0"]])
def test_merge_then_optimize_preserves_volume(rows):
    pattern = parse_csv("\n".join(rows))
    mesh = generate_mesh(pattern, Model3DParams(spacing=0.0))
    optimized = optimize_mesh(merge_adjacent_faces(mesh, pattern))

    assert optimized.volume == pytest.approx(mesh.volume)
    assert compute_mesh_stats(optimized).is_watertight


def _rectangle_pair(second):
    corners = np.array([[0, 0, 0], [2, 0, 0], [2, 1, 0], [0, 1, 0]], dtype=np.float64)
    mesh = Mesh(vertices=corners, faces=np.array([[0, 1, 2], second], dtype=np.int64))
    return _single_rectangle_groups(
        mesh,
        np.array([0, 1]),
        np.array([2, 2]),
        np.array([0, 0]),
        1,
        1e-6,
    )


def test_two_triangles_split_on_a_diagonal_form_a_single_rectangle():
    single, bounds = _rectangle_pair([0, 2, 3])
    assert single.tolist() == [True]
    np.testing.assert_allclose(bounds[0], [0, 2, 0, 1])


def test_overlapping_triangle_pair_is_not_a_rectangle():
    single, _ = _rectangle_pair([0, 1, 3])
    assert single.tolist() == [False]


if __name__ == "__main__":
    unittest.main()

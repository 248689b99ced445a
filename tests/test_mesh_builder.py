import unittest

import numpy as np

from dotmesh.core.dot_pattern import DotPattern, parse_csv
from dotmesh.core.errors import MeshGenerationError
from dotmesh.core.mesh_builder import box_template, chamfered_box_template, generate_mesh
from dotmesh.core.mesh_data import BASE_CELL, compute_mesh_stats
from dotmesh.core.params import Model3DParams


NO_BASE = Model3DParams(generate_base=False, optimize_mesh=False)


class TestGenerateMesh(unittest.TestCase):
    def test_single_cell_is_one_closed_cube(self):
        mesh = generate_mesh(DotPattern.from_rows([[True]]), NO_BASE)

        self.assertEqual(mesh.n_vertices, 8)
        self.assertEqual(mesh.n_faces, 12)
        np.testing.assert_allclose(mesh.bounds, [[0, 0, 0], [2, 2, 2]])
        self.assertAlmostEqual(mesh.volume, 8.0)
        self.assertTrue(compute_mesh_stats(mesh).is_watertight)
        self.assertTrue(mesh.to_trimesh().is_watertight)

    def test_normals_point_outward(self):
        mesh = generate_mesh(DotPattern.from_rows([[True]]), NO_BASE)
        centre = mesh.vertices.mean(axis=0)
        centroids = mesh.triangles().mean(axis=1)
        dots = np.einsum("ij,ij->i", mesh.face_normals, centroids - centre)
        self.assertTrue((dots > 0).all())

    def test_cube_placement_uses_pitch(self):
        params = Model3DParams(cube_size=2.0, cube_height=3.0, spacing=0.5, generate_base=False)
        mesh = generate_mesh(parse_csv("0,0\n0,1"), params)
        np.testing.assert_allclose(mesh.bounds, [[2.5, 0, 2.5], [4.5, 3.0, 4.5]])
        np.testing.assert_array_equal(np.unique(mesh.face_cells), [3])

    def test_base_spans_footprint_below_zero(self):
        params = Model3DParams(cube_size=2.0, spacing=1.0, base_thickness=1.5)
        mesh = generate_mesh(parse_csv("1,0,0\n0,0,0"), params)

        base = mesh.face_cells == BASE_CELL
        self.assertEqual(int(base.sum()), 12)
        self.assertEqual(mesh.n_faces, 24)
        base_vertices = mesh.vertices[np.unique(mesh.faces[base])]
        np.testing.assert_allclose(base_vertices.min(axis=0), [0, -1.5, 0])
        np.testing.assert_allclose(base_vertices.max(axis=0), [8.0, 0, 5.0])
        self.assertTrue(mesh.metadata["has_base"])
        self.assertEqual(mesh.metadata["cube_count"], 1)

    def test_all_inactive_with_base_has_only_the_base(self):
        mesh = generate_mesh(parse_csv("0,0\n0,0"), Model3DParams())
        self.assertEqual(mesh.n_faces, 12)
        self.assertTrue((mesh.face_cells == BASE_CELL).all())

    def test_all_inactive_without_base_is_empty(self):
        mesh = generate_mesh(parse_csv("0,0\n0,0"), NO_BASE)
        self.assertTrue(mesh.is_empty)
        self.assertEqual(mesh.metadata["cube_count"], 0)

    def test_x_pattern_gives_five_cubes(self):
        mesh = generate_mesh(parse_csv("1,0,1\n0,1,0\n1,0,1"), NO_BASE)
        self.assertEqual(mesh.n_faces, 60)
        self.assertEqual(len(np.unique(mesh.face_cells)), 5)

    def test_generation_is_deterministic(self):
        pattern = parse_csv("1,1,0\n0,1,1")
        a = generate_mesh(pattern)
        b = generate_mesh(pattern)
        np.testing.assert_array_equal(a.vertices, b.vertices)
        np.testing.assert_array_equal(a.faces, b.faces)

    def test_progress_is_reported(self):
        seen = []
        generate_mesh(parse_csv("1,1"), progress=seen.append)
        self.assertEqual(seen[0], 0)
        self.assertEqual(seen[-1], 100)

    def test_invalid_params_raise(self):
        pattern = DotPattern.from_rows([[True]])
        for params in (
            Model3DParams(cube_size=0),
            Model3DParams(spacing=-1),
            Model3DParams(chamfer_edges=True, chamfer_size=1.0),
        ):
            with self.assertRaises(MeshGenerationError):
                generate_mesh(pattern, params)

    def test_non_pattern_input_raises(self):
        with self.assertRaises(MeshGenerationError):
            generate_mesh([[True]])


class TestTemplates(unittest.TestCase):
    def test_box_template_volume(self):
        vertices, faces, sides = box_template(np.array([1.0, 2.0, 3.0]))
        tri = vertices[faces]
        volume = np.einsum("ij,ij->i", tri[:, 0], np.cross(tri[:, 1], tri[:, 2])).sum() / 6.0
        self.assertAlmostEqual(volume, 6.0)
        self.assertEqual(sorted(set(sides.tolist())), [0, 1, 2, 3, 4, 5])

    def test_chamfered_cube(self):
        params = Model3DParams(generate_base=False, chamfer_edges=True, chamfer_size=0.2)
        mesh = generate_mesh(DotPattern.from_rows([[True]]), params)

        self.assertEqual(mesh.n_vertices, 24)
        self.assertEqual(mesh.n_faces, 44)
        self.assertGreater(mesh.volume, 0.0)
        self.assertLess(mesh.volume, 8.0)
        self.assertTrue(mesh.to_trimesh().is_watertight)
        self.assertEqual(int((mesh.face_sides >= 0).sum()), 12)

    def test_chamfered_template_faces_are_outward(self):
        size = np.array([2.0, 2.0, 2.0])
        vertices, faces, _ = chamfered_box_template(size, 0.3)
        tri = vertices[faces]
        normals = np.cross(tri[:, 1] - tri[:, 0], tri[:, 2] - tri[:, 0])
        dots = np.einsum("ij,ij->i", normals, tri.mean(axis=1) - size / 2.0)
        self.assertTrue((dots > 0).all())


if __name__ == "__main__":
    unittest.main()

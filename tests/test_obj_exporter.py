import unittest
from pathlib import Path

import numpy as np
import pytest
import trimesh

from dotmesh.core.dot_pattern import DotPattern, parse_csv
from dotmesh.core.errors import ExportError
from dotmesh.core.mesh_builder import generate_mesh
from dotmesh.core.mesh_data import Mesh, MeshLoader
from dotmesh.core.obj_exporter import export_to_obj, prepare_for_export, save_mesh
from dotmesh.core.params import ExportParams, Model3DParams


def _cube() -> Mesh:
    return generate_mesh(DotPattern.from_rows([[True]]), Model3DParams(generate_base=False))


class TestExportToObj(unittest.TestCase):
    def test_single_cube_layout(self):
        text = export_to_obj(_cube())
        lines = text.splitlines()

        self.assertTrue(text.startswith("#"))
        self.assertTrue(text.endswith("\n"))
        self.assertEqual(sum(1 for line in lines if line.startswith("v ")), 8)
        self.assertEqual(sum(1 for line in lines if line.startswith("f ")), 12)
        self.assertIn("# vertices: 8", lines)
        self.assertIn("# faces: 12", lines)

    def test_faces_are_one_based(self):
        lines = export_to_obj(_cube()).splitlines()
        indices = [int(tok) for line in lines if line.startswith("f ") for tok in line.split()[1:]]
        self.assertEqual(min(indices), 1)
        self.assertEqual(max(indices), 8)

    def test_precision_and_negative_zero(self):
        mesh = Mesh(
            vertices=np.array([[-0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0 / 3.0, 0.0]]),
            faces=np.array([[0, 1, 2]]),
        )
        lines = export_to_obj(mesh, precision=3).splitlines()
        self.assertIn("v 0.000 0.000 0.000", lines)
        self.assertIn("v 0.000 0.333 0.000", lines)

    def test_extra_comments(self):
        text = export_to_obj(_cube(), comments=["pattern: 1x1"])
        self.assertIn("# pattern: 1x1\n", text)

    def test_output_is_deterministic(self):
        pattern = parse_csv("1,1\n0,1")
        a = export_to_obj(generate_mesh(pattern))
        b = export_to_obj(generate_mesh(pattern))
        self.assertEqual(a, b)

    def test_invalid_meshes_raise(self):
        with self.assertRaises(ExportError):
            export_to_obj(None)
        with self.assertRaises(ExportError):
            export_to_obj(Mesh.empty())
        bad = Mesh(vertices=np.zeros((3, 3)), faces=np.array([[0, 1, 5]]), face_normals=np.zeros((1, 3)))
        with self.assertRaises(ExportError):
            export_to_obj(bad)

    def test_obj_loads_back_with_trimesh(self):
        text = export_to_obj(_cube())
        loaded = trimesh.load(trimesh.util.wrap_as_stream(text), file_type="obj", force="mesh", process=False)
        self.assertEqual(len(loaded.faces), 12)
        self.assertAlmostEqual(float(loaded.volume), 8.0, places=5)


class TestPrepareForExport(unittest.TestCase):
    def test_center_and_scale(self):
        out = prepare_for_export(_cube(), ExportParams(center_model=True, scale_factor=2.0))
        np.testing.assert_allclose(out.bounds, [[-2, 0, -2], [2, 4, 2]])

    def test_invalid_params_raise(self):
        for params in (ExportParams(scale_factor=0), ExportParams(format="fbx"), ExportParams(filename="a/b")):
            with self.assertRaises(ExportError):
                prepare_for_export(_cube(), params)


def test_save_obj_writes_file(tmp_path):
    path = save_mesh(_cube(), tmp_path / "out" / "cube.obj")

    assert path == tmp_path / "out" / "cube.obj"
    text = path.read_text(encoding="utf-8")
    assert text == export_to_obj(_cube())
    assert [p.name for p in path.parent.iterdir()] == ["cube.obj"]


@pytest.mark.parametrize("suffix", ["stl", "ply"])
def test_save_binary_formats_round_trip(tmp_path, suffix):
    path = save_mesh(_cube(), tmp_path / f"cube.{suffix}")

    mesh = MeshLoader().load(path)
    assert mesh.n_faces == 12
    assert abs(mesh.volume) == pytest.approx(8.0)


def test_save_empty_mesh_leaves_no_file(tmp_path):
    target = tmp_path / "empty.obj"
    with pytest.raises(ExportError):
        save_mesh(Mesh.empty(), target)
    assert not Path(target).exists()

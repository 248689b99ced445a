"""
Voxel mesh builder: DotPattern → one cuboid per active cell.

Coordinates are Y-up. Cell ``(col, row)`` occupies
``[col*p, col*p + s] x [0, h] x [row*p, row*p + s]`` with ``p = s + spacing``.
The optional base plinth spans the pattern footprint below ``y = 0``.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

import numpy as np

from .dot_pattern import DotPattern
from .errors import MeshGenerationError
from .mesh_data import BASE_CELL, NO_SIDE, Mesh
from .params import Model3DParams
from .runtime_defaults import DEFAULTS

_LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

_CHUNK_CUBES = 50_000

# Unit box corners, listed explicitly so the quad table below stays readable.
_BOX_CORNERS = np.array(
    [
        [0.0, 0.0, 0.0],
        [1.0, 0.0, 0.0],
        [1.0, 1.0, 0.0],
        [0.0, 1.0, 0.0],
        [0.0, 0.0, 1.0],
        [1.0, 0.0, 1.0],
        [1.0, 1.0, 1.0],
        [0.0, 1.0, 1.0],
    ],
    dtype=np.float64,
)

# (side code, quad corners counter-clockwise seen from outside)
_BOX_QUADS = (
    (0, (0, 4, 7, 3)),  # -X
    (1, (1, 2, 6, 5)),  # +X
    (2, (0, 1, 5, 4)),  # -Y
    (3, (3, 7, 6, 2)),  # +Y
    (4, (0, 3, 2, 1)),  # -Z
    (5, (4, 5, 6, 7)),  # +Z
)


def _quads_to_triangles(quads) -> tuple[np.ndarray, np.ndarray]:
    faces = []
    sides = []
    for side, (a, b, c, d) in quads:
        faces.extend([(a, b, c), (a, c, d)])
        sides.extend([side, side])
    return np.asarray(faces, dtype=np.int64), np.asarray(sides, dtype=np.int8)


_BOX_FACES, _BOX_SIDES = _quads_to_triangles(_BOX_QUADS)


def box_template(size: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """8 vertices / 12 outward triangles of an axis-aligned box anchored at the origin."""
    return _BOX_CORNERS * np.asarray(size, dtype=np.float64), _BOX_FACES.copy(), _BOX_SIDES.copy()


def _orient_outward(vertices: np.ndarray, faces: np.ndarray, center: np.ndarray) -> np.ndarray:
    tri = vertices[faces]
    normals = np.cross(tri[:, 1] - tri[:, 0], tri[:, 2] - tri[:, 0])
    outward = np.einsum("ij,ij->i", normals, tri.mean(axis=1) - center) >= 0
    oriented = faces.copy()
    oriented[~outward] = oriented[~outward][:, [0, 2, 1]]
    return oriented


def chamfered_box_template(size: np.ndarray, chamfer: float) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Box with all 12 edges bevelled by ``chamfer``.

    Every corner splits into three vertices, one on each adjacent main face:
    24 vertices, 6 shrunk main quads, 12 bevel quads and 8 corner triangles
    (44 triangles). Only the main faces carry a side code.
    """
    size = np.asarray(size, dtype=np.float64)
    c = float(chamfer)

    def vid(corner: int, axis: int) -> int:
        return corner * 3 + axis

    vertices = np.zeros((24, 3), dtype=np.float64)
    for corner in range(8):
        bits = ((corner >> 0) & 1, (corner >> 1) & 1, (corner >> 2) & 1)
        for axis in range(3):
            p = np.zeros(3)
            for b in range(3):
                if b == axis:
                    p[b] = size[b] * bits[b]
                else:
                    p[b] = size[b] - c if bits[b] else c
            vertices[vid(corner, axis)] = p

    def corner_index(bits: dict[int, int]) -> int:
        return bits[0] | (bits[1] << 1) | (bits[2] << 2)

    faces: list[tuple[int, int, int]] = []
    sides: list[int] = []
    for axis in range(3):
        u, v = [b for b in range(3) if b != axis]
        for sgn in (0, 1):
            ring = [
                corner_index({axis: sgn, u: bu, v: bv})
                for bu, bv in ((0, 0), (1, 0), (1, 1), (0, 1))
            ]
            q = [vid(k, axis) for k in ring]
            faces.extend([(q[0], q[1], q[2]), (q[0], q[2], q[3])])
            sides.extend([2 * axis + sgn] * 2)

        for bu in (0, 1):
            for bv in (0, 1):
                k0 = corner_index({axis: 0, u: bu, v: bv})
                k1 = corner_index({axis: 1, u: bu, v: bv})
                q = [vid(k0, u), vid(k1, u), vid(k1, v), vid(k0, v)]
                faces.extend([(q[0], q[1], q[2]), (q[0], q[2], q[3])])
                sides.extend([NO_SIDE] * 2)

    for corner in range(8):
        faces.append((vid(corner, 0), vid(corner, 1), vid(corner, 2)))
        sides.append(NO_SIDE)

    face_arr = _orient_outward(vertices, np.asarray(faces, dtype=np.int64), size / 2.0)
    return vertices, face_arr, np.asarray(sides, dtype=np.int8)


def _validate_inputs(pattern: DotPattern, params: Model3DParams) -> None:
    if not isinstance(pattern, DotPattern):
        raise MeshGenerationError(f"Expected a DotPattern, got {type(pattern).__name__}")
    limit = DEFAULTS.max_pattern_dimension
    if not (1 <= pattern.width <= limit and 1 <= pattern.height <= limit):
        raise MeshGenerationError(
            f"Pattern dimensions {pattern.width}x{pattern.height} are outside 1..{limit}"
        )
    errors = params.validate()
    if errors:
        raise MeshGenerationError("Invalid model parameters: " + "; ".join(errors))


def generate_mesh(
    pattern: DotPattern,
    params: Optional[Model3DParams] = None,
    *,
    progress: Optional[ProgressCallback] = None,
) -> Mesh:
    """
    Build the voxel mesh for ``pattern``.

    Cubes are emitted in row-major cell order, the base plinth last. Output
    is deterministic for identical inputs.

    Raises:
        MeshGenerationError: invalid pattern or parameters (nothing is built).
    """
    params = params or Model3DParams()
    _validate_inputs(pattern, params)

    def _report(value: int) -> None:
        if progress is not None:
            progress(value)

    size = np.array([params.cube_size, params.cube_height, params.cube_size], dtype=np.float64)
    if params.chamfer_edges:
        t_verts, t_faces, t_sides = chamfered_box_template(size, params.chamfer_size)
    else:
        t_verts, t_faces, t_sides = box_template(size)
    n_tv = len(t_verts)

    rows, cols = np.nonzero(pattern.to_array())
    n_cubes = int(len(rows))
    pitch = params.pitch

    vertex_chunks: list[np.ndarray] = []
    face_chunks: list[np.ndarray] = []
    cell_chunks: list[np.ndarray] = []
    side_chunks: list[np.ndarray] = []

    _report(0)
    for start in range(0, n_cubes, _CHUNK_CUBES):
        stop = min(start + _CHUNK_CUBES, n_cubes)
        r = rows[start:stop]
        c = cols[start:stop]
        origins = np.stack(
            [c * pitch, np.zeros(len(r), dtype=np.float64), r * pitch],
            axis=1,
        ).astype(np.float64)
        vertex_chunks.append((origins[:, None, :] + t_verts[None, :, :]).reshape(-1, 3))
        offsets = (np.arange(start, stop, dtype=np.int64) * n_tv)[:, None, None]
        face_chunks.append((t_faces[None, :, :] + offsets).reshape(-1, 3))
        cell_chunks.append(np.repeat((r * pattern.width + c).astype(np.int64), len(t_faces)))
        side_chunks.append(np.tile(t_sides, len(r)))
        _report(int(90 * stop / n_cubes))

    if params.generate_base:
        footprint_x = (pattern.width - 1) * pitch + params.cube_size
        footprint_z = (pattern.height - 1) * pitch + params.cube_size
        b_verts, b_faces, b_sides = box_template(
            np.array([footprint_x, params.base_thickness, footprint_z], dtype=np.float64)
        )
        b_verts = b_verts + np.array([0.0, -params.base_thickness, 0.0])
        vertex_chunks.append(b_verts)
        face_chunks.append(b_faces + n_cubes * n_tv)
        cell_chunks.append(np.full(len(b_faces), BASE_CELL, dtype=np.int64))
        side_chunks.append(b_sides)

    metadata = {
        "source": "voxel",
        "pattern_width": pattern.width,
        "pattern_height": pattern.height,
        "cube_count": n_cubes,
        "has_base": bool(params.generate_base),
        "params": params.to_dict(),
    }

    if not face_chunks:
        _LOGGER.info("Pattern has no active cells and no base; returning an empty mesh")
        _report(100)
        return Mesh.empty(metadata=metadata)

    mesh = Mesh(
        vertices=np.concatenate(vertex_chunks, axis=0),
        faces=np.concatenate(face_chunks, axis=0),
        face_cells=np.concatenate(cell_chunks),
        face_sides=np.concatenate(side_chunks),
        metadata=metadata,
    )
    _LOGGER.debug(
        "Generated mesh: %d cubes, %d vertices, %d faces (base=%s, chamfer=%s)",
        n_cubes,
        mesh.n_vertices,
        mesh.n_faces,
        params.generate_base,
        params.chamfer_edges,
    )
    _report(100)
    return mesh

"""
Mesh optimization passes.

- ``merge_adjacent_faces``: drop the hidden face pairs between touching
  4-connected cubes and weld each connected block into one shell.
- ``optimize_mesh``: merge coplanar axis-aligned faces into maximal
  rectangles and re-triangulate them without T-junctions.

Both passes return new meshes and keep the bounding box and enclosed volume
unchanged. The face count never grows.
"""

from __future__ import annotations

from bisect import bisect_left, bisect_right
from dataclasses import dataclass
import logging
from typing import Optional

import numpy as np
from scipy import ndimage
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components

from .dot_pattern import DotPattern
from .errors import MeshGenerationError
from .logging_utils import log_once
from .mesh_data import (
    BASE_CELL,
    SIDE_NEG_X,
    SIDE_NEG_Z,
    SIDE_POS_X,
    SIDE_POS_Z,
    Mesh,
)

_LOGGER = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 1e-6

# (d_col, d_row) towards the neighbour that shares each lateral side.
_SIDE_NEIGHBOUR = {
    SIDE_NEG_X: (-1, 0),
    SIDE_POS_X: (1, 0),
    SIDE_NEG_Z: (0, -1),
    SIDE_POS_Z: (0, 1),
}

# In-plane (u, v) axes per normal axis with u x v == +normal.
_PLANE_AXES = {0: (1, 2), 1: (2, 0), 2: (0, 1)}


def _quantize(values: np.ndarray, tolerance: float) -> np.ndarray:
    return np.round(np.asarray(values, dtype=np.float64) / tolerance).astype(np.int64)


def _compact(
    vertices: np.ndarray,
    faces: np.ndarray,
    vertex_keys: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Merge vertices with equal keys and drop unreferenced ones.

    Surviving vertices keep their original relative order.
    """
    if len(faces) == 0:
        return np.zeros((0, 3), dtype=np.float64), np.zeros((0, 3), dtype=np.int64)
    used = np.unique(faces)
    keys = vertex_keys[used]
    if keys.ndim == 1:
        keys = keys[:, None]
    _, first, inverse = np.unique(keys, axis=0, return_index=True, return_inverse=True)
    order = np.argsort(first, kind="stable")
    rank = np.empty_like(order)
    rank[order] = np.arange(len(order))
    remap = np.full(len(vertices), -1, dtype=np.int64)
    remap[used] = rank[np.asarray(inverse).reshape(-1)]
    return vertices[used[first[order]]], remap[faces]


def _drop_degenerate(faces: np.ndarray) -> np.ndarray:
    ok = (faces[:, 0] != faces[:, 1]) & (faces[:, 1] != faces[:, 2]) & (faces[:, 0] != faces[:, 2])
    return ok


def remove_unused_vertices(mesh: Mesh) -> Mesh:
    out = mesh.copy()
    keys = np.arange(mesh.n_vertices, dtype=np.int64)
    out.vertices, out.faces = _compact(mesh.vertices, mesh.faces, keys)
    out._bounds = None
    return out


def weld_vertices(mesh: Mesh, tolerance: float = DEFAULT_TOLERANCE) -> Mesh:
    """Merge vertices closer than ``tolerance`` (grid snapped) and drop collapsed faces."""
    if mesh.is_empty:
        return mesh.copy()
    keys = _quantize(mesh.vertices, tolerance)
    vertices, faces = _compact(mesh.vertices, mesh.faces, keys)
    keep = _drop_degenerate(faces)
    vertices, faces = _compact(vertices, faces[keep], np.arange(len(vertices), dtype=np.int64))
    return Mesh(
        vertices=vertices,
        faces=faces,
        face_normals=mesh.face_normals[keep] if mesh.face_normals is not None else None,
        face_cells=mesh.face_cells[keep] if mesh.has_tags else None,
        face_sides=mesh.face_sides[keep] if mesh.has_tags else None,
        unit=mesh.unit,
        metadata=dict(mesh.metadata),
    )


def merge_adjacent_faces(
    mesh: Mesh,
    pattern: DotPattern,
    *,
    tolerance: float = DEFAULT_TOLERANCE,
) -> Mesh:
    """
    Remove the internal face pairs between touching 4-connected active cells.

    Args:
        mesh: mesh produced by ``generate_mesh`` for ``pattern`` (needs face tags)
        pattern: the pattern the mesh was built from
        tolerance: vertex welding grid

    Returns:
        New mesh; a copy of the input when no face pair is hidden.

    Raises:
        MeshGenerationError: mesh without build tags or built from another pattern.
    """
    if mesh.is_empty:
        return mesh.copy()
    if not mesh.has_tags:
        raise MeshGenerationError("merge_adjacent_faces needs a mesh produced by generate_mesh")
    meta_w = mesh.metadata.get("pattern_width", pattern.width)
    meta_h = mesh.metadata.get("pattern_height", pattern.height)
    if (meta_w, meta_h) != (pattern.width, pattern.height):
        raise MeshGenerationError(
            f"Mesh was built from a {meta_w}x{meta_h} pattern, got {pattern.width}x{pattern.height}"
        )

    spacing = float(mesh.metadata.get("params", {}).get("spacing", 0.0))
    if spacing > tolerance:
        _LOGGER.debug("Cubes are spaced by %g; no shared faces to merge", spacing)
        return mesh.copy()

    width, height = pattern.width, pattern.height
    grid = pattern.to_array()
    active = grid.reshape(-1)
    cells = mesh.face_cells
    sides = mesh.face_sides.astype(np.int64)

    is_cube = cells != BASE_CELL
    col = np.where(is_cube, cells % width, 0)
    row = np.where(is_cube, cells // width, 0)
    d_col = np.zeros(len(cells), dtype=np.int64)
    d_row = np.zeros(len(cells), dtype=np.int64)
    lateral = np.zeros(len(cells), dtype=bool)
    for side, (dc, dr) in _SIDE_NEIGHBOUR.items():
        m = is_cube & (sides == side)
        d_col[m] = dc
        d_row[m] = dr
        lateral |= m

    n_col = col + d_col
    n_row = row + d_row
    inside = (n_col >= 0) & (n_col < width) & (n_row >= 0) & (n_row < height)
    neighbour = np.zeros(len(cells), dtype=bool)
    idx = np.nonzero(lateral & inside)[0]
    neighbour[idx] = active[n_row[idx] * width + n_col[idx]]
    hidden = lateral & inside & neighbour

    if not hidden.any():
        return mesh.copy()

    labels, n_blocks = ndimage.label(grid)
    face_shell = np.full(len(cells), -1, dtype=np.int64)
    face_shell[is_cube] = labels.reshape(-1)[cells[is_cube]]

    keep = ~hidden
    kept_faces = mesh.faces[keep]
    vertex_shell = np.full(mesh.n_vertices, -1, dtype=np.int64)
    vertex_shell[kept_faces.reshape(-1)] = np.repeat(face_shell[keep], 3)
    keys = np.column_stack([vertex_shell, _quantize(mesh.vertices, tolerance)])

    vertices, faces = _compact(mesh.vertices, kept_faces, keys)
    metadata = dict(mesh.metadata)
    metadata["merged_faces"] = int(hidden.sum())
    metadata["blocks"] = int(n_blocks)
    _LOGGER.debug(
        "Merged adjacent faces: removed %d of %d faces, %d blocks",
        int(hidden.sum()),
        mesh.n_faces,
        n_blocks,
    )
    return Mesh(
        vertices=vertices,
        faces=faces,
        face_normals=mesh.face_normals[keep],
        face_cells=cells[keep],
        face_sides=mesh.face_sides[keep],
        unit=mesh.unit,
        metadata=metadata,
    )


def face_shells(mesh: Mesh) -> np.ndarray:
    """Connected component label per face (faces connected through shared vertices)."""
    if mesh.n_faces == 0:
        return np.zeros((0,), dtype=np.int64)
    edges = mesh.edges()
    graph = coo_matrix(
        (np.ones(len(edges), dtype=np.int8), (edges[:, 0], edges[:, 1])),
        shape=(mesh.n_vertices, mesh.n_vertices),
    )
    _, labels = connected_components(graph, directed=False)
    return np.asarray(labels, dtype=np.int64)[mesh.faces[:, 0]]


@dataclass(frozen=True)
class _Rect:
    shell: int
    axis: int
    positive: bool
    offset: float
    u0: float
    u1: float
    v0: float
    v1: float

    def point(self, u: float, v: float) -> tuple[float, float, float]:
        p = [0.0, 0.0, 0.0]
        ua, va = _PLANE_AXES[self.axis]
        p[self.axis] = self.offset
        p[ua] = u
        p[va] = v
        return p[0], p[1], p[2]


def _unique_coords(values: np.ndarray, tolerance: float) -> np.ndarray:
    q = _quantize(values, tolerance)
    _, first = np.unique(q, return_index=True)
    return np.asarray(values, dtype=np.float64)[first]


def _coverage(tri_uv: np.ndarray, us: np.ndarray, vs: np.ndarray) -> np.ndarray:
    """Cells of the (vs x us) grid whose centre lies inside any triangle."""
    cu = (us[:-1] + us[1:]) / 2.0
    cv = (vs[:-1] + vs[1:]) / 2.0
    covered = np.zeros((len(cv), len(cu)), dtype=bool)
    scale = max(float(us[-1] - us[0]), float(vs[-1] - vs[0]), 1.0)
    eps = 1e-9 * scale * scale
    for tri in tri_uv:
        lo = tri.min(axis=0)
        hi = tri.max(axis=0)
        iu0, iu1 = np.searchsorted(cu, lo[0]), np.searchsorted(cu, hi[0], side="right")
        iv0, iv1 = np.searchsorted(cv, lo[1]), np.searchsorted(cv, hi[1], side="right")
        if iu0 >= iu1 or iv0 >= iv1:
            continue
        pu, pv = np.meshgrid(cu[iu0:iu1], cv[iv0:iv1])
        inside_pos = np.ones(pu.shape, dtype=bool)
        inside_neg = np.ones(pu.shape, dtype=bool)
        for k in range(3):
            a = tri[k]
            b = tri[(k + 1) % 3]
            d = (b[0] - a[0]) * (pv - a[1]) - (b[1] - a[1]) * (pu - a[0])
            inside_pos &= d >= -eps
            inside_neg &= d <= eps
        covered[iv0:iv1, iu0:iu1] |= inside_pos | inside_neg
    return covered


def _greedy_rectangles(covered: np.ndarray) -> list[tuple[int, int, int, int]]:
    """Greedy meshing: maximal runs along u, then grown along v."""
    used = np.zeros_like(covered)
    rects: list[tuple[int, int, int, int]] = []
    n_v, n_u = covered.shape
    for iv in range(n_v):
        iu = 0
        while iu < n_u:
            if not covered[iv, iu] or used[iv, iu]:
                iu += 1
                continue
            iu_end = iu + 1
            while iu_end < n_u and covered[iv, iu_end] and not used[iv, iu_end]:
                iu_end += 1
            iv_end = iv + 1
            while (
                iv_end < n_v
                and covered[iv_end, iu:iu_end].all()
                and not used[iv_end, iu:iu_end].any()
            ):
                iv_end += 1
            used[iv:iv_end, iu:iu_end] = True
            rects.append((iu, iu_end, iv, iv_end))
            iu = iu_end
    return rects


def _merge_plane(tri_uv: np.ndarray, tolerance: float) -> Optional[list[tuple[float, float, float, float]]]:
    """
    Rectangles covering the union of coplanar triangles, or None when the
    union is not a rectilinear region of the coordinate grid.
    """
    us = _unique_coords(tri_uv[:, :, 0].reshape(-1), tolerance)
    vs = _unique_coords(tri_uv[:, :, 1].reshape(-1), tolerance)
    if len(us) < 2 or len(vs) < 2:
        return None

    covered = _coverage(tri_uv, us, vs)
    cell_area = np.outer(np.diff(vs), np.diff(us))
    covered_area = float(cell_area[covered].sum())
    e1 = tri_uv[:, 1] - tri_uv[:, 0]
    e2 = tri_uv[:, 2] - tri_uv[:, 0]
    tri_area = float(np.abs(e1[:, 0] * e2[:, 1] - e1[:, 1] * e2[:, 0]).sum() / 2.0)
    if abs(covered_area - tri_area) > 1e-6 * max(1.0, tri_area):
        return None

    return [
        (float(us[iu0]), float(us[iu1]), float(vs[iv0]), float(vs[iv1]))
        for iu0, iu1, iv0, iv1 in _greedy_rectangles(covered)
    ]


class _LineIndex:
    """Sorted vertex coordinates along every axis-parallel line of a shell."""

    def __init__(self, tolerance: float):
        self.tolerance = tolerance
        self._lines: dict[tuple[int, int, int, int], list[tuple[int, float]]] = {}
        self._sorted = False

    def add(self, shell: int, point: tuple[float, float, float]) -> None:
        q = [int(round(c / self.tolerance)) for c in point]
        for free in range(3):
            a, b = [k for k in range(3) if k != free]
            self._lines.setdefault((shell, free, q[a], q[b]), []).append((q[free], point[free]))
        self._sorted = False

    def interior(self, shell: int, start: tuple[float, float, float], free: int, end_value: float) -> list[float]:
        """Free-axis coordinates strictly between ``start`` and ``end_value`` (ascending)."""
        if not self._sorted:
            for key, values in self._lines.items():
                first: dict[int, float] = {}
                for q, value in values:
                    first.setdefault(q, value)
                self._lines[key] = sorted(first.items())
            self._sorted = True
        a, b = [k for k in range(3) if k != free]
        line = self._lines.get(
            (shell, free, int(round(start[a] / self.tolerance)), int(round(start[b] / self.tolerance)))
        )
        if not line:
            return []
        q0 = int(round(start[free] / self.tolerance))
        q1 = int(round(end_value / self.tolerance))
        lo, hi = min(q0, q1), max(q0, q1)
        keys = [k for k, _ in line]
        i0 = bisect_right(keys, lo)
        i1 = bisect_left(keys, hi)
        return [v for _, v in line[i0:i1]]


def _rect_polygon(rect: _Rect, index: _LineIndex) -> tuple[list[tuple[float, float, float]], list[int]]:
    """Outward-ordered boundary points including split points, plus corner positions."""
    ua, va = _PLANE_AXES[rect.axis]
    corners_uv = ((rect.u0, rect.v0), (rect.u1, rect.v0), (rect.u1, rect.v1), (rect.u0, rect.v1))
    edge_axes = (ua, va, ua, va)
    polygon: list[tuple[float, float, float]] = []
    corner_pos: list[int] = []
    for k in range(4):
        cu, cv = corners_uv[k]
        nu, nv = corners_uv[(k + 1) % 4]
        start = rect.point(cu, cv)
        corner_pos.append(len(polygon))
        polygon.append(start)
        free = edge_axes[k]
        end_value = rect.point(nu, nv)[free]
        between = index.interior(rect.shell, start, free, end_value)
        if end_value < start[free]:
            between = between[::-1]
        for value in between:
            p = list(start)
            p[free] = value
            polygon.append((p[0], p[1], p[2]))
    if not rect.positive:
        n = len(polygon)
        polygon = [polygon[0]] + polygon[:0:-1]
        corner_pos = sorted((n - p) % n for p in corner_pos)
    return polygon, corner_pos


def _triangulate_polygon(n: int, corner_pos: list[int]) -> tuple[list[tuple[int, int, int]], bool]:
    """
    Fan-triangulate a convex rectangle outline with collinear split points.

    Returns local index triples and whether a centre vertex (index ``n``) is
    needed.
    """
    if n == 4:
        return [(0, 1, 2), (0, 2, 3)], False
    corner_set = set(corner_pos)
    for p in corner_pos:
        if (p - 1) % n in corner_set and (p + 1) % n in corner_set:
            ring = [(p + i) % n for i in range(n)]
            return [(ring[0], ring[i], ring[i + 1]) for i in range(1, n - 1)], False
    return [(n, i, (i + 1) % n) for i in range(n)], True


def _single_rectangle_groups(
    mesh: Mesh,
    face_idx: np.ndarray,
    axis: np.ndarray,
    group: np.ndarray,
    n_groups: int,
    tolerance: float,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Flag plane groups made of two triangles that split their bounding
    rectangle along a diagonal; such groups cannot shrink.

    Returns the flags and the (u0, u1, v0, v1) bounds of every group.
    """
    a = axis[face_idx]
    ua = ((a + 1) % 3)[:, None]
    va = ((a + 2) % 3)[:, None]
    tri = mesh.vertices[mesh.faces[face_idx]]
    rows = np.arange(len(face_idx))[:, None]
    cols = np.arange(3)[None, :]
    u = tri[rows, cols, ua]
    v = tri[rows, cols, va]

    u0 = np.full(n_groups, np.inf)
    v0 = np.full(n_groups, np.inf)
    u1 = np.full(n_groups, -np.inf)
    v1 = np.full(n_groups, -np.inf)
    np.minimum.at(u0, group, u.min(axis=1))
    np.minimum.at(v0, group, v.min(axis=1))
    np.maximum.at(u1, group, u.max(axis=1))
    np.maximum.at(v1, group, v.max(axis=1))
    bounds = np.column_stack([u0, u1, v0, v1])

    gu0, gu1 = u0[group][:, None], u1[group][:, None]
    gv0, gv1 = v0[group][:, None], v1[group][:, None]
    on_corner = (
        (np.minimum(np.abs(u - gu0), np.abs(u - gu1)) <= tolerance)
        & (np.minimum(np.abs(v - gv0), np.abs(v - gv1)) <= tolerance)
    ).all(axis=1)
    codes = 2 * (np.abs(u - gu1) < np.abs(u - gu0)) + (np.abs(v - gv1) < np.abs(v - gv0))
    corner_bits = np.bitwise_or.reduce(np.left_shift(1, codes), axis=1)
    # Exactly three distinct corners per triangle.
    three = np.isin(corner_bits, (7, 11, 13, 14)) & on_corner

    counts = np.bincount(group, minlength=n_groups)
    bad = np.bincount(group, weights=(~three).astype(np.float64), minlength=n_groups)
    missing = np.zeros(n_groups, dtype=np.int64)
    np.bitwise_or.at(missing, group, 15 - corner_bits)
    # The two missing corners must be opposite: (u0, v0) with (u1, v1) or the other pair.
    single = (counts == 2) & (bad == 0) & np.isin(missing, (6, 9))
    return single, bounds


def optimize_mesh(mesh: Mesh, *, tolerance: float = DEFAULT_TOLERANCE) -> Mesh:
    """
    Merge coplanar axis-aligned faces of each shell into larger rectangles.

    Faces whose plane union is not rectilinear, and faces that are not axis
    aligned, are kept as they are. Run ``merge_adjacent_faces`` first so that
    touching cubes form a single shell.

    Returns:
        New mesh without build tags, or a copy of the input when merging
        would not reduce the face count.
    """
    if mesh.is_empty:
        return mesh.copy()

    n_faces = mesh.n_faces
    normals = mesh.face_normals
    shells = face_shells(mesh)
    axis = np.argmax(np.abs(normals), axis=1)
    comp = normals[np.arange(n_faces), axis]
    aligned = np.abs(comp) > 1.0 - 1e-9
    positive = comp > 0
    offsets = mesh.vertices[mesh.faces[:, 0], axis]

    # Units in order of first face: ("group", faces, group id) or ("face", [face], -1).
    units: list[tuple[int, str, np.ndarray, int]] = []
    single = np.zeros((0,), dtype=bool)
    bounds = np.zeros((0, 4), dtype=np.float64)
    aligned_idx = np.nonzero(aligned)[0]
    if len(aligned_idx):
        keys = np.column_stack(
            [
                shells[aligned_idx],
                axis[aligned_idx],
                positive[aligned_idx].astype(np.int64),
                _quantize(offsets[aligned_idx], tolerance),
            ]
        )
        _, first, inverse = np.unique(keys, axis=0, return_index=True, return_inverse=True)
        inverse = np.asarray(inverse).reshape(-1)
        order = np.argsort(inverse, kind="stable")
        splits = np.cumsum(np.bincount(inverse, minlength=len(first)))[:-1]
        single, bounds = _single_rectangle_groups(mesh, aligned_idx, axis, inverse, len(first), tolerance)
        if single.all():
            _LOGGER.debug("Every coplanar group is already a single rectangle; nothing to merge")
            return mesh.copy()
        for g, members in enumerate(np.split(aligned_idx[order], splits)):
            units.append((int(aligned_idx[first[g]]), "group", members, g))
    else:
        return mesh.copy()
    for f in np.nonzero(~aligned)[0]:
        units.append((int(f), "face", np.asarray([f]), -1))
    units.sort(key=lambda u: u[0])

    rects_per_unit: dict[int, list[_Rect]] = {}
    index = _LineIndex(tolerance)
    for u_id, (first_face, kind, members, g) in enumerate(units):
        if kind == "group":
            a = int(axis[first_face])
            if single[g]:
                merged = [(float(bounds[g, 0]), float(bounds[g, 1]), float(bounds[g, 2]), float(bounds[g, 3]))]
            else:
                ua, va = _PLANE_AXES[a]
                tri = mesh.vertices[mesh.faces[members]]
                merged = _merge_plane(tri[:, :, [ua, va]], tolerance)
            if merged is not None:
                shell = int(shells[first_face])
                rects = [
                    _Rect(shell, a, bool(positive[first_face]), float(offsets[first_face]), *r)
                    for r in merged
                ]
                rects_per_unit[u_id] = rects
                for rect in rects:
                    for cu, cv in ((rect.u0, rect.v0), (rect.u1, rect.v0), (rect.u1, rect.v1), (rect.u0, rect.v1)):
                        index.add(shell, rect.point(cu, cv))
                continue
            log_once(
                _LOGGER,
                "optimize_mesh:non_rectilinear",
                logging.DEBUG,
                "Coplanar face group is not rectilinear; keeping its faces",
            )
        for f in members:
            for v in mesh.faces[f]:
                index.add(int(shells[f]), tuple(float(c) for c in mesh.vertices[v]))

    pool: dict[tuple[int, int, int, int], int] = {}
    out_vertices: list[tuple[float, float, float]] = []

    def vertex_id(shell: int, p: tuple[float, float, float]) -> int:
        key = (shell,) + tuple(int(round(c / tolerance)) for c in p)
        vid = pool.get(key)
        if vid is None:
            vid = len(out_vertices)
            pool[key] = vid
            out_vertices.append(p)
        return vid

    out_faces: list[tuple[int, int, int]] = []
    for u_id, (_, _, members, _) in enumerate(units):
        rects = rects_per_unit.get(u_id)
        if rects is None:
            for f in members:
                shell = int(shells[f])
                out_faces.append(
                    tuple(vertex_id(shell, tuple(float(c) for c in mesh.vertices[v])) for v in mesh.faces[f])
                )
            continue
        for rect in rects:
            polygon, corner_pos = _rect_polygon(rect, index)
            ids = [vertex_id(rect.shell, p) for p in polygon]
            triangles, needs_centre = _triangulate_polygon(len(polygon), corner_pos)
            if needs_centre:
                centre = rect.point((rect.u0 + rect.u1) / 2.0, (rect.v0 + rect.v1) / 2.0)
                ids.append(vertex_id(rect.shell, centre))
            out_faces.extend((ids[a], ids[b], ids[c]) for a, b, c in triangles)

    if len(out_faces) >= n_faces:
        _LOGGER.debug("Coplanar merge would not remove faces (%d >= %d); keeping input", len(out_faces), n_faces)
        return mesh.copy()

    metadata = dict(mesh.metadata)
    metadata["optimized"] = True
    result = Mesh(
        vertices=np.asarray(out_vertices, dtype=np.float64).reshape(-1, 3),
        faces=np.asarray(out_faces, dtype=np.int64).reshape(-1, 3),
        unit=mesh.unit,
        metadata=metadata,
    )
    _LOGGER.debug("Optimized mesh: %d -> %d faces", n_faces, result.n_faces)
    return result


"""
Geometric analyses used by the quality assessment.

All functions are read-only over a ``Mesh`` and vectorized with numpy where
the data size warrants it. Thickness and bridging are approximations based
on sampled ray casts and face grouping.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional

import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components

from .logging_utils import log_once
from .mesh_data import Mesh

_LOGGER = logging.getLogger(__name__)

UP = np.array([0.0, 1.0, 0.0])

_PAIR_CHUNK = 200_000
_MAX_GRID_ENTRIES = 5_000_000


@dataclass(frozen=True)
class ManifoldSummary:
    score: float
    manifold_edges: int
    total_edges: int
    boundary_edges: int
    non_manifold_edges: int


def manifold_summary(mesh: Mesh) -> ManifoldSummary:
    """Edge → face count over unordered vertex pairs; manifold iff exactly two faces."""
    _, counts = mesh.edge_face_counts()
    total = int(len(counts))
    manifold = int(np.count_nonzero(counts == 2))
    return ManifoldSummary(
        score=100.0 if total == 0 else manifold / total * 100.0,
        manifold_edges=manifold,
        total_edges=total,
        boundary_edges=int(np.count_nonzero(counts == 1)),
        non_manifold_edges=int(np.count_nonzero(counts > 2)),
    )


def count_duplicate_vertices(vertices: np.ndarray, tolerance: float) -> int:
    """Vertices that collide with an earlier one on the ``tolerance`` grid."""
    vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    if len(vertices) == 0:
        return 0
    keys = np.round(vertices / float(tolerance)).astype(np.int64)
    return int(len(keys) - len(np.unique(keys, axis=0)))


# ----------------------------------------------------------------------------
# Self intersections
# ----------------------------------------------------------------------------

def _candidate_pairs(tri: np.ndarray, pad: float) -> np.ndarray:
    """Face pairs whose padded bounding boxes share a uniform grid cell."""
    n = len(tri)
    tmin = tri.min(axis=1) - pad
    tmax = tri.max(axis=1) + pad
    extent = (tmax - tmin).max(axis=1)
    cell = float(np.median(extent)) if n else 1.0
    if not np.isfinite(cell) or cell <= 0:
        cell = 1.0
    origin = tmin.min(axis=0)
    lo = np.floor((tmin - origin) / cell).astype(np.int64)
    hi = np.floor((tmax - origin) / cell).astype(np.int64)
    span = hi - lo + 1
    counts = span.prod(axis=1)
    total = int(counts.sum())
    if total > _MAX_GRID_ENTRIES:
        cell *= (total / _MAX_GRID_ENTRIES) ** (1.0 / 3.0) * 1.5
        lo = np.floor((tmin - origin) / cell).astype(np.int64)
        hi = np.floor((tmax - origin) / cell).astype(np.int64)
        span = hi - lo + 1
        counts = span.prod(axis=1)
        total = int(counts.sum())

    face_ids = np.repeat(np.arange(n, dtype=np.int64), counts)
    local = np.arange(total, dtype=np.int64) - np.repeat(np.cumsum(counts) - counts, counts)
    sx = span[face_ids, 0]
    sy = span[face_ids, 1]
    offs = np.stack([local % sx, (local // sx) % sy, local // (sx * sy)], axis=1)
    cells = lo[face_ids] + offs
    _, cell_ids = np.unique(cells, axis=0, return_inverse=True)
    cell_ids = np.asarray(cell_ids).reshape(-1)

    order = np.argsort(cell_ids, kind="stable")
    sorted_faces = face_ids[order]
    bounds = np.flatnonzero(np.diff(cell_ids[order])) + 1
    pair_chunks: list[np.ndarray] = []
    for members in np.split(sorted_faces, bounds):
        k = len(members)
        if k < 2:
            continue
        iu, ju = np.triu_indices(k, 1)
        a = members[iu]
        b = members[ju]
        pair_chunks.append(np.stack([np.minimum(a, b), np.maximum(a, b)], axis=1))
    if not pair_chunks:
        return np.zeros((0, 2), dtype=np.int64)
    pairs = np.unique(np.concatenate(pair_chunks, axis=0), axis=0)

    overlap = np.all(tmin[pairs[:, 0]] <= tmax[pairs[:, 1]], axis=1) & np.all(
        tmin[pairs[:, 1]] <= tmax[pairs[:, 0]], axis=1
    )
    return pairs[overlap]


def _plane_interval(tri: np.ndarray, dist: np.ndarray, direction: np.ndarray, eps: float) -> tuple[np.ndarray, np.ndarray]:
    """Projection interval of each triangle's cut by the other triangle's plane."""
    lo = np.full(len(tri), np.inf)
    hi = np.full(len(tri), -np.inf)
    for i, j in ((0, 1), (1, 2), (2, 0)):
        di = dist[:, i]
        dj = dist[:, j]
        crossing = (di * dj) < 0
        t = np.where(crossing, di / np.where(crossing, di - dj, 1.0), 0.0)
        p = tri[:, i] + (tri[:, j] - tri[:, i]) * t[:, None]
        s = np.einsum("ij,ij->i", p, direction)
        lo = np.where(crossing, np.minimum(lo, s), lo)
        hi = np.where(crossing, np.maximum(hi, s), hi)
    for i in range(3):
        on_plane = np.abs(dist[:, i]) <= eps
        s = np.einsum("ij,ij->i", tri[:, i], direction)
        lo = np.where(on_plane, np.minimum(lo, s), lo)
        hi = np.where(on_plane, np.maximum(hi, s), hi)
    return lo, hi


def triangles_intersect(a: np.ndarray, b: np.ndarray, eps: float) -> np.ndarray:
    """
    Proper intersection test for triangle pairs ``a[k]`` / ``b[k]``.

    Only crossings count: each triangle must strictly straddle the other's
    plane and the two cut segments must overlap with positive length.
    Coplanar and touching pairs are reported as not intersecting.
    """
    n1 = np.cross(a[:, 1] - a[:, 0], a[:, 2] - a[:, 0])
    n2 = np.cross(b[:, 1] - b[:, 0], b[:, 2] - b[:, 0])
    l1 = np.linalg.norm(n1, axis=1)
    l2 = np.linalg.norm(n2, axis=1)
    valid = (l1 > 0) & (l2 > 0)
    n1 = n1 / np.where(l1 > 0, l1, 1.0)[:, None]
    n2 = n2 / np.where(l2 > 0, l2, 1.0)[:, None]

    db = np.einsum("ijk,ik->ij", b - a[:, None, 0], n1)
    da = np.einsum("ijk,ik->ij", a - b[:, None, 0], n2)
    straddle = (
        (db.max(axis=1) > eps)
        & (db.min(axis=1) < -eps)
        & (da.max(axis=1) > eps)
        & (da.min(axis=1) < -eps)
    )
    direction = np.cross(n1, n2)
    dl = np.linalg.norm(direction, axis=1)
    valid &= straddle & (dl > 1e-12)
    direction = direction / np.where(dl > 0, dl, 1.0)[:, None]

    lo_a, hi_a = _plane_interval(a, da, direction, eps)
    lo_b, hi_b = _plane_interval(b, db, direction, eps)
    overlap = np.minimum(hi_a, hi_b) - np.maximum(lo_a, lo_b)
    return valid & (overlap > eps)


def find_self_intersections(
    mesh: Mesh,
    *,
    face_limit: int,
    tolerance: float = 1e-9,
) -> Optional[np.ndarray]:
    """
    Indices of faces that cross another face of the same mesh.

    Pairs sharing a vertex index are skipped. Returns None when the mesh has
    more than ``face_limit`` faces and the check was not run.
    """
    if mesh.n_faces < 2:
        return np.zeros((0,), dtype=np.int64)
    if mesh.n_faces > face_limit:
        log_once(
            _LOGGER,
            f"self_intersections:skipped:{face_limit}",
            logging.INFO,
            "Self-intersection check skipped: %d faces exceeds limit %d",
            mesh.n_faces,
            face_limit,
        )
        return None

    tri = mesh.triangles()
    scale = max(float(mesh.extents.max()), 1.0)
    eps = float(tolerance) * scale
    pairs = _candidate_pairs(tri, eps)
    if len(pairs):
        fa = mesh.faces[pairs[:, 0]]
        fb = mesh.faces[pairs[:, 1]]
        shared = (fa[:, :, None] == fb[:, None, :]).any(axis=(1, 2))
        pairs = pairs[~shared]

    hits: list[np.ndarray] = []
    for start in range(0, len(pairs), _PAIR_CHUNK):
        chunk = pairs[start:start + _PAIR_CHUNK]
        mask = triangles_intersect(tri[chunk[:, 0]], tri[chunk[:, 1]], eps)
        if mask.any():
            hits.append(chunk[mask].reshape(-1))
    if not hits:
        return np.zeros((0,), dtype=np.int64)
    return np.unique(np.concatenate(hits))


# ----------------------------------------------------------------------------
# Overhangs
# ----------------------------------------------------------------------------

def face_overhang_angles(mesh: Mesh) -> np.ndarray:
    """Angle from vertical, ``arccos(|n . up|)`` in degrees, per face."""
    if mesh.n_faces == 0:
        return np.zeros((0,), dtype=np.float64)
    ny = np.clip(np.abs(mesh.face_normals @ UP), 0.0, 1.0)
    return np.degrees(np.arccos(ny))


def overhang_faces(mesh: Mesh, max_angle: float) -> tuple[np.ndarray, np.ndarray]:
    """
    Faces that do not face upward and whose angle exceeds ``max_angle``.

    Returns (face indices, angles in degrees).
    """
    if mesh.n_faces == 0:
        return np.zeros((0,), dtype=np.int64), np.zeros((0,), dtype=np.float64)
    angles = face_overhang_angles(mesh)
    not_upward = (mesh.face_normals @ UP) <= 1e-9
    flagged = np.flatnonzero(not_upward & (angles > float(max_angle) + 1e-9))
    return flagged, angles[flagged]


# ----------------------------------------------------------------------------
# Wall thickness
# ----------------------------------------------------------------------------

@dataclass(frozen=True)
class ThicknessSample:
    face_index: int
    position: tuple[float, float, float]
    thickness: float


def sample_face_indices(n_faces: int, limit: int) -> np.ndarray:
    """Evenly spread, deterministic face sample."""
    if n_faces <= limit:
        return np.arange(n_faces, dtype=np.int64)
    return np.unique(np.linspace(0, n_faces - 1, int(limit)).round().astype(np.int64))


def measure_wall_thickness(mesh: Mesh, *, samples: int) -> list[ThicknessSample]:
    """
    Cast a ray inward (against the face normal) from sampled face centroids
    and record the distance to the nearest opposite surface. Faces whose ray
    escapes (open geometry) produce no sample.

    All rays go through one trimesh ray query.
    """
    if mesh.n_faces == 0:
        return []
    centroids = mesh.triangles().mean(axis=1)
    scale = max(float(mesh.extents.max()), 1e-9)
    eps = 1e-7 * scale

    picked = sample_face_indices(mesh.n_faces, samples)
    normals = mesh.face_normals[picked]
    valid = np.any(normals != 0.0, axis=1)
    picked, normals = picked[valid], normals[valid]
    if len(picked) == 0:
        return []

    origins = centroids[picked] - normals * eps
    directions = -normals
    locations, index_ray, index_tri = mesh.to_trimesh().ray.intersects_location(
        ray_origins=origins,
        ray_directions=directions,
        multiple_hits=True,
    )
    index_ray = np.asarray(index_ray, dtype=np.int64)
    index_tri = np.asarray(index_tri, dtype=np.int64)
    along = np.einsum("ij,ij->i", np.asarray(locations, dtype=np.float64).reshape(-1, 3) - origins[index_ray],
                      directions[index_ray])
    hit = (index_tri != picked[index_ray]) & (along > eps)
    nearest = np.full(len(picked), np.inf)
    np.minimum.at(nearest, index_ray[hit], along[hit])

    out: list[ThicknessSample] = []
    for i in np.flatnonzero(np.isfinite(nearest)):
        c = centroids[picked[i]]
        out.append(
            ThicknessSample(int(picked[i]), (float(c[0]), float(c[1]), float(c[2])), float(nearest[i]) + eps)
        )
    return out


# ----------------------------------------------------------------------------
# Bridging
# ----------------------------------------------------------------------------

@dataclass(frozen=True)
class BridgeSpan:
    faces: tuple[int, ...]
    start_point: tuple[float, float, float]
    end_point: tuple[float, float, float]
    length: float


def _points_in_triangles_xz(points: np.ndarray, tri: np.ndarray, eps: float) -> np.ndarray:
    """For each point, whether it lies inside any triangle (projected on XZ)."""
    inside = np.zeros(len(points), dtype=bool)
    if len(tri) == 0 or len(points) == 0:
        return inside
    pu = points[:, None, 0]
    pv = points[:, None, 2]
    pos = np.ones((len(points), len(tri)), dtype=bool)
    neg = np.ones((len(points), len(tri)), dtype=bool)
    for k in range(3):
        a = tri[None, :, k]
        b = tri[None, :, (k + 1) % 3]
        d = (b[..., 0] - a[..., 0]) * (pv - a[..., 2]) - (b[..., 2] - a[..., 2]) * (pu - a[..., 0])
        pos &= d >= -eps
        neg &= d <= eps
    return (pos | neg).any(axis=1)


def find_unsupported_spans(mesh: Mesh, *, tolerance: float = 1e-6) -> list[BridgeSpan]:
    """
    Groups of downward horizontal faces above the build plate that do not
    rest on an upward face at the same height.

    Span length is the longest horizontal extent of the group, an upper
    bound of the real unsupported distance.
    """
    if mesh.n_faces == 0:
        return []
    ny = mesh.face_normals @ UP
    tri = mesh.triangles()
    scale = max(float(mesh.extents.max()), 1.0)
    tol = tolerance * scale
    # XZ containment compares cross products, which are squared lengths.
    area_tol = tol * scale
    plate = float(mesh.bounds[0][1])

    down = np.flatnonzero((ny < -(1.0 - 1e-6)) & (tri[:, :, 1].min(axis=1) > plate + tol))
    if len(down) == 0:
        return []

    up = np.flatnonzero(ny > 1.0 - 1e-6)
    up_y = tri[up, 0, 1]
    centroids = tri[down].mean(axis=1)
    supported = np.zeros(len(down), dtype=bool)
    for level in np.unique(np.round(centroids[:, 1] / tol)):
        sel = np.flatnonzero(np.round(centroids[:, 1] / tol) == level)
        resting = up[np.abs(up_y - centroids[sel[0], 1]) <= tol]
        if len(resting):
            supported[sel] = _points_in_triangles_xz(centroids[sel], tri[resting], area_tol)
    free = down[~supported]
    if len(free) == 0:
        return []

    sub_faces = mesh.faces[free]
    local_ids, local_faces = np.unique(sub_faces, return_inverse=True)
    local_faces = np.asarray(local_faces).reshape(-1, 3)
    edges = np.concatenate([local_faces[:, [0, 1]], local_faces[:, [1, 2]]], axis=0)
    graph = coo_matrix(
        (np.ones(len(edges), dtype=np.int8), (edges[:, 0], edges[:, 1])),
        shape=(len(local_ids), len(local_ids)),
    )
    _, labels = connected_components(graph, directed=False)
    face_labels = labels[local_faces[:, 0]]

    spans: list[BridgeSpan] = []
    for label in np.unique(face_labels):
        members = free[face_labels == label]
        pts = tri[members].reshape(-1, 3)
        lo = pts.min(axis=0)
        hi = pts.max(axis=0)
        y = float(lo[1])
        dx = float(hi[0] - lo[0])
        dz = float(hi[2] - lo[2])
        if dx >= dz:
            zm = float((lo[2] + hi[2]) / 2.0)
            start, end = (float(lo[0]), y, zm), (float(hi[0]), y, zm)
        else:
            xm = float((lo[0] + hi[0]) / 2.0)
            start, end = (xm, y, float(lo[2])), (xm, y, float(hi[2]))
        spans.append(BridgeSpan(tuple(int(f) for f in members), start, end, max(dx, dz)))
    return spans

"""
Mesh container, derived statistics and mesh file loading.

The mesh is a flat vertex/face array pair. Builder-produced meshes also
carry per-face tags (source cell and cube side) used by the optimizer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Any, Optional, Union

import numpy as np
import trimesh

_LOGGER = logging.getLogger(__name__)

# Cube side codes stored in ``Mesh.face_sides``; -1 marks faces that belong to
# no axis side (chamfer bevels) or to the base plinth.
SIDE_NEG_X = 0
SIDE_POS_X = 1
SIDE_NEG_Y = 2
SIDE_POS_Y = 3
SIDE_NEG_Z = 4
SIDE_POS_Z = 5
NO_SIDE = -1
BASE_CELL = -1

# OBJ text size estimate per element (bytes).
_OBJ_BYTES_PER_VERTEX = 30
_OBJ_BYTES_PER_FACE = 20


@dataclass
class Mesh:
    """
    Triangle mesh container.

    Attributes:
        vertices: (N, 3) float64 coordinates, Y is up
        faces: (M, 3) int64 vertex indices, counter-clockwise seen from outside
        face_normals: (M, 3) unit normals (computed when omitted)
        face_cells: (M,) source cell index ``row * width + col`` or -1
        face_sides: (M,) cube side code or -1
        unit: coordinate unit
        metadata: build information (params, pattern size, cube count)
    """
    vertices: np.ndarray
    faces: np.ndarray
    face_normals: Optional[np.ndarray] = None
    face_cells: Optional[np.ndarray] = None
    face_sides: Optional[np.ndarray] = None
    unit: str = "mm"
    metadata: dict[str, Any] = field(default_factory=dict)

    _bounds: Optional[np.ndarray] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        self.vertices = np.asarray(self.vertices, dtype=np.float64).reshape(-1, 3)
        self.faces = np.asarray(self.faces, dtype=np.int64).reshape(-1, 3)
        if self.face_cells is not None:
            self.face_cells = np.asarray(self.face_cells, dtype=np.int64).reshape(-1)
        if self.face_sides is not None:
            self.face_sides = np.asarray(self.face_sides, dtype=np.int8).reshape(-1)
        if self.face_normals is None:
            self.compute_normals()
        else:
            self.face_normals = np.asarray(self.face_normals, dtype=np.float64).reshape(-1, 3)

    @classmethod
    def empty(cls, unit: str = "mm", metadata: Optional[dict[str, Any]] = None) -> "Mesh":
        return cls(
            vertices=np.zeros((0, 3), dtype=np.float64),
            faces=np.zeros((0, 3), dtype=np.int64),
            face_cells=np.zeros((0,), dtype=np.int64),
            face_sides=np.zeros((0,), dtype=np.int8),
            unit=unit,
            metadata=dict(metadata or {}),
        )

    @property
    def n_vertices(self) -> int:
        return len(self.vertices)

    @property
    def n_faces(self) -> int:
        return len(self.faces)

    @property
    def is_empty(self) -> bool:
        return self.n_vertices == 0 or self.n_faces == 0

    @property
    def has_tags(self) -> bool:
        return (
            self.face_cells is not None
            and self.face_sides is not None
            and len(self.face_cells) == self.n_faces
            and len(self.face_sides) == self.n_faces
        )

    @property
    def bounds(self) -> np.ndarray:
        """[[min_x, min_y, min_z], [max_x, max_y, max_z]]; zeros for an empty mesh."""
        if self._bounds is None:
            if self.n_vertices == 0:
                self._bounds = np.zeros((2, 3), dtype=np.float64)
            else:
                self._bounds = np.array([self.vertices.min(axis=0), self.vertices.max(axis=0)])
        return self._bounds

    @property
    def extents(self) -> np.ndarray:
        return self.bounds[1] - self.bounds[0]

    def triangles(self) -> np.ndarray:
        """(M, 3, 3) corner coordinates per face."""
        return self.vertices[self.faces]

    @property
    def face_areas(self) -> np.ndarray:
        if self.n_faces == 0:
            return np.zeros((0,), dtype=np.float64)
        tri = self.triangles()
        cross = np.cross(tri[:, 1] - tri[:, 0], tri[:, 2] - tri[:, 0])
        return np.linalg.norm(cross, axis=1) / 2.0

    @property
    def surface_area(self) -> float:
        return float(self.face_areas.sum())

    @property
    def volume(self) -> float:
        """Enclosed volume by the divergence theorem (signed tetrahedra from the origin)."""
        if self.n_faces == 0:
            return 0.0
        tri = self.triangles()
        signed = np.einsum("ij,ij->i", tri[:, 0], np.cross(tri[:, 1], tri[:, 2]))
        return float(signed.sum() / 6.0)

    def compute_normals(self, *, force: bool = False) -> None:
        if self.face_normals is not None and not force:
            return
        if self.n_faces == 0:
            self.face_normals = np.zeros((0, 3), dtype=np.float64)
            return
        tri = self.triangles()
        cross = np.cross(tri[:, 1] - tri[:, 0], tri[:, 2] - tri[:, 0])
        norms = np.linalg.norm(cross, axis=1, keepdims=True)
        norms[norms == 0] = 1
        self.face_normals = cross / norms

    def copy(self) -> "Mesh":
        return Mesh(
            vertices=self.vertices.copy(),
            faces=self.faces.copy(),
            face_normals=self.face_normals.copy() if self.face_normals is not None else None,
            face_cells=self.face_cells.copy() if self.face_cells is not None else None,
            face_sides=self.face_sides.copy() if self.face_sides is not None else None,
            unit=self.unit,
            metadata=dict(self.metadata),
        )

    def translated(self, offset: np.ndarray) -> "Mesh":
        out = self.copy()
        out.vertices = out.vertices + np.asarray(offset, dtype=np.float64).reshape(1, 3)
        out._bounds = None
        return out

    def scaled(self, factor: float) -> "Mesh":
        out = self.copy()
        out.vertices = out.vertices * float(factor)
        out._bounds = None
        return out

    def edges(self) -> np.ndarray:
        """(3M, 2) sorted vertex-index pairs, one per face edge occurrence."""
        if self.n_faces == 0:
            return np.zeros((0, 2), dtype=np.int64)
        e = np.concatenate([self.faces[:, [0, 1]], self.faces[:, [1, 2]], self.faces[:, [2, 0]]], axis=0)
        return np.sort(e, axis=1)

    def edge_face_counts(self) -> tuple[np.ndarray, np.ndarray]:
        """Unique undirected edges and the number of faces referencing each."""
        edges = self.edges()
        if len(edges) == 0:
            return np.zeros((0, 2), dtype=np.int64), np.zeros((0,), dtype=np.int64)
        unique, counts = np.unique(edges, axis=0, return_counts=True)
        return unique, counts

    def to_trimesh(self) -> trimesh.Trimesh:
        return trimesh.Trimesh(vertices=self.vertices, faces=self.faces, process=False)

    @classmethod
    def from_trimesh(cls, mesh: trimesh.Trimesh, unit: str = "mm") -> "Mesh":
        return cls(
            vertices=np.asarray(mesh.vertices, dtype=np.float64),
            faces=np.asarray(mesh.faces, dtype=np.int64),
            unit=unit,
        )


@dataclass(frozen=True)
class BoundingBox:
    width: float
    height: float
    depth: float


@dataclass(frozen=True)
class MeshStats:
    vertex_count: int
    face_count: int
    edge_count: int
    bounding_box: BoundingBox
    surface_area: float
    volume: float
    memory_usage_kb: float
    cube_count: int
    file_size_estimate: int
    is_watertight: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "vertex_count": self.vertex_count,
            "face_count": self.face_count,
            "edge_count": self.edge_count,
            "bounding_box": {
                "width": self.bounding_box.width,
                "height": self.bounding_box.height,
                "depth": self.bounding_box.depth,
            },
            "surface_area": self.surface_area,
            "volume": self.volume,
            "memory_usage_kb": self.memory_usage_kb,
            "cube_count": self.cube_count,
            "file_size_estimate": self.file_size_estimate,
            "is_watertight": self.is_watertight,
        }


def compute_mesh_stats(mesh: Mesh) -> MeshStats:
    """Derive read-only statistics from a mesh (recomputed on every call)."""
    unique, counts = mesh.edge_face_counts()
    extents = mesh.extents
    memory_bytes = mesh.vertices.nbytes + mesh.faces.nbytes
    if mesh.face_normals is not None:
        memory_bytes += mesh.face_normals.nbytes
    return MeshStats(
        vertex_count=mesh.n_vertices,
        face_count=mesh.n_faces,
        edge_count=int(len(unique)),
        bounding_box=BoundingBox(
            width=float(extents[0]),
            height=float(extents[1]),
            depth=float(extents[2]),
        ),
        surface_area=mesh.surface_area,
        volume=abs(mesh.volume),
        memory_usage_kb=memory_bytes / 1024.0,
        cube_count=int(mesh.metadata.get("cube_count", 0)),
        file_size_estimate=mesh.n_vertices * _OBJ_BYTES_PER_VERTEX + mesh.n_faces * _OBJ_BYTES_PER_FACE,
        is_watertight=bool(len(counts) > 0 and np.all(counts == 2)),
    )


class MeshLoader:
    """
    Mesh file loader backed by trimesh.

    Supported formats:
        - OBJ (Wavefront)
        - PLY (Polygon File Format)
        - STL (Stereolithography)
        - OFF (Object File Format)
    """

    SUPPORTED_FORMATS = {
        ".obj": "Wavefront OBJ",
        ".ply": "Polygon File Format",
        ".stl": "Stereolithography",
        ".off": "Object File Format",
    }

    def __init__(self, default_unit: str = "mm"):
        self.default_unit = default_unit

    def load(self, filepath: Union[str, Path], unit: Optional[str] = None) -> Mesh:
        """
        Load a mesh file.

        Raises:
            FileNotFoundError: file does not exist
            ValueError: unsupported extension or no triangle geometry
        """
        filepath = Path(filepath)
        if not filepath.exists():
            raise FileNotFoundError(f"File not found: {filepath}")

        ext = filepath.suffix.lower()
        if ext not in self.SUPPORTED_FORMATS:
            raise ValueError(
                f"Unsupported format: {ext}\n"
                f"Supported formats: {list(self.SUPPORTED_FORMATS.keys())}"
            )

        loaded = trimesh.load(str(filepath), force="mesh", process=False, maintain_order=True)
        if isinstance(loaded, trimesh.Scene):
            meshes = [g for g in loaded.geometry.values() if isinstance(g, trimesh.Trimesh)]
            if not meshes:
                raise ValueError(f"No valid mesh found in: {filepath}")
            loaded = trimesh.util.concatenate(meshes)
        if not isinstance(loaded, trimesh.Trimesh):
            raise ValueError(f"Expected a triangle mesh, got {type(loaded).__name__}")

        mesh = Mesh.from_trimesh(loaded, unit=unit or self.default_unit)
        mesh.metadata["filepath"] = str(filepath)
        _LOGGER.debug("Loaded %s: %d vertices, %d faces", filepath, mesh.n_vertices, mesh.n_faces)
        return mesh

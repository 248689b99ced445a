"""
Mesh export: Wavefront OBJ text and mesh files.

OBJ text layout: ``#`` comment lines, ``v x y z`` per vertex, then
``f i j k`` per face with 1-based indices, both in creation order.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
import tempfile
from typing import Iterable, Optional, Union

import numpy as np

from .errors import ExportError
from .mesh_data import Mesh
from .params import ExportParams
from .runtime_defaults import DEFAULTS

_LOGGER = logging.getLogger(__name__)

PathLike = Union[str, Path]

OBJ_HEADER = "dotmesh voxel model"


def _check_exportable(mesh: Optional[Mesh]) -> None:
    if mesh is None:
        raise ExportError("No mesh to export")
    if mesh.n_vertices == 0 or mesh.n_faces == 0:
        raise ExportError("Cannot export an empty mesh")
    faces = mesh.faces
    if faces.min() < 0 or faces.max() >= mesh.n_vertices:
        raise ExportError(
            f"Face index out of range: indices must be in [0, {mesh.n_vertices - 1}], "
            f"got [{int(faces.min())}, {int(faces.max())}]"
        )
    if not np.isfinite(mesh.vertices).all():
        raise ExportError("Mesh contains non-finite vertex coordinates")


def export_to_obj(
    mesh: Mesh,
    *,
    precision: Optional[int] = None,
    comments: Optional[Iterable[str]] = None,
) -> str:
    """
    Serialize a mesh as OBJ text.

    The output is byte-identical for identical meshes: fixed-precision
    coordinates with negative zero normalized.

    Raises:
        ExportError: missing/empty mesh, out-of-range indices or non-finite
            coordinates.
    """
    _check_exportable(mesh)
    digits = int(precision) if precision is not None else DEFAULTS.obj_precision

    header = [OBJ_HEADER, f"vertices: {mesh.n_vertices}", f"faces: {mesh.n_faces}"]
    if comments:
        header.extend(str(c) for c in comments)

    lines = [f"# {text}".rstrip() for text in header]
    fmt = f"{{:.{digits}f}}"
    # + 0.0 folds -0.0 into 0.0 so equal geometry prints equally.
    for x, y, z in mesh.vertices.tolist():
        lines.append(f"v {fmt.format(x + 0.0)} {fmt.format(y + 0.0)} {fmt.format(z + 0.0)}")
    for a, b, c in (mesh.faces + 1).tolist():
        lines.append(f"f {a} {b} {c}")
    return "\n".join(lines) + "\n"


def prepare_for_export(mesh: Mesh, params: Optional[ExportParams] = None) -> Mesh:
    """Apply the export scale and optional centring on the XZ footprint; the base stays at its Y."""
    params = params or ExportParams()
    errors = params.validate()
    if errors:
        raise ExportError("Invalid export parameters: " + "; ".join(errors))
    _check_exportable(mesh)

    out = mesh
    if params.center_model:
        lo, hi = mesh.bounds
        centre = (lo + hi) / 2.0
        out = out.translated(np.array([-centre[0], 0.0, -centre[2]]))
    if float(params.scale_factor) != 1.0:
        out = out.scaled(params.scale_factor)
    return out


def _atomic_write(path: Path, write) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    os.close(fd)
    tmp = Path(tmp_name)
    try:
        write(tmp)
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def save_mesh(
    mesh: Mesh,
    path: PathLike,
    params: Optional[ExportParams] = None,
) -> Path:
    """
    Write a mesh to ``path`` in ``params.format``.

    OBJ goes through ``export_to_obj``; STL and PLY through trimesh. The file
    is written to a temporary sibling and moved into place, so a failed
    export never leaves a partial file.
    """
    params = params or ExportParams(format=_format_from_suffix(path))
    prepared = prepare_for_export(mesh, params)
    target = Path(path)

    try:
        if params.format == "obj":
            text = export_to_obj(prepared)
            _atomic_write(target, lambda p: p.write_text(text, encoding="utf-8"))
        else:
            tm = prepared.to_trimesh()
            data = tm.export(file_type=params.format)
            payload = data.encode("utf-8") if isinstance(data, str) else data
            _atomic_write(target, lambda p: p.write_bytes(payload))
    except OSError as e:
        raise ExportError(f"Failed to write {target}: {e}") from e

    _LOGGER.info("Exported %s (%d vertices, %d faces)", target, prepared.n_vertices, prepared.n_faces)
    return target


def _format_from_suffix(path: PathLike) -> str:
    suffix = Path(path).suffix.lower().lstrip(".")
    return suffix if suffix in ("obj", "stl", "ply") else "obj"

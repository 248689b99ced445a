"""
End-to-end model building: pattern → mesh → optional optimization → OBJ.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable, Optional

from .dot_pattern import DotPattern
from .error_reporter import ErrorReporter
from .errors import QualityAssessmentError
from .mesh_builder import generate_mesh
from .mesh_data import Mesh, MeshStats, compute_mesh_stats
from .mesh_optimizer import merge_adjacent_faces, optimize_mesh
from .obj_exporter import export_to_obj
from .params import Model3DParams
from .quality import QualityConfig, QualityReport, assess_quality

_LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

PLA_DENSITY_G_PER_CM3 = 1.25
PRINT_RATE_MM3_PER_MIN = 50.0
COST_PER_GRAM = 0.05


def build_model(
    pattern: DotPattern,
    params: Optional[Model3DParams] = None,
    *,
    progress: Optional[ProgressCallback] = None,
) -> Mesh:
    """
    Generate the voxel mesh and run the optimizer passes the params enable.

    Face merging runs when either ``merge_adjacent_faces`` or ``optimize_mesh``
    is set; coplanar optimization only for ``optimize_mesh``.
    """
    params = params or Model3DParams()

    def _report(value: int) -> None:
        if progress is not None:
            progress(value)

    def _build_progress(value: int) -> None:
        _report(int(value * 0.7))

    mesh = generate_mesh(pattern, params, progress=_build_progress)
    if mesh.is_empty:
        _report(100)
        return mesh

    if params.merge_adjacent_faces or params.optimize_mesh:
        mesh = merge_adjacent_faces(mesh, pattern)
    _report(85)
    if params.optimize_mesh:
        mesh = optimize_mesh(mesh)
    _report(100)
    return mesh


@dataclass(frozen=True)
class ModelResult:
    mesh: Mesh
    stats: MeshStats
    report: Optional[QualityReport]
    obj_text: Optional[str]


def process_pattern(
    pattern: DotPattern,
    params: Optional[Model3DParams] = None,
    *,
    assess: bool = True,
    quality_config: Optional[QualityConfig] = None,
    export_obj: bool = True,
    reporter: Optional[ErrorReporter] = None,
    progress: Optional[ProgressCallback] = None,
) -> ModelResult:
    """
    Build a model and collect its stats, quality report and OBJ text.

    A failed quality assessment does not fail the build: it is reported to
    ``reporter`` (when given) and the result carries ``report=None``.
    """
    mesh = build_model(pattern, params, progress=progress)
    stats = compute_mesh_stats(mesh)

    report = None
    if assess:
        try:
            report = assess_quality(mesh, quality_config)
        except QualityAssessmentError as e:
            _LOGGER.warning("Quality assessment failed: %s", e)
            if reporter is not None:
                reporter.report(e, {"operation": "assess_quality"})

    obj_text = export_to_obj(mesh) if export_obj and not mesh.is_empty else None
    return ModelResult(mesh=mesh, stats=stats, report=report, obj_text=obj_text)


@dataclass(frozen=True)
class PrintEstimates:
    volume_mm3: float
    weight_g: float
    print_time_min: float
    cost: float


def calculate_print_estimates(
    pattern: DotPattern,
    params: Optional[Model3DParams] = None,
) -> PrintEstimates:
    """Material estimates for PLA from cube and base volumes (no mesh is built)."""
    params = params or Model3DParams()
    cube_volume = params.cube_size * params.cube_size * params.cube_height
    volume = pattern.active_count * cube_volume
    if params.generate_base:
        footprint_x = (pattern.width - 1) * params.pitch + params.cube_size
        footprint_z = (pattern.height - 1) * params.pitch + params.cube_size
        volume += footprint_x * footprint_z * params.base_thickness

    weight = volume / 1000.0 * PLA_DENSITY_G_PER_CM3
    return PrintEstimates(
        volume_mm3=float(volume),
        weight_g=float(weight),
        print_time_min=float(volume / PRINT_RATE_MM3_PER_MIN),
        cost=float(weight * COST_PER_GRAM),
    )

"""
Quality assessment of generated meshes.

``assess_quality`` combines the analyses in ``mesh_analysis`` into an
immutable ``QualityReport``. Recommendations, warnings, comparisons and
optimization plans are pure functions over already computed values.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Literal, Optional, Sequence

import numpy as np

from .errors import QualityAssessmentError
from .mesh_analysis import (
    count_duplicate_vertices,
    find_self_intersections,
    find_unsupported_spans,
    manifold_summary,
    measure_wall_thickness,
    overhang_faces,
)
from .mesh_data import Mesh
from .runtime_defaults import DEFAULTS

_LOGGER = logging.getLogger(__name__)

Severity = Literal["low", "medium", "high"]
Priority = Literal["low", "medium", "high"]

HIGH_OVERHANG_ANGLE = 60.0
MEDIUM_OVERHANG_ANGLE = 50.0


@dataclass(frozen=True)
class QualityConfig:
    min_wall_thickness: float = 0.8
    max_overhang_angle: float = 45.0
    max_bridge_length: float = 10.0
    geometry_tolerance: float = 0.001
    thickness_samples: int = DEFAULTS.thickness_samples
    intersection_face_limit: int = DEFAULTS.intersection_face_limit

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.min_wall_thickness > 0:
            errors.append("min_wall_thickness must be > 0")
        if not 0 <= self.max_overhang_angle <= 180:
            errors.append("max_overhang_angle must be in [0, 180]")
        if not self.max_bridge_length > 0:
            errors.append("max_bridge_length must be > 0")
        if not self.geometry_tolerance > 0:
            errors.append("geometry_tolerance must be > 0")
        if self.thickness_samples < 1:
            errors.append("thickness_samples must be >= 1")
        if self.intersection_face_limit < 0:
            errors.append("intersection_face_limit must be >= 0")
        return errors


@dataclass(frozen=True)
class OverhangRecord:
    face_index: int
    position: tuple[float, float, float]
    angle: float
    severity: Severity
    suggestion: str


@dataclass(frozen=True)
class ThinArea:
    position: tuple[float, float, float]
    thickness: float


@dataclass(frozen=True)
class WallThickness:
    """Sampled thickness; ``method`` is ``ray-cast`` or ``bounding-box`` (no ray hit)."""
    min_thickness: float
    average_thickness: float
    thin_areas: tuple[ThinArea, ...]
    recommended_minimum: float
    sampled_faces: int
    method: str
    approximate: bool = True


@dataclass(frozen=True)
class BridgeRecord:
    start_point: tuple[float, float, float]
    end_point: tuple[float, float, float]
    length: float
    printable: bool
    support_suggestion: str


@dataclass(frozen=True)
class GeometryQuality:
    manifoldness: float
    watertightness: float
    self_intersections: int
    duplicate_vertices: int
    boundary_edges: int
    non_manifold_edges: int
    self_intersections_checked: bool
    score: float


@dataclass(frozen=True)
class PrintabilityQuality:
    overhangs: tuple[OverhangRecord, ...]
    support_need: float
    wall_thickness: WallThickness
    bridging: tuple[BridgeRecord, ...]
    score: float


@dataclass(frozen=True)
class Recommendation:
    type: Literal["geometry", "printing", "optimization", "aesthetic"]
    priority: Priority
    message: str
    action: str
    expected_improvement: float


@dataclass(frozen=True)
class QualityWarning:
    category: Literal["error", "warning", "info"]
    severity: Severity
    message: str
    location: Optional[tuple[float, float, float]] = None
    resolution: Optional[str] = None


@dataclass(frozen=True)
class QualityReport:
    model_id: str
    timestamp: datetime
    overall_score: int
    geometry: GeometryQuality
    printability: PrintabilityQuality
    recommendations: tuple[Recommendation, ...] = field(default_factory=tuple)
    warnings: tuple[QualityWarning, ...] = field(default_factory=tuple)


def _vec(p: np.ndarray) -> tuple[float, float, float]:
    return float(p[0]), float(p[1]), float(p[2])


def _overhang_severity(angle: float) -> tuple[Severity, str]:
    if angle > HIGH_OVERHANG_ANGLE:
        return "high", "Requires support structures"
    if angle > MEDIUM_OVERHANG_ANGLE:
        return "medium", "Consider adding supports or reorienting the model"
    return "low", "Consider adding supports"


def _check_mesh(mesh: Mesh) -> None:
    if not isinstance(mesh, Mesh):
        raise QualityAssessmentError(f"Expected a Mesh, got {type(mesh).__name__}")
    if mesh.n_faces and (mesh.faces.min() < 0 or mesh.faces.max() >= mesh.n_vertices):
        raise QualityAssessmentError("Mesh has face indices outside the vertex range")
    if not np.isfinite(mesh.vertices).all():
        raise QualityAssessmentError("Mesh has non-finite vertex coordinates")


def analyze_geometry(mesh: Mesh, config: QualityConfig) -> GeometryQuality:
    manifold = manifold_summary(mesh)
    duplicates = count_duplicate_vertices(mesh.vertices, config.geometry_tolerance)
    crossing = find_self_intersections(mesh, face_limit=config.intersection_face_limit)
    self_intersections = 0 if crossing is None else int(len(crossing))

    score = (
        manifold.score * 0.3
        + manifold.score * 0.2
        + (100.0 - min(100.0, float(self_intersections))) * 0.3
        + (100.0 - min(100.0, duplicates / 10.0)) * 0.2
    )
    return GeometryQuality(
        manifoldness=manifold.score,
        watertightness=manifold.score,
        self_intersections=self_intersections,
        duplicate_vertices=duplicates,
        boundary_edges=manifold.boundary_edges,
        non_manifold_edges=manifold.non_manifold_edges,
        self_intersections_checked=crossing is not None,
        score=score,
    )


def analyze_overhangs(mesh: Mesh, max_angle: float) -> tuple[OverhangRecord, ...]:
    faces, angles = overhang_faces(mesh, max_angle)
    if len(faces) == 0:
        return ()
    centroids = mesh.triangles()[faces].mean(axis=1)
    records = []
    for f, angle, c in zip(faces.tolist(), angles.tolist(), centroids):
        severity, suggestion = _overhang_severity(angle)
        records.append(OverhangRecord(int(f), _vec(c), float(angle), severity, suggestion))
    return tuple(records)


def analyze_wall_thickness(mesh: Mesh, config: QualityConfig) -> WallThickness:
    samples = measure_wall_thickness(mesh, samples=config.thickness_samples)
    if not samples:
        extents = mesh.extents
        positive = extents[extents > 0]
        estimate = float(positive.min()) if len(positive) else 0.0
        return WallThickness(
            min_thickness=estimate,
            average_thickness=estimate,
            thin_areas=(),
            recommended_minimum=config.min_wall_thickness,
            sampled_faces=0,
            method="bounding-box",
        )

    values = np.array([s.thickness for s in samples], dtype=np.float64)
    thin = tuple(
        ThinArea(s.position, s.thickness) for s in samples if s.thickness < config.min_wall_thickness
    )
    return WallThickness(
        min_thickness=float(values.min()),
        average_thickness=float(values.mean()),
        thin_areas=thin,
        recommended_minimum=config.min_wall_thickness,
        sampled_faces=len(samples),
        method="ray-cast",
    )


def analyze_bridging(mesh: Mesh, config: QualityConfig) -> tuple[BridgeRecord, ...]:
    records = []
    for span in find_unsupported_spans(mesh):
        printable = span.length <= config.max_bridge_length
        suggestion = (
            "Bridge is within printable length"
            if printable
            else f"Add support under this {span.length:.1f} span or shorten it below {config.max_bridge_length:g}"
        )
        records.append(BridgeRecord(span.start_point, span.end_point, span.length, printable, suggestion))
    return tuple(records)


def support_need(overhangs: Sequence[OverhangRecord], bridging: Sequence[BridgeRecord]) -> float:
    high = sum(1 for o in overhangs if o.severity == "high")
    medium = sum(1 for o in overhangs if o.severity == "medium")
    unprintable = sum(1 for b in bridging if not b.printable)
    return float(min(100, high * 30 + medium * 15 + unprintable * 20))


def printability_score(support: float, wall: WallThickness) -> float:
    thickness_ratio = wall.min_thickness / wall.recommended_minimum * 100.0
    return (100.0 - support) * 0.4 + min(100.0, thickness_ratio) * 0.6


def generate_recommendations(
    geometry: GeometryQuality,
    printability: PrintabilityQuality,
) -> tuple[Recommendation, ...]:
    out: list[Recommendation] = []
    if geometry.manifoldness < 95:
        out.append(
            Recommendation(
                "geometry",
                "high",
                f"Mesh has open or non-manifold edges ({geometry.manifoldness:.1f}% manifold)",
                "Enable face merging or repair the mesh before printing",
                round(min(100.0 - geometry.manifoldness, 30.0), 1),
            )
        )
    if geometry.self_intersections > 0:
        out.append(
            Recommendation(
                "geometry",
                "high",
                f"{geometry.self_intersections} faces intersect other faces",
                "Increase spacing or rebuild the model without overlapping parts",
                15.0,
            )
        )
    if printability.support_need > 70:
        out.append(
            Recommendation(
                "printing",
                "medium",
                "Model needs significant support structures",
                "Reorient the model or reduce overhanging geometry",
                20.0,
            )
        )
    wall = printability.wall_thickness
    if wall.min_thickness < wall.recommended_minimum:
        out.append(
            Recommendation(
                "printing",
                "high",
                f"Minimum wall thickness {wall.min_thickness:.2f} is below {wall.recommended_minimum:g}",
                "Increase cube size or cube height",
                25.0,
            )
        )
    if any(not b.printable for b in printability.bridging):
        out.append(
            Recommendation(
                "printing",
                "medium",
                "Some bridges are too long to print unsupported",
                "Enable the base plinth or add supports under long spans",
                10.0,
            )
        )
    if geometry.duplicate_vertices > 0:
        out.append(
            Recommendation(
                "optimization",
                "low",
                f"{geometry.duplicate_vertices} duplicate vertices",
                "Merge adjacent faces to weld shared vertices",
                5.0,
            )
        )
    return tuple(out)


def generate_warnings(
    geometry: GeometryQuality,
    printability: PrintabilityQuality,
) -> tuple[QualityWarning, ...]:
    out: list[QualityWarning] = []
    if geometry.self_intersections > 0:
        out.append(
            QualityWarning(
                "error",
                "high",
                f"Mesh has {geometry.self_intersections} self-intersecting faces",
                resolution="Rebuild the model with non-overlapping geometry",
            )
        )
    if not geometry.self_intersections_checked:
        out.append(
            QualityWarning(
                "info",
                "low",
                "Self-intersection check skipped for a large mesh",
                resolution="Raise DOTMESH_INTERSECTION_FACE_LIMIT to run it",
            )
        )
    if geometry.non_manifold_edges > 0 or geometry.boundary_edges > 0:
        out.append(
            QualityWarning(
                "warning",
                "medium",
                f"{geometry.boundary_edges} open and {geometry.non_manifold_edges} non-manifold edges",
                resolution="Merge adjacent faces or repair the mesh",
            )
        )
    if geometry.duplicate_vertices > 10:
        out.append(
            QualityWarning(
                "warning",
                "medium",
                f"Mesh has {geometry.duplicate_vertices} duplicate vertices",
                resolution="Weld vertices to clean up the mesh",
            )
        )
    thin = printability.wall_thickness.thin_areas
    if thin:
        out.append(
            QualityWarning(
                "warning",
                "high",
                f"{len(thin)} sampled walls are thinner than {printability.wall_thickness.recommended_minimum:g}",
                location=thin[0].position,
                resolution="Increase cube dimensions",
            )
        )
    for bridge in printability.bridging:
        if not bridge.printable:
            out.append(
                QualityWarning(
                    "warning",
                    "medium",
                    f"Unsupported span of {bridge.length:.1f}",
                    location=bridge.start_point,
                    resolution=bridge.support_suggestion,
                )
            )
    return tuple(out)


def assess_quality(
    mesh: Mesh,
    config: Optional[QualityConfig] = None,
    *,
    model_id: str = "model",
) -> QualityReport:
    """
    Analyze a mesh for geometric validity and printability.

    Raises:
        QualityAssessmentError: malformed mesh, invalid config or any failure
            while traversing the mesh.
    """
    config = config or QualityConfig()
    errors = config.validate()
    if errors:
        raise QualityAssessmentError("Invalid quality config: " + "; ".join(errors))
    _check_mesh(mesh)

    try:
        geometry = analyze_geometry(mesh, config)
        overhangs = analyze_overhangs(mesh, config.max_overhang_angle)
        wall = analyze_wall_thickness(mesh, config)
        bridging = analyze_bridging(mesh, config)
    except (ValueError, IndexError, FloatingPointError, MemoryError) as e:
        raise QualityAssessmentError(f"Quality analysis failed: {e}") from e

    support = support_need(overhangs, bridging)
    printability = PrintabilityQuality(
        overhangs=overhangs,
        support_need=support,
        wall_thickness=wall,
        bridging=bridging,
        score=printability_score(support, wall),
    )
    warnings = generate_warnings(geometry, printability)
    if mesh.is_empty:
        warnings = (QualityWarning("warning", "high", "Mesh is empty"),) + warnings

    overall = int(round(geometry.score * 0.6 + printability.score * 0.4))
    _LOGGER.debug(
        "Quality %s: overall=%d geometry=%.1f printability=%.1f",
        model_id,
        overall,
        geometry.score,
        printability.score,
    )
    return QualityReport(
        model_id=str(model_id),
        timestamp=datetime.now(timezone.utc),
        overall_score=overall,
        geometry=geometry,
        printability=printability,
        recommendations=generate_recommendations(geometry, printability),
        warnings=warnings,
    )


# ----------------------------------------------------------------------------
# Comparison and planning
# ----------------------------------------------------------------------------

@dataclass(frozen=True)
class ComparisonEntry:
    model_id: str
    score: int
    strengths: tuple[str, ...]
    weaknesses: tuple[str, ...]


@dataclass(frozen=True)
class QualityComparison:
    best_model_id: str
    entries: tuple[ComparisonEntry, ...]
    recommendations: tuple[str, ...]


def compare_quality(reports: Sequence[QualityReport]) -> QualityComparison:
    """Rank reports by overall score (highest first, stable for ties)."""
    if not reports:
        raise QualityAssessmentError("No quality reports to compare")

    ranked = sorted(reports, key=lambda r: r.overall_score, reverse=True)
    entries = []
    for r in ranked:
        strengths = []
        weaknesses = []
        if r.geometry.manifoldness > 95:
            strengths.append("Excellent geometry")
        if r.printability.support_need < 30:
            strengths.append("Minimal support needed")
        if r.overall_score > 80:
            strengths.append("High overall quality")
        if r.geometry.manifoldness < 80:
            weaknesses.append("Geometry issues")
        if r.printability.support_need > 70:
            weaknesses.append("Requires significant support")
        if r.overall_score < 60:
            weaknesses.append("Below average quality")
        entries.append(ComparisonEntry(r.model_id, r.overall_score, tuple(strengths), tuple(weaknesses)))

    recommendations = []
    average = sum(r.overall_score for r in reports) / len(reports)
    if average < 70:
        recommendations.append("Average quality is below 70; review the generation parameters")
    if len(ranked) > 1 and ranked[0].overall_score - ranked[-1].overall_score > 20:
        recommendations.append(f"Prefer the settings used for {ranked[0].model_id}")

    return QualityComparison(
        best_model_id=ranked[0].model_id,
        entries=tuple(entries),
        recommendations=tuple(recommendations),
    )


@dataclass(frozen=True)
class OptimizationAction:
    action: str
    impact: Priority
    difficulty: Literal["easy", "medium", "hard"]
    expected_improvement: float


@dataclass(frozen=True)
class OptimizationPlan:
    priority: Priority
    actions: tuple[OptimizationAction, ...]
    estimated_score: int


def generate_optimization_plan(report: QualityReport) -> OptimizationPlan:
    actions: list[OptimizationAction] = []
    geometry = report.geometry
    printability = report.printability
    if geometry.manifoldness < 95:
        actions.append(OptimizationAction("Repair non-manifold and open edges", "high", "medium", 20.0))
    if geometry.self_intersections > 0:
        actions.append(OptimizationAction("Resolve self-intersections", "high", "hard", 15.0))
    if printability.support_need > 80:
        actions.append(OptimizationAction("Reduce overhangs or reorient the model", "medium", "medium", 10.0))
    wall = printability.wall_thickness
    if wall.min_thickness < wall.recommended_minimum:
        actions.append(OptimizationAction("Increase wall thickness", "high", "easy", 15.0))
    if geometry.duplicate_vertices > 0:
        actions.append(OptimizationAction("Weld duplicate vertices", "low", "easy", 2.0))

    if report.overall_score < 50:
        priority: Priority = "high"
    elif report.overall_score < 75:
        priority = "medium"
    else:
        priority = "low"
    estimated = min(100, int(round(report.overall_score + sum(a.expected_improvement for a in actions))))
    return OptimizationPlan(priority=priority, actions=tuple(actions), estimated_score=estimated)

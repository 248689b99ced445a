"""
Immutable parameter records for image conversion, mesh generation and export.

Each record exposes ``validate()`` which returns a list of human readable
violations (empty when valid). Callers decide whether to reject or proceed;
the builder and converter reject.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
import math
import re
from typing import Any, Literal

from PIL import ImageColor

GrayscaleMethod = Literal["luminance", "average", "desaturation"]
ResizeAlgorithm = Literal["nearest", "bilinear", "bicubic"]
DitheringMethod = Literal["floyd-steinberg", "atkinson", "sierra"]
ThresholdMode = Literal["inclusive", "exclusive"]
ExportFormat = Literal["obj", "stl", "ply"]

GRAYSCALE_METHODS = ("luminance", "average", "desaturation")
RESIZE_ALGORITHMS = ("nearest", "bilinear", "bicubic")
DITHERING_METHODS = ("floyd-steinberg", "atkinson", "sierra")
THRESHOLD_MODES = ("inclusive", "exclusive")
EXPORT_FORMATS = ("obj", "stl", "ply")

MAX_TARGET_DIMENSION = 1000

_RESERVED_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def _is_finite(value: Any) -> bool:
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


def _check_range(
    errors: list[str],
    name: str,
    value: Any,
    lo: float,
    hi: float,
    *,
    lo_inclusive: bool = True,
) -> None:
    if not _is_finite(value):
        errors.append(f"{name} must be a finite number")
        return
    v = float(value)
    below = v < lo if lo_inclusive else v <= lo
    if below or v > hi:
        bracket = "[" if lo_inclusive else "("
        errors.append(f"{name} must be in {bracket}{lo:g}, {hi:g}] (got {v:g})")


@dataclass(frozen=True)
class ConversionParams:
    """Image → pattern conversion settings."""

    grayscale_method: GrayscaleMethod = "luminance"
    threshold: int = 128
    threshold_mode: ThresholdMode = "inclusive"
    pre_blur: bool = False
    blur_radius: float = 1.0
    enhance_contrast: bool = False
    contrast_factor: float = 1.0
    target_width: int = 50
    target_height: int = 50
    maintain_aspect_ratio: bool = True
    algorithm: ResizeAlgorithm = "bilinear"
    fill_color: str = "#ffffff"
    invert: bool = False
    enable_dithering: bool = False
    dithering_method: DitheringMethod = "floyd-steinberg"

    def validate(self) -> list[str]:
        errors: list[str] = []
        if self.grayscale_method not in GRAYSCALE_METHODS:
            errors.append(f"Unknown grayscale method: {self.grayscale_method!r}")
        _check_range(errors, "threshold", self.threshold, 0, 255)
        if self.threshold_mode not in THRESHOLD_MODES:
            errors.append(f"Unknown threshold mode: {self.threshold_mode!r}")
        _check_range(errors, "blur_radius", self.blur_radius, 0, 10)
        _check_range(errors, "contrast_factor", self.contrast_factor, 0.1, 5.0)
        for name in ("target_width", "target_height"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                errors.append(f"{name} must be an integer")
            elif not 1 <= value <= MAX_TARGET_DIMENSION:
                errors.append(f"{name} must be between 1 and {MAX_TARGET_DIMENSION} (got {value})")
        if self.algorithm not in RESIZE_ALGORITHMS:
            errors.append(f"Unknown resize algorithm: {self.algorithm!r}")
        if self.dithering_method not in DITHERING_METHODS:
            errors.append(f"Unknown dithering method: {self.dithering_method!r}")
        try:
            ImageColor.getrgb(str(self.fill_color))
        except ValueError:
            errors.append(f"Invalid fill color: {self.fill_color!r}")
        return errors

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def with_changes(self, **changes: Any) -> "ConversionParams":
        return replace(self, **changes)


@dataclass(frozen=True)
class Model3DParams:
    """Voxel mesh generation settings (lengths in model units, usually mm)."""

    cube_size: float = 2.0
    cube_height: float = 2.0
    spacing: float = 0.1
    generate_base: bool = True
    base_thickness: float = 1.0
    optimize_mesh: bool = True
    merge_adjacent_faces: bool = False
    chamfer_edges: bool = False
    chamfer_size: float = 0.1

    @property
    def pitch(self) -> float:
        return float(self.cube_size) + float(self.spacing)

    def validate(self) -> list[str]:
        errors: list[str] = []
        _check_range(errors, "cube_size", self.cube_size, 0, 50, lo_inclusive=False)
        _check_range(errors, "cube_height", self.cube_height, 0, 50, lo_inclusive=False)
        _check_range(errors, "spacing", self.spacing, 0, 10)
        _check_range(errors, "base_thickness", self.base_thickness, 0, 20, lo_inclusive=False)
        _check_range(errors, "chamfer_size", self.chamfer_size, 0, 5)

        dims_ok = all(_is_finite(v) for v in (self.cube_size, self.cube_height, self.chamfer_size))
        if self.chamfer_edges and dims_ok:
            limit = 0.4 * min(float(self.cube_size), float(self.cube_height))
            if float(self.chamfer_size) <= 0:
                errors.append("chamfer_size must be > 0 when chamfer_edges is enabled")
            elif float(self.chamfer_size) >= limit:
                errors.append(
                    f"chamfer_size must be smaller than 40% of the smallest cube dimension (< {limit:g})"
                )
        return errors

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def with_changes(self, **changes: Any) -> "Model3DParams":
        return replace(self, **changes)


@dataclass(frozen=True)
class ExportParams:
    format: ExportFormat = "obj"
    scale_factor: float = 1.0
    center_model: bool = False
    filename: str = "dot_pattern_model"

    def validate(self) -> list[str]:
        errors: list[str] = []
        if self.format not in EXPORT_FORMATS:
            errors.append(f"Unsupported export format: {self.format!r}")
        _check_range(errors, "scale_factor", self.scale_factor, 0, 100, lo_inclusive=False)
        name = str(self.filename or "").strip()
        if not name:
            errors.append("filename must not be empty")
        elif _RESERVED_FILENAME_CHARS.search(name):
            errors.append(f"filename contains invalid characters: {name!r}")
        return errors

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

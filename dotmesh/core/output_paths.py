"""
Output path helpers for common exports.

Centralizes naming conventions so the CLI and tools stay in sync.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

PathLike = Union[str, Path]

PATTERN_SUFFIX = ".csv"
MODEL_SUFFIX = ".obj"
QUALITY_SUFFIX = ".quality.json"


def _as_path(value: PathLike) -> Path:
    return value if isinstance(value, Path) else Path(value)


def _resolve_output_path(input_path: PathLike, output_path: Optional[PathLike], suffix: str) -> Path:
    if output_path:
        return _as_path(output_path)
    return _as_path(input_path).with_suffix(suffix)


def pattern_output_path(input_path: PathLike, output_path: Optional[PathLike] = None) -> Path:
    return _resolve_output_path(input_path, output_path, PATTERN_SUFFIX)


def model_output_path(input_path: PathLike, output_path: Optional[PathLike] = None) -> Path:
    return _resolve_output_path(input_path, output_path, MODEL_SUFFIX)


def quality_report_path(input_path: PathLike, output_path: Optional[PathLike] = None) -> Path:
    return _resolve_output_path(input_path, output_path, QUALITY_SUFFIX)

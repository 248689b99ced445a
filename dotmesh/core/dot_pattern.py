"""
Dot pattern model, CSV parsing/export and pure pattern operations.

A pattern is an immutable row-major boolean grid. Rows map to the model Z
axis and columns to X once the pattern is turned into geometry.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import re
from typing import Any, Literal, Optional, Sequence

import numpy as np

from .errors import ParseError
from .runtime_defaults import DEFAULTS

_LOGGER = logging.getLogger(__name__)

PatternSource = Literal["csv", "image", "editor"]

TRUE_TOKENS = frozenset({"true", "1", "yes"})
FALSE_TOKENS = frozenset({"false", "0", "no"})

_LINE_SPLIT = re.compile(r"\r?\n")

MIN_RECOMMENDED_DIMENSION = 5


@dataclass(frozen=True)
class PatternMetadata:
    source: PatternSource = "editor"
    filename: Optional[str] = None
    created_at: Optional[datetime] = None
    original_dimensions: Optional[tuple[int, int]] = None
    conversion_params: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class DotPattern:
    """
    Immutable boolean dot grid.

    Attributes:
        width: number of columns
        height: number of rows
        data: tuple of ``height`` rows, each a tuple of ``width`` booleans
        metadata: optional provenance information
    """

    width: int
    height: int
    data: tuple[tuple[bool, ...], ...]
    metadata: Optional[PatternMetadata] = field(default=None, compare=False)

    def __post_init__(self):
        rows = tuple(tuple(bool(v) for v in row) for row in self.data)
        object.__setattr__(self, "data", rows)
        if self.width < 1 or self.height < 1:
            raise ValueError(f"Pattern dimensions must be positive, got {self.width}x{self.height}")
        if len(rows) != self.height:
            raise ValueError(f"Pattern has {len(rows)} rows, expected {self.height}")
        for idx, row in enumerate(rows):
            if len(row) != self.width:
                raise ValueError(f"Row {idx} has {len(row)} cells, expected {self.width}")

    @classmethod
    def from_rows(
        cls,
        rows: Sequence[Sequence[Any]],
        metadata: Optional[PatternMetadata] = None,
    ) -> "DotPattern":
        rows = [list(r) for r in rows]
        height = len(rows)
        width = len(rows[0]) if rows else 0
        return cls(width=width, height=height, data=tuple(tuple(r) for r in rows), metadata=metadata)

    @classmethod
    def from_array(cls, array: np.ndarray, metadata: Optional[PatternMetadata] = None) -> "DotPattern":
        arr = np.asarray(array).astype(bool)
        if arr.ndim != 2:
            raise ValueError(f"Expected a 2D array, got shape {arr.shape}")
        return cls(
            width=int(arr.shape[1]),
            height=int(arr.shape[0]),
            data=tuple(tuple(row) for row in arr.tolist()),
            metadata=metadata,
        )

    def to_array(self) -> np.ndarray:
        return np.array(self.data, dtype=bool).reshape(self.height, self.width)

    @property
    def active_count(self) -> int:
        return sum(sum(1 for v in row if v) for row in self.data)

    def is_active(self, x: int, y: int) -> bool:
        if not (0 <= x < self.width and 0 <= y < self.height):
            return False
        return self.data[y][x]

    def same_cells(self, other: "DotPattern") -> bool:
        return self.width == other.width and self.height == other.height and self.data == other.data


@dataclass(frozen=True)
class CSVValidation:
    valid: bool
    errors: tuple[str, ...]
    warnings: tuple[str, ...]
    width: int = 0
    height: int = 0


@dataclass(frozen=True)
class PatternStats:
    total_dots: int
    active_dots: int
    fill_percentage: float
    density: float


def _parse_token(token: str, line: int, column: int) -> bool:
    value = token.strip().lower()
    if value in TRUE_TOKENS:
        return True
    if value in FALSE_TOKENS:
        return False
    raise ParseError(f"Invalid boolean token {token.strip()!r}", line=line, column=column)


def parse_csv(
    text: str,
    *,
    delimiter: str = ",",
    max_dimension: Optional[int] = None,
    filename: Optional[str] = None,
) -> DotPattern:
    """
    Parse CSV text into a DotPattern.

    Accepted tokens (case-insensitive): ``true``/``1``/``yes`` and
    ``false``/``0``/``no``. Blank lines are skipped and cells are trimmed.

    Raises:
        ParseError: empty content, ragged rows, unknown tokens or a grid
            larger than ``max_dimension`` in either direction.
    """
    if text is None or not str(text).strip():
        raise ParseError("CSV content is empty")

    limit = int(max_dimension) if max_dimension is not None else DEFAULTS.max_pattern_dimension

    rows: list[tuple[bool, ...]] = []
    width: Optional[int] = None
    for line_no, raw_line in enumerate(_LINE_SPLIT.split(str(text)), start=1):
        if not raw_line.strip():
            continue
        cells = raw_line.split(delimiter)
        if width is None:
            width = len(cells)
            if width > limit:
                raise ParseError(f"Pattern width {width} exceeds maximum of {limit}", line=line_no)
        elif len(cells) != width:
            raise ParseError(
                f"Inconsistent row length: expected {width} columns, got {len(cells)}",
                line=line_no,
            )
        rows.append(tuple(_parse_token(cell, line_no, col) for col, cell in enumerate(cells, start=1)))
        if len(rows) > limit:
            raise ParseError(f"Pattern height exceeds maximum of {limit}", line=line_no)

    assert width is not None
    _LOGGER.debug("Parsed CSV pattern %dx%d", width, len(rows))
    metadata = PatternMetadata(
        source="csv",
        filename=filename,
        created_at=datetime.now(timezone.utc),
        original_dimensions=(width, len(rows)),
    )
    return DotPattern(width=width, height=len(rows), data=tuple(rows), metadata=metadata)


def export_csv(pattern: DotPattern, *, delimiter: str = ",") -> str:
    return "\n".join(delimiter.join("1" if v else "0" for v in row) for row in pattern.data)


def validate_csv(text: str, *, delimiter: str = ",") -> CSVValidation:
    """Check CSV text without raising; small patterns only produce warnings."""
    try:
        pattern = parse_csv(text, delimiter=delimiter)
    except ParseError as e:
        return CSVValidation(valid=False, errors=(str(e),), warnings=())

    warnings: list[str] = []
    if pattern.width < MIN_RECOMMENDED_DIMENSION:
        warnings.append(f"Pattern is narrow ({pattern.width} columns); consider a larger design")
    if pattern.height < MIN_RECOMMENDED_DIMENSION:
        warnings.append(f"Pattern is short ({pattern.height} rows); consider a larger design")
    if pattern.active_count == 0:
        warnings.append("Pattern has no active dots")
    return CSVValidation(
        valid=True,
        errors=(),
        warnings=tuple(warnings),
        width=pattern.width,
        height=pattern.height,
    )


def create_empty_pattern(width: int, height: int, *, max_dimension: Optional[int] = None) -> DotPattern:
    limit = int(max_dimension) if max_dimension is not None else DEFAULTS.max_pattern_dimension
    if not (1 <= width <= limit and 1 <= height <= limit):
        raise ValueError(f"Pattern dimensions must be between 1 and {limit}")
    return DotPattern.from_array(
        np.zeros((height, width), dtype=bool),
        metadata=PatternMetadata(source="editor", created_at=datetime.now(timezone.utc)),
    )


def invert_pattern(pattern: DotPattern) -> DotPattern:
    return DotPattern.from_array(~pattern.to_array(), metadata=pattern.metadata)


def resize_pattern(pattern: DotPattern, width: int, height: int) -> DotPattern:
    """Crop or pad (with inactive cells) anchored at the top-left corner."""
    out = create_empty_pattern(width, height).to_array()
    h = min(height, pattern.height)
    w = min(width, pattern.width)
    out[:h, :w] = pattern.to_array()[:h, :w]
    return DotPattern.from_array(out, metadata=pattern.metadata)


def toggle_dot(pattern: DotPattern, x: int, y: int) -> DotPattern:
    if not (0 <= x < pattern.width and 0 <= y < pattern.height):
        raise ValueError(f"Position ({x}, {y}) is outside the {pattern.width}x{pattern.height} pattern")
    arr = pattern.to_array()
    arr[y, x] = not arr[y, x]
    return DotPattern.from_array(arr, metadata=pattern.metadata)


def fill_area(
    pattern: DotPattern,
    start: tuple[int, int],
    end: tuple[int, int],
    value: bool = True,
) -> DotPattern:
    """Set every cell in the inclusive rectangle spanned by two (x, y) corners."""
    (x0, y0), (x1, y1) = start, end
    x_lo, x_hi = sorted((int(x0), int(x1)))
    y_lo, y_hi = sorted((int(y0), int(y1)))
    x_lo, y_lo = max(x_lo, 0), max(y_lo, 0)
    x_hi, y_hi = min(x_hi, pattern.width - 1), min(y_hi, pattern.height - 1)
    arr = pattern.to_array()
    if x_lo <= x_hi and y_lo <= y_hi:
        arr[y_lo:y_hi + 1, x_lo:x_hi + 1] = bool(value)
    return DotPattern.from_array(arr, metadata=pattern.metadata)


def pattern_stats(pattern: DotPattern) -> PatternStats:
    total = pattern.width * pattern.height
    active = pattern.active_count
    return PatternStats(
        total_dots=total,
        active_dots=active,
        fill_percentage=(active / total) * 100.0 if total else 0.0,
        density=active / max(pattern.width, pattern.height),
    )


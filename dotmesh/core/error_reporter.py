"""
Error classification and a bounded in-memory error history.

An ``ErrorReporter`` is created by whoever orchestrates work (CLI, task
runner) and passed down; there is no module-level instance.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
import itertools
import logging
import threading
from typing import Any, Literal, Optional

from .errors import (
    DotMeshError,
    ExportError,
    ImageProcessingError,
    MeshGenerationError,
    ParseError,
    QualityAssessmentError,
    TaskCancelledError,
)

_LOGGER = logging.getLogger(__name__)

Category = Literal["validation", "file_io", "processing", "memory", "network", "unknown"]
Severity = Literal["low", "medium", "high", "critical"]

_RECOVERY_ACTIONS: dict[str, tuple[str, ...]] = {
    "validation": ("Check the input values", "Reset parameters to defaults"),
    "file_io": ("Check that the file exists and is readable", "Try a different file or location"),
    "processing": ("Retry the operation", "Reduce the pattern size or simplify the parameters"),
    "memory": ("Reduce the pattern dimensions", "Disable chamfered edges", "Close other applications"),
    "network": ("Check the network connection", "Retry the operation"),
    "unknown": ("Retry the operation",),
}

_USER_MESSAGES: dict[str, str] = {
    "validation": "The input is not valid. Please check the values and try again.",
    "file_io": "The file could not be read or written.",
    "processing": "Processing failed. Try again with different settings.",
    "memory": "Not enough memory to complete the operation.",
    "network": "A network error occurred.",
    "unknown": "An unexpected error occurred.",
}

_KEYWORDS: tuple[tuple[Category, tuple[str, ...]], ...] = (
    ("memory", ("memory", "allocation")),
    ("network", ("network", "connection", "timeout")),
    ("file_io", ("file", "read", "write", "load", "permission")),
    ("validation", ("invalid", "validation", "required", "must be")),
    ("processing", ("process", "convert", "generate", "mesh")),
)


@dataclass(frozen=True)
class ReportedError:
    id: str
    category: Category
    severity: Severity
    message: str
    user_message: str
    error_type: str
    context: dict[str, Any] = field(default_factory=dict)
    recovery_actions: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def categorize(error: BaseException) -> Category:
    """Category from the exception type, then from message keywords."""
    if isinstance(error, MemoryError):
        return "memory"
    if isinstance(error, (ParseError, ValueError, TypeError)):
        return "validation"
    if isinstance(error, (OSError, ExportError)):
        if isinstance(error, (ConnectionError, TimeoutError)):
            return "network"
        return "file_io"
    if isinstance(error, (ImageProcessingError, MeshGenerationError, QualityAssessmentError)):
        return "processing"

    message = str(error).lower()
    for category, words in _KEYWORDS:
        if any(w in message for w in words):
            return category
    return "unknown"


def _severity(error: BaseException, category: Category) -> Severity:
    if isinstance(error, TaskCancelledError):
        return "low"
    if category == "memory":
        return "critical"
    if category in ("file_io", "processing"):
        return "high"
    if category in ("validation", "network"):
        return "medium"
    return "medium" if isinstance(error, DotMeshError) else "high"


_LOG_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}


class ErrorReporter:
    """Thread-safe ring buffer of the most recent ``capacity`` reported errors."""

    def __init__(self, capacity: int = 100, logger: Optional[logging.Logger] = None):
        if int(capacity) < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = int(capacity)
        self._entries: deque[ReportedError] = deque(maxlen=self.capacity)
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._logger = logger or _LOGGER

    def report(self, error: BaseException, context: Optional[dict[str, Any]] = None) -> ReportedError:
        category = categorize(error)
        severity = _severity(error, category)
        with self._lock:
            seq = next(self._counter)
            entry = ReportedError(
                id=f"err-{seq:06d}",
                category=category,
                severity=severity,
                message=str(error) or type(error).__name__,
                user_message=_USER_MESSAGES[category],
                error_type=type(error).__name__,
                context=dict(context or {}),
                recovery_actions=_RECOVERY_ACTIONS[category],
            )
            self._entries.append(entry)

        self._logger.log(
            _LOG_LEVELS[severity],
            "[%s] %s: %s",
            category,
            entry.error_type,
            entry.message,
            exc_info=(type(error), error, error.__traceback__) if severity in ("high", "critical") else None,
        )
        return entry

    def recent(self, limit: Optional[int] = None) -> list[ReportedError]:
        """Most recent entries, newest first."""
        with self._lock:
            entries = list(self._entries)
        entries.reverse()
        if limit is not None:
            entries = entries[: max(0, int(limit))]
        return entries

    def stats(self) -> dict[str, Any]:
        with self._lock:
            entries = list(self._entries)
        by_category: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        for e in entries:
            by_category[e.category] = by_category.get(e.category, 0) + 1
            by_severity[e.severity] = by_severity.get(e.severity, 0) + 1
        return {
            "total": len(entries),
            "by_category": by_category,
            "by_severity": by_severity,
        }

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

"""
Exception types raised by the dotmesh core.

Every error raised on purpose by the pipeline derives from ``DotMeshError`` so
callers can catch the whole family at once.
"""

from __future__ import annotations

from typing import Optional


class DotMeshError(RuntimeError):
    pass


class ParseError(DotMeshError):
    """Malformed, empty, inconsistent or oversized CSV pattern input."""

    def __init__(self, message: str, *, line: Optional[int] = None, column: Optional[int] = None):
        self.line = line
        self.column = column
        location = ""
        if line is not None:
            location = f" (line {line}" + (f", column {column})" if column is not None else ")")
        super().__init__(f"{message}{location}")


class ImageProcessingError(DotMeshError):
    pass


class MeshGenerationError(DotMeshError):
    pass


class ExportError(DotMeshError):
    pass


class QualityAssessmentError(DotMeshError):
    pass


class TaskCancelledError(DotMeshError):
    def __init__(self, task_id: str):
        self.task_id = str(task_id)
        super().__init__(f"Task cancelled: {self.task_id}")

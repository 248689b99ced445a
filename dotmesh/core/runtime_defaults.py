"""
Runtime defaults for CLI and worker processing.

Values can be overridden via environment variables so limits are not
hardcoded in several entrypoints.
"""

from __future__ import annotations

from dataclasses import dataclass
import os


ENV_MAX_PATTERN_DIMENSION = "DOTMESH_MAX_PATTERN_DIMENSION"
ENV_MAX_WORKERS = "DOTMESH_MAX_WORKERS"
ENV_BATCH_SIZE = "DOTMESH_BATCH_SIZE"
ENV_OBJ_PRECISION = "DOTMESH_OBJ_PRECISION"
ENV_THICKNESS_SAMPLES = "DOTMESH_THICKNESS_SAMPLES"
ENV_INTERSECTION_FACE_LIMIT = "DOTMESH_INTERSECTION_FACE_LIMIT"


@dataclass(frozen=True)
class RuntimeDefaults:
    max_pattern_dimension: int
    max_workers: int
    batch_size: int
    obj_precision: int
    thickness_samples: int
    intersection_face_limit: int


def _read_int_env(
    env_name: str,
    default: int,
    *,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int:
    raw = os.environ.get(env_name)
    if raw is None:
        return default
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return default

    if min_value is not None and value < min_value:
        return default
    if max_value is not None and value > max_value:
        return default
    return value


def _default_worker_count() -> int:
    cpus = os.cpu_count() or 1
    return max(1, min(4, cpus))


def load_runtime_defaults() -> RuntimeDefaults:
    max_workers = _read_int_env(ENV_MAX_WORKERS, _default_worker_count(), min_value=1, max_value=64)
    batch_size = _read_int_env(ENV_BATCH_SIZE, max_workers * 2, min_value=1, max_value=1000)

    return RuntimeDefaults(
        max_pattern_dimension=_read_int_env(ENV_MAX_PATTERN_DIMENSION, 1000, min_value=1, max_value=4096),
        max_workers=max_workers,
        batch_size=batch_size,
        obj_precision=_read_int_env(ENV_OBJ_PRECISION, 6, min_value=1, max_value=12),
        thickness_samples=_read_int_env(ENV_THICKNESS_SAMPLES, 256, min_value=1, max_value=100000),
        intersection_face_limit=_read_int_env(
            ENV_INTERSECTION_FACE_LIMIT,
            20000,
            min_value=0,
            max_value=10_000_000,
        ),
    )


DEFAULTS = load_runtime_defaults()

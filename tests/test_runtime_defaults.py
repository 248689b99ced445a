from dotmesh.core.runtime_defaults import (
    ENV_BATCH_SIZE,
    ENV_INTERSECTION_FACE_LIMIT,
    ENV_MAX_PATTERN_DIMENSION,
    ENV_MAX_WORKERS,
    ENV_OBJ_PRECISION,
    ENV_THICKNESS_SAMPLES,
    load_runtime_defaults,
)


def _clear_runtime_env(monkeypatch):
    for key in (
        ENV_MAX_PATTERN_DIMENSION,
        ENV_MAX_WORKERS,
        ENV_BATCH_SIZE,
        ENV_OBJ_PRECISION,
        ENV_THICKNESS_SAMPLES,
        ENV_INTERSECTION_FACE_LIMIT,
    ):
        monkeypatch.delenv(key, raising=False)


def test_runtime_defaults_without_env(monkeypatch):
    _clear_runtime_env(monkeypatch)
    monkeypatch.setattr("os.cpu_count", lambda: 8)
    defaults = load_runtime_defaults()

    assert defaults.max_pattern_dimension == 1000
    assert defaults.max_workers == 4
    assert defaults.batch_size == 8
    assert defaults.obj_precision == 6
    assert defaults.thickness_samples == 256
    assert defaults.intersection_face_limit == 20000


def test_runtime_defaults_with_valid_env(monkeypatch):
    _clear_runtime_env(monkeypatch)
    monkeypatch.setenv(ENV_MAX_PATTERN_DIMENSION, "2048")
    monkeypatch.setenv(ENV_MAX_WORKERS, "2")
    monkeypatch.setenv(ENV_OBJ_PRECISION, "3")
    monkeypatch.setenv(ENV_THICKNESS_SAMPLES, "64")
    monkeypatch.setenv(ENV_INTERSECTION_FACE_LIMIT, "0")

    defaults = load_runtime_defaults()

    assert defaults.max_pattern_dimension == 2048
    assert defaults.max_workers == 2
    assert defaults.batch_size == 4
    assert defaults.obj_precision == 3
    assert defaults.thickness_samples == 64
    assert defaults.intersection_face_limit == 0


def test_runtime_defaults_invalid_values_fallback(monkeypatch):
    _clear_runtime_env(monkeypatch)
    monkeypatch.setattr("os.cpu_count", lambda: 1)
    monkeypatch.setenv(ENV_MAX_PATTERN_DIMENSION, "abc")
    monkeypatch.setenv(ENV_MAX_WORKERS, "0")
    monkeypatch.setenv(ENV_BATCH_SIZE, "-1")
    monkeypatch.setenv(ENV_OBJ_PRECISION, "99")
    monkeypatch.setenv(ENV_THICKNESS_SAMPLES, "")

    defaults = load_runtime_defaults()

    assert defaults.max_pattern_dimension == 1000
    assert defaults.max_workers == 1
    assert defaults.batch_size == 2
    assert defaults.obj_precision == 6
    assert defaults.thickness_samples == 256

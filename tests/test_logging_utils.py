import logging

import pytest

from dotmesh.core.logging_utils import ENV_LOG_LEVEL, default_log_dir, log_once, setup_logging


def test_default_log_dir_uses_xdg_state_home(monkeypatch, tmp_path):
    if default_log_dir().drive:
        pytest.skip("XDG layout only applies on POSIX")
    monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path))
    assert default_log_dir() == tmp_path / "dotmesh" / "logs"


def test_setup_logging_is_idempotent(monkeypatch, tmp_path):
    monkeypatch.delenv(ENV_LOG_LEVEL, raising=False)
    root = logging.getLogger()
    monkeypatch.setattr(root, "handlers", [])

    old_level = root.level
    try:
        first = setup_logging(log_dir=tmp_path)
        second = setup_logging(log_dir=tmp_path / "other")

        assert first == tmp_path / "dotmesh.log"
        assert second == first
        assert first.exists()
        assert not (tmp_path / "other").exists()
        assert [type(h) for h in root.handlers] == [logging.FileHandler]
    finally:
        for handler in list(root.handlers):
            handler.close()
        logging.captureWarnings(False)
        root.setLevel(old_level)


def test_log_once_logs_first_occurrence_only(caplog):
    logger = logging.getLogger("dotmesh.tests.log_once")
    with caplog.at_level(logging.WARNING, logger="dotmesh.tests.log_once"):
        assert log_once(logger, "tests:log-once", logging.WARNING, "value %d", 1) is True
        assert log_once(logger, "tests:log-once", logging.WARNING, "value %d", 2) is False

    messages = [r.getMessage() for r in caplog.records if r.name == "dotmesh.tests.log_once"]
    assert messages == ["value 1"]

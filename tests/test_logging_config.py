"""Tests for logging setup."""

import logging

import pytest

from longbox import logging_config
from longbox.logging_config import get_logger, setup_logging


@pytest.fixture
def fresh_root(monkeypatch):
    monkeypatch.setattr(logging_config, "_logging_initialized", False)
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    yield root
    for handler in root.handlers[:]:
        if handler not in before:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


def test_setup_writes_debug_records_to_file(fresh_root, tmp_path, monkeypatch):
    monkeypatch.delenv("LONGBOX_LOG_LEVEL", raising=False)
    log_file = tmp_path / "logs" / "longbox.log"

    setup_logging("WARNING", log_file=log_file)
    get_logger("longbox.test").debug("indexed batman-001.cbz")
    for handler in fresh_root.handlers:
        handler.flush()

    text = log_file.read_text(encoding="utf-8")
    assert "indexed batman-001.cbz" in text
    assert "MainThread" in text
    assert logging.getLogger("PIL").level == logging.WARNING


def test_setup_runs_once(fresh_root, tmp_path):
    setup_logging(log_file=tmp_path / "a.log")
    count = len(fresh_root.handlers)
    setup_logging(log_file=tmp_path / "b.log")
    assert len(fresh_root.handlers) == count
    assert not (tmp_path / "b.log").exists()


def test_environment_overrides_console_level(monkeypatch):
    monkeypatch.setenv("LONGBOX_LOG_LEVEL", "debug")
    assert logging_config._console_level("INFO") == logging.DEBUG
    monkeypatch.setenv("LONGBOX_LOG_LEVEL", "nonsense")
    assert logging_config._console_level("INFO") == logging.INFO

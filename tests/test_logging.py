"""Tests for logging setup."""

import logging
import sys
from pathlib import Path

import pytest
from rich.logging import RichHandler

from envsnap.core.logging import setup_logging


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level, hook = list(root.handlers), root.level, sys.excepthook
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    sys.excepthook = hook


def test_console_only() -> None:
    setup_logging()
    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0], RichHandler)
    assert root.handlers[0].level == logging.WARNING


def test_log_file_receives_debug(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "envsnap.log"
    setup_logging(log_file=str(log_file))

    logging.getLogger("envsnap.test").debug("planned 3 actions")
    for handler in logging.getLogger().handlers:
        handler.flush()

    content = log_file.read_text()
    assert "planned 3 actions" in content
    assert "MainThread" in content

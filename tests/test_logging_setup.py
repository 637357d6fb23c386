# tests/test_logging_setup.py

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from task_query.logging_setup import _ConsoleNoiseFilter, setup_logging


@pytest.fixture()
def restore_root_logging():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield root
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()
    for h in saved_handlers:
        root.addHandler(h)
    root.setLevel(saved_level)
    logging.captureWarnings(False)


def _record(name: str, level: int) -> logging.LogRecord:
    return logging.LogRecord(name, level, __file__, 1, "msg", None, None)


def test_setup_replaces_handlers_and_writes_log_file(restore_root_logging: logging.Logger, tmp_path: Path) -> None:
    root = restore_root_logging
    setup_logging(log_dir=tmp_path / "logs")
    setup_logging(log_dir=tmp_path / "logs", console_level=logging.WARNING)

    assert len(root.handlers) == 2
    console, log_file = root.handlers
    assert console.level == logging.WARNING
    assert log_file.level == logging.DEBUG

    logging.getLogger("task_query.test").debug("hello file")
    log_file.flush()
    assert "hello file" in (tmp_path / "logs" / "taskq.log").read_text(encoding="utf-8")


@pytest.mark.parametrize(
    "name, level, shown",
    [
        ("task_query.query.query_engine", logging.DEBUG, True),
        ("httpx", logging.INFO, False),
        ("httpcore.http11", logging.WARNING, True),
        ("py.warnings", logging.WARNING, False),
        ("asyncio", logging.WARNING, False),
        ("asyncio", logging.ERROR, True),
    ],
)
def test_console_filter(name: str, level: int, shown: bool) -> None:
    assert _ConsoleNoiseFilter().filter(_record(name, level)) is shown

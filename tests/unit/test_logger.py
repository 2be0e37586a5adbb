"""Tests for sweteam.logger."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from sweteam.logger import setup_logging


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    structlog.reset_defaults()


def _records(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_levels() -> None:
    setup_logging("warn")
    assert logging.getLogger().level == logging.WARNING
    assert logging.getLogger("httpx").level == logging.WARNING

    setup_logging("nonsense")
    assert logging.getLogger().level == logging.INFO

    setup_logging("DEBUG")
    assert logging.getLogger("aiosqlite").level == logging.DEBUG


def test_file_receives_json_from_stdlib_and_structlog(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "sweteam.log"
    setup_logging("info", log_file=str(log_file))

    logging.getLogger("sweteam.coordinator.workflow").info("Run %s resumed", 7)
    structlog.get_logger("sweteam.test").info("worker_spawned", run_id=7, worker="worker-0")
    logging.getLogger("sweteam.test").debug("hidden")

    records = _records(log_file)
    assert [r["event"] for r in records] == ["Run 7 resumed", "worker_spawned"]
    assert records[0]["logger"] == "sweteam.coordinator.workflow"
    assert records[0]["level"] == "info"
    assert records[1]["run_id"] == 7
    assert "timestamp" in records[1]


def test_setup_replaces_previous_handlers(tmp_path: Path) -> None:
    setup_logging("info", log_file=str(tmp_path / "a.log"))
    setup_logging("info")
    assert len(logging.getLogger().handlers) == 1

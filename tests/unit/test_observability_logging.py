"""Tests for structured logging configuration."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

import pytest
import structlog

from eventflow.graph.mutations import MutationEngine
from eventflow.observability import (
    close_file_logging,
    configure_logging,
    get_logger,
    storyline_context,
)
from tests.fixtures.story_fixtures import STORYLINE_ID

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from eventflow.graph.store import StoryDatabase


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    yield
    close_file_logging()
    structlog.contextvars.clear_contextvars()
    configure_logging(verbosity=0)


def _jsonl_entries(project_path: Path) -> list[dict[str, object]]:
    lines = (project_path / "logs" / "debug.jsonl").read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_configure_logging_sets_level_warning() -> None:
    """Default verbosity (0) sets WARNING level."""
    configure_logging(verbosity=0)

    assert logging.getLogger().level == logging.WARNING


def test_configure_logging_verbose_sets_debug_root() -> None:
    """verbosity=1 opens the root logger; the console handler filters to INFO."""
    configure_logging(verbosity=1)

    root_logger = logging.getLogger()
    assert root_logger.level == logging.DEBUG
    assert root_logger.handlers[0].level == logging.INFO


def test_get_logger_auto_configures() -> None:
    import eventflow.observability.logging as log_module

    log_module._configured = False

    get_logger("test")

    assert log_module._configured is True


def test_configure_logging_quiets_asyncio() -> None:
    configure_logging(verbosity=2)

    assert logging.getLogger("asyncio").level == logging.WARNING


def test_file_logging_requires_project_path() -> None:
    with pytest.raises(ValueError, match="project_path"):
        configure_logging(log_to_file=True)


def test_file_logging_writes_jsonl(tmp_path: Path) -> None:
    """Events land in logs/debug.jsonl as one JSON object per line."""
    configure_logging(verbosity=0, log_to_file=True, project_path=tmp_path)

    get_logger("eventflow.test").info("event_created", event_id="e1")
    close_file_logging()

    entry = _jsonl_entries(tmp_path)[-1]
    assert entry["message"] == "event_created"
    assert entry["event_id"] == "e1"
    assert entry["level"] == "INFO"
    assert entry["logger"] == "eventflow.test"
    assert "timestamp" in entry


def test_reconfigure_closes_previous_file(tmp_path: Path) -> None:
    configure_logging(log_to_file=True, project_path=tmp_path)
    configure_logging(verbosity=0)

    assert all(not isinstance(h, logging.FileHandler) for h in logging.getLogger().handlers)


def test_storyline_context_binds_and_restores() -> None:
    with storyline_context("sl-1"):
        assert structlog.contextvars.get_contextvars() == {"storyline_id": "sl-1"}
        with storyline_context("sl-2"):
            assert structlog.contextvars.get_contextvars()["storyline_id"] == "sl-2"
        assert structlog.contextvars.get_contextvars()["storyline_id"] == "sl-1"

    assert "storyline_id" not in structlog.contextvars.get_contextvars()


def test_storyline_context_reaches_file_log(tmp_path: Path) -> None:
    configure_logging(verbosity=0, log_to_file=True, project_path=tmp_path)

    with storyline_context("sl-9"):
        get_logger("eventflow.test").debug("option_connected", source_id="A")
    close_file_logging()

    entry = _jsonl_entries(tmp_path)[-1]
    assert entry["message"] == "option_connected"
    assert entry["storyline_id"] == "sl-9"


@pytest.mark.asyncio
async def test_engine_writes_carry_storyline_id(
    tmp_path: Path, branching_db: StoryDatabase
) -> None:
    """Event writes made by the engine are logged with their storyline."""
    configure_logging(verbosity=0, log_to_file=True, project_path=tmp_path)
    engine = await MutationEngine.load(branching_db, STORYLINE_ID)

    await engine.update_event("B", title="Renamed")
    close_file_logging()

    written = [e for e in _jsonl_entries(tmp_path) if e["message"] == "event_written"]
    assert written
    assert written[-1]["event_id"] == "B"
    assert written[-1]["storyline_id"] == STORYLINE_ID

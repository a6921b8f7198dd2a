"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from eventflow.graph.store import StoryDatabase
from tests.fixtures.story_fixtures import make_branching_rows, make_database


@pytest.fixture(autouse=True)
def clean_eventflow_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer environment overrides out of test runs."""
    for name in ("EVENTFLOW_DATABASE", "EVENTFLOW_DISCONNECT_POLICY", "EVENTFLOW_PROJECTS_DIR"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def empty_db() -> StoryDatabase:
    """Database with story-1 / sl1 and no events."""
    return make_database()


@pytest.fixture
def branching_db() -> StoryDatabase:
    """Database seeded with the A/B/C/D branching storyline."""
    return make_database(make_branching_rows(), starter_event_id="A")

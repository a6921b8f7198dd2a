"""Tests for JSON export."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from eventflow.export.json_exporter import (
    JsonExporter,
    build_document,
    export_filename,
    export_option,
)
from eventflow.graph.mutations import MutationEngine
from eventflow.models import Effect, Option, SkillCheck, Target
from tests.fixtures.story_fixtures import STORYLINE_ID

if TYPE_CHECKING:
    from pathlib import Path

    from eventflow.graph.store import StoryDatabase


class TestExportOption:
    def test_probability_form(self) -> None:
        option = Option(
            text="Go",
            targets=[Target.weighted("B", 0.25), Target.weighted("C", 0.75)],
            effects=[Effect(skill="luck", value=1)],
        )

        assert export_option(option) == {
            "text": "Go",
            "optionTargets": ["B", "C"],
            "optionProbabilities": [0.25, 0.75],
            "effects": [{"skill": "luck", "value": 1}],
        }

    def test_skill_form(self) -> None:
        option = Option(
            text="Lift",
            skill_check=SkillCheck(skill="strength", min_value=5),
            targets=[Target.outcome("D", True), Target.outcome("C", False)],
        )

        encoded = export_option(option)

        assert encoded["skillCheck"] == {"skill": "strength", "minValue": 5}
        assert encoded["successTargets"] == ["D"]
        assert encoded["failureTargets"] == ["C"]
        assert "optionTargets" not in encoded

    def test_unconnected_probability_option(self) -> None:
        encoded = export_option(Option(text="Wait"))
        assert encoded["optionTargets"] == []
        assert encoded["optionProbabilities"] == []


class TestJsonExporter:
    @pytest.mark.asyncio
    async def test_writes_storyline_file(self, branching_db: StoryDatabase, tmp_path: Path) -> None:
        engine = await MutationEngine.load(branching_db, STORYLINE_ID)

        path = JsonExporter().export(engine.graph, tmp_path / "out")

        assert path.name == export_filename(STORYLINE_ID) == "storyline_sl1.json"
        data = json.loads(path.read_text(encoding="utf-8"))
        assert [e["id"] for e in data] == ["A", "B", "C", "D"]
        assert data[0]["isStarter"] is True
        assert data[0]["options"][0]["optionProbabilities"] == [0.5, 0.5]
        assert data[1]["options"][0]["successTargets"] == ["D"]

    @pytest.mark.asyncio
    async def test_document_keeps_event_fields(self, branching_db: StoryDatabase) -> None:
        engine = await MutationEngine.load(branching_db, STORYLINE_ID)
        await engine.move_event("C", 40, 80)
        await engine.set_trigger_requirements("C", {"hasKey": True})

        record = build_document(engine.graph)[2]

        assert record["position"] == {"x": 40, "y": 80}
        assert record["triggerRequirements"] == {"hasKey": True}
        assert record["title"] == "Event C"

    @pytest.mark.asyncio
    async def test_non_ascii_text_kept(self, empty_db: StoryDatabase, tmp_path: Path) -> None:
        engine = await MutationEngine.load(empty_db, STORYLINE_ID)
        await engine.create_event(title="Café à l'aube")

        path = JsonExporter(indent=0).export(engine.graph, tmp_path)

        assert "Café à l'aube" in path.read_text(encoding="utf-8")

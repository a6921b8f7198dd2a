"""Tests for storyline import, including legacy document shapes."""

from __future__ import annotations

import json
import math
from typing import TYPE_CHECKING, Any

import pytest

from eventflow.export.importer import import_document, parse_document, read_document
from eventflow.export.json_exporter import build_document
from eventflow.graph.errors import ImportFormatError
from eventflow.graph.mutations import MutationEngine
from eventflow.graph.store import StoryDatabase
from tests.fixtures.story_fixtures import STORYLINE_ID, event_row, make_database

if TYPE_CHECKING:
    from pathlib import Path


def _by_title(engine: MutationEngine) -> dict[str, Any]:
    return {e.title: e for e in engine.graph}


class TestParseDocument:
    def test_not_a_list(self) -> None:
        with pytest.raises(ImportFormatError, match="JSON array"):
            parse_document({"events": []})

    def test_event_without_options(self) -> None:
        with pytest.raises(ImportFormatError) as exc_info:
            parse_document([{"id": "e1"}])
        assert exc_info.value.location == "[0]"

    def test_unrecognized_option(self) -> None:
        with pytest.raises(ImportFormatError) as exc_info:
            parse_document([{"id": "e1", "options": [{"label": "Go"}]}])
        assert exc_info.value.location == "[0].options[0]"

    def test_weight_count_mismatch(self) -> None:
        doc = [{"id": "e1", "options": [{"text": "Go", "optionTargets": ["e2"],
                                         "optionProbabilities": [0.5, 0.5]}]}]
        with pytest.raises(ImportFormatError, match="2 probabilities for 1 target"):
            parse_document(doc)

    def test_negative_weight(self) -> None:
        doc = [{"id": "e1", "options": [{"text": "Go", "optionTargets": ["e2"],
                                         "optionProbabilities": [-1]}]}]
        with pytest.raises(ImportFormatError, match="finite non-negative"):
            parse_document(doc)

    @pytest.mark.parametrize("weight", [math.inf, -math.inf, math.nan])
    def test_non_finite_weight(self, weight: float) -> None:
        doc = [{"id": "e1", "options": [{"text": "Go", "optionTargets": ["e2", "e3"],
                                         "optionProbabilities": [weight, 1]}]}]
        with pytest.raises(ImportFormatError, match="finite") as exc_info:
            parse_document(doc)
        assert exc_info.value.location == "[0].options[0].optionProbabilities[0]"

    def test_overflowing_weight_in_file(self, tmp_path: Path) -> None:
        """A JSON number too large for a float parses as inf and is rejected."""
        path = tmp_path / "story.json"
        path.write_text(
            '[{"id": "a", "options": [{"text": "x", "optionTargets": ["b", "c"],'
            ' "optionProbabilities": [1e309, 1]}]}]',
            encoding="utf-8",
        )
        with pytest.raises(ImportFormatError, match="finite"):
            read_document(path)

    def test_non_finite_canonical_target(self) -> None:
        doc = [{"id": "e1", "options": [{"text": "Go",
                                         "targets": [{"eventId": "e2", "probability": math.inf}]}]}]
        with pytest.raises(ImportFormatError, match="invalid option"):
            parse_document(doc)

    def test_duplicate_ids(self) -> None:
        with pytest.raises(ImportFormatError, match="duplicate"):
            parse_document([{"id": "e1", "options": []}, {"id": "e1", "options": []}])

    def test_skill_check_without_skill(self) -> None:
        doc = [{"id": "e1", "options": [{"text": "Try", "successTargets": ["e2"]}]}]
        with pytest.raises(ImportFormatError, match="skillCheck"):
            parse_document(doc)

    def test_option_shapes(self) -> None:
        parsed = parse_document(
            [
                {
                    "id": "e1",
                    "options": [
                        "Plain label",
                        {"text": "Linked", "nextEventId": "e2"},
                        {"text": "Flat", "optionTargets": "e2"},
                        {"text": "Canonical", "targets": [{"eventId": "e2", "probability": 1}]},
                    ],
                }
            ]
        )

        options = parsed[0].options
        assert options[0].target_ids == []
        assert [o.target_ids for o in options[1:]] == [["e2"], ["e2"], ["e2"]]

    def test_event_level_parallel_arrays(self) -> None:
        parsed = parse_document(
            [
                {
                    "id": "e1",
                    "options": ["Left", "Right"],
                    "optionTargets": [["e2", "e3"], "e3"],
                    "optionProbabilities": [[1, 3], 1],
                }
            ]
        )

        left, right = parsed[0].options
        assert [(t.event_id, t.probability) for t in left.targets] == [("e2", 1.0), ("e3", 3.0)]
        assert right.target_ids == ["e3"]

    def test_links_ignored_when_options_name_destinations(self) -> None:
        parsed = parse_document(
            [
                {
                    "id": "e1",
                    "options": [{"text": "A", "nextEventId": "e2"}, "B"],
                    "links": ["e2", "e3"],
                }
            ]
        )
        assert parsed[0].options[1].target_ids == []

    def test_read_document_bad_json(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.json"
        path.write_text("[{", encoding="utf-8")
        with pytest.raises(ImportFormatError, match="not valid JSON"):
            read_document(path)


class TestImportDocument:
    @pytest.mark.asyncio
    async def test_legacy_links_document(self, empty_db: StoryDatabase) -> None:
        engine = await MutationEngine.load(empty_db, STORYLINE_ID)

        report = await import_document(
            engine,
            [
                {"id": "e1", "options": ["Go"], "links": ["e2"]},
                {"id": "e2", "options": []},
            ],
        )

        assert not report.is_partial
        new_e1, new_e2 = report.id_map["e1"], report.id_map["e2"]
        assert report.imported == [new_e1, new_e2]
        option = engine.graph.option(new_e1, 0)
        assert option.text == "Go"
        assert [(t.event_id, t.probability) for t in option.targets] == [(new_e2, 1.0)]

    @pytest.mark.asyncio
    async def test_ids_are_rekeyed(self, empty_db: StoryDatabase) -> None:
        engine = await MutationEngine.load(empty_db, STORYLINE_ID)

        report = await import_document(engine, [{"id": "e1", "options": []}])

        assert "e1" not in engine.graph
        assert report.id_map["e1"] in engine.graph

    @pytest.mark.asyncio
    async def test_round_trip(self, branching_db: StoryDatabase) -> None:
        source = await MutationEngine.load(branching_db, STORYLINE_ID)
        await source.set_probabilities("A", 0, [0.3, 0.7])
        await source.set_effects("A", 0, [{"skill": "courage", "value": 3}])
        document = json.loads(json.dumps(build_document(source.graph)))

        target = await MutationEngine.load(make_database(), STORYLINE_ID)
        report = await import_document(target, document)

        ids = report.id_map
        go = target.graph.option(ids["A"], 0)
        assert [(t.event_id, t.probability) for t in go.targets] == [
            (ids["B"], pytest.approx(0.3)),
            (ids["C"], pytest.approx(0.7)),
        ]
        assert go.effects[0].value == 3
        lift = target.graph.option(ids["B"], 0)
        assert lift.skill_check is not None
        assert lift.skill_check.min_value == 5
        assert [t.event_id for t in lift.success_targets] == [ids["D"]]
        assert [t.event_id for t in lift.failure_targets] == [ids["C"]]
        assert target.graph.starter_id == ids["A"]

    @pytest.mark.asyncio
    async def test_outside_targets_dropped(self, empty_db: StoryDatabase) -> None:
        engine = await MutationEngine.load(empty_db, STORYLINE_ID)

        report = await import_document(
            engine,
            [
                {
                    "id": "e1",
                    "options": [
                        {"text": "Go", "optionTargets": ["e2", "elsewhere"],
                         "optionProbabilities": [0.25, 0.75]}
                    ],
                },
                {"id": "e2", "options": []},
            ],
        )

        assert report.dropped_targets == ["e1[0] -> elsewhere"]
        option = engine.graph.option(report.id_map["e1"], 0)
        assert [(t.event_id, t.probability) for t in option.targets] == [
            (report.id_map["e2"], pytest.approx(1.0))
        ]

    @pytest.mark.asyncio
    async def test_repeated_probability_targets_collapse(self, empty_db: StoryDatabase) -> None:
        engine = await MutationEngine.load(empty_db, STORYLINE_ID)

        report = await import_document(
            engine,
            [
                {
                    "id": "a",
                    "options": [
                        {"text": "x", "optionTargets": ["b", "b"],
                         "optionProbabilities": [0.5, 0.5]}
                    ],
                },
                {"id": "b", "options": []},
            ],
        )

        assert report.duplicate_targets == ["a[0] -> b"]
        option = engine.graph.option(report.id_map["a"], 0)
        assert [(t.event_id, t.probability) for t in option.targets] == [
            (report.id_map["b"], pytest.approx(1.0))
        ]

    @pytest.mark.asyncio
    async def test_repeated_targets_in_event_level_arrays(self, empty_db: StoryDatabase) -> None:
        engine = await MutationEngine.load(empty_db, STORYLINE_ID)

        report = await import_document(
            engine,
            [
                {
                    "id": "a",
                    "options": ["Go"],
                    "optionTargets": [["b", "c", "b"]],
                    "optionProbabilities": [[1, 1, 2]],
                },
                {"id": "b", "options": []},
                {"id": "c", "options": []},
            ],
        )

        assert report.duplicate_targets == ["a[0] -> b"]
        option = engine.graph.option(report.id_map["a"], 0)
        assert option.target_ids == [report.id_map["b"], report.id_map["c"]]
        assert [t.probability for t in option.targets] == [
            pytest.approx(0.5),
            pytest.approx(0.5),
        ]

    @pytest.mark.asyncio
    async def test_repeated_skill_outcomes_collapse(self, empty_db: StoryDatabase) -> None:
        """Same event on both outcomes is kept; a repeated (event, outcome) pair is not."""
        engine = await MutationEngine.load(empty_db, STORYLINE_ID)

        report = await import_document(
            engine,
            [
                {
                    "id": "a",
                    "options": [
                        {
                            "text": "Climb",
                            "skillCheck": {"skill": "agility", "minValue": 3},
                            "successTargets": ["b", "b"],
                            "failureTargets": ["b"],
                        }
                    ],
                },
                {"id": "b", "options": []},
            ],
        )

        assert report.duplicate_targets == ["a[0] -> b"]
        option = engine.graph.option(report.id_map["a"], 0)
        assert [t.event_id for t in option.success_targets] == [report.id_map["b"]]
        assert [t.event_id for t in option.failure_targets] == [report.id_map["b"]]

    @pytest.mark.asyncio
    async def test_existing_starter_wins(self, empty_db: StoryDatabase) -> None:
        engine = await MutationEngine.load(empty_db, STORYLINE_ID)
        existing = await engine.create_event(title="Already here")

        report = await import_document(engine, [{"id": "s", "isStarter": True, "options": []}])

        assert engine.graph.starter_id == existing
        assert not engine.graph.get_event(report.id_map["s"]).is_starter

    @pytest.mark.asyncio
    async def test_format_error_writes_nothing(self, empty_db: StoryDatabase) -> None:
        engine = await MutationEngine.load(empty_db, STORYLINE_ID)
        with pytest.raises(ImportFormatError):
            await import_document(engine, [{"id": "ok", "options": []}, {"id": "bad"}])
        assert len(engine.graph) == 0
        assert await empty_db.events.get_all() == []

    @pytest.mark.asyncio
    async def test_storage_failure_reports_partial(self) -> None:
        db = make_database([event_row("x", is_starter=True)], starter_event_id="x", flaky=True)
        engine = await MutationEngine.load(db, STORYLINE_ID)
        db.events.max_adds = 1  # type: ignore[attr-defined]

        report = await import_document(
            engine,
            [{"id": "a", "options": []}, {"id": "b", "options": []}, {"id": "c", "options": []}],
        )

        assert report.is_partial
        assert report.imported == [report.id_map["a"]]
        assert report.failed_event == "b"
        assert "before failing on 'b'" in report.summary
        assert len(engine.graph) == 2

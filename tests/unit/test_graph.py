"""Tests for the in-memory StoryGraph."""

from __future__ import annotations

import pytest

from eventflow.graph.errors import EntityNotFoundError, OptionIndexError
from eventflow.graph.graph import StoryGraph
from eventflow.graph.migration import migrate_event
from eventflow.models import ConnectionKind, Storyline
from tests.fixtures.story_fixtures import (
    STORY_ID,
    STORYLINE_ID,
    event_row,
    make_branching_rows,
    probability_option,
)


def _graph(rows: list[dict], starter: str | None = None) -> StoryGraph:
    storyline = Storyline(id=STORYLINE_ID, story_id=STORY_ID, starter_event_id=starter)
    return StoryGraph(storyline, [migrate_event(r).event for r in rows])


@pytest.fixture
def graph() -> StoryGraph:
    return _graph(make_branching_rows(), starter="A")


class TestLookup:
    """Event and option lookup."""

    def test_membership_and_order(self, graph: StoryGraph) -> None:
        assert len(graph) == 4
        assert "B" in graph
        assert "Z" not in graph
        assert graph.event_ids() == ["A", "B", "C", "D"]

    def test_get_missing_event_suggests_close_ids(self) -> None:
        graph = _graph([event_row("event-alpha"), event_row("event-beta")])
        with pytest.raises(EntityNotFoundError) as exc_info:
            graph.get_event("event-alpah")
        assert "event-alpha" in exc_info.value.suggestions()
        assert "Did you mean" in exc_info.value.describe()

    def test_option_out_of_range(self, graph: StoryGraph) -> None:
        with pytest.raises(OptionIndexError) as exc_info:
            graph.option("A", 3)
        assert exc_info.value.option_count == 1
        assert "0..0" in exc_info.value.describe()


class TestConnectionSummary:
    """Renderer-facing summaries."""

    def test_probability_option(self, graph: StoryGraph) -> None:
        summary = graph.option_connection("A", 0)
        assert summary.is_connected
        assert summary.target_count == 2
        assert not summary.is_skill_check

    def test_skill_option(self, graph: StoryGraph) -> None:
        summary = graph.option_connection("B", 0)
        assert summary.is_skill_check
        assert summary.success_count == 1
        assert summary.failure_count == 1

    def test_unconnected_option(self) -> None:
        graph = _graph([event_row("e1", options=["Wait"])])
        summary = graph.option_connection("e1", 0)
        assert not summary.is_connected
        assert summary.target_count == 0


class TestEdges:
    """Edge listing and reverse lookups."""

    def test_edges_carry_kind(self, graph: StoryGraph) -> None:
        kinds = {(e.source_id, e.target_id): e.kind for e in graph.edges()}
        assert kinds[("A", "B")] is ConnectionKind.PLAIN
        assert kinds[("B", "D")] is ConnectionKind.SKILL_SUCCESS
        assert kinds[("B", "C")] is ConnectionKind.SKILL_FAILURE

    def test_incoming(self, graph: StoryGraph) -> None:
        assert sorted(e.source_id for e in graph.incoming("C")) == ["A", "B"]

    def test_referencing_events_excludes_self(self) -> None:
        graph = _graph(
            [
                event_row("loop", options=[probability_option("Again", ("loop", 1.0))]),
                event_row("other", options=[probability_option("Go", ("loop", 1.0))]),
            ]
        )
        assert [e.id for e in graph.referencing_events("loop")] == ["other"]

    def test_dangling_edges(self) -> None:
        graph = _graph([event_row("e1", options=[probability_option("Go", ("ghost", 1.0))])])
        assert [e.target_id for e in graph.dangling_edges()] == ["ghost"]


class TestReachability:
    def test_all_reachable_from_starter(self, graph: StoryGraph) -> None:
        assert graph.reachable_from() == {"A", "B", "C", "D"}
        assert graph.unreachable_events() == []

    def test_orphan_is_unreachable(self) -> None:
        rows = [*make_branching_rows(), event_row("orphan")]
        graph = _graph(rows, starter="A")
        assert graph.unreachable_events() == ["orphan"]

    def test_no_starter_reaches_nothing(self) -> None:
        graph = _graph([event_row("e1")])
        assert graph.reachable_from() == set()


class TestStarterReconciliation:
    """Event flags win over the storyline pointer."""

    def test_consistent(self, graph: StoryGraph) -> None:
        assert not graph.reconcile_starter().needed

    def test_pointer_drifted(self) -> None:
        graph = _graph([event_row("e1"), event_row("e2", is_starter=True)], starter="e1")
        fix = graph.reconcile_starter()
        assert fix.starter_id == "e2"
        assert fix.pointer_changed
        assert fix.clear_flags == []

    def test_several_flags_keep_pointer_target(self) -> None:
        graph = _graph(
            [event_row("e1", is_starter=True), event_row("e2", is_starter=True)], starter="e2"
        )
        fix = graph.reconcile_starter()
        assert fix.starter_id == "e2"
        assert fix.clear_flags == ["e1"]
        assert not fix.pointer_changed

    def test_several_flags_without_pointer_keep_first(self) -> None:
        graph = _graph([event_row("e1", is_starter=True), event_row("e2", is_starter=True)])
        fix = graph.reconcile_starter()
        assert fix.starter_id == "e1"
        assert fix.clear_flags == ["e2"]

    def test_no_flags_clears_pointer(self) -> None:
        graph = _graph([event_row("e1")], starter="e1")
        fix = graph.reconcile_starter()
        assert fix.starter_id is None
        assert fix.pointer_changed

"""Integrity checks over a loaded storyline graph.

The engine keeps these invariants at every mutation boundary; the checks
exist to audit data that arrived by other routes (old databases, hand-edited
rows) and to warn authors about structurally suspicious but legal graphs.
Failures break an engine invariant; warnings do not.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from eventflow.graph.normalize import is_normalized, probability_sum
from eventflow.graph.validation_types import ValidationReport
from eventflow.observability.logging import get_logger

if TYPE_CHECKING:
    from eventflow.graph.graph import StoryGraph

log = get_logger(__name__)


def _check_starter(graph: StoryGraph, report: ValidationReport) -> None:
    flagged = graph.flagged_starters()
    if len(flagged) > 1:
        report.add("single_starter", "fail", f"{len(flagged)} events are flagged as starter", flagged)
    elif not flagged and len(graph) > 0:
        report.add("single_starter", "warn", "storyline has no starter event")
    else:
        report.add("single_starter", "pass")

    pointer = graph.starter_id
    expected = flagged[0] if len(flagged) == 1 else None
    if len(flagged) <= 1 and pointer != expected:
        report.add(
            "starter_pointer",
            "fail",
            f"storyline points at '{pointer}' but event flags say '{expected}'",
            [eid for eid in (pointer, expected) if eid],
        )
    else:
        report.add("starter_pointer", "pass")


def _check_targets(graph: StoryGraph, report: ValidationReport) -> None:
    dangling = graph.dangling_edges()
    if dangling:
        report.add(
            "dangling_targets",
            "fail",
            "; ".join(f"{e.source_id}[{e.option_index}] -> {e.target_id}" for e in dangling),
            sorted({e.source_id for e in dangling}),
        )
    else:
        report.add("dangling_targets", "pass")

    bad_sums: list[str] = []
    missing_branch: list[str] = []
    for event in graph:
        for index, option in enumerate(event.options):
            label = f"{event.id}[{index}]"
            if option.is_skill_check:
                if option.targets and (not option.success_targets or not option.failure_targets):
                    missing_branch.append(label)
            elif not is_normalized(option.targets):
                bad_sums.append(f"{label} sums to {probability_sum(option.targets):.6f}")

    if bad_sums:
        report.add("probability_sums", "fail", "; ".join(bad_sums))
    else:
        report.add("probability_sums", "pass")

    if missing_branch:
        report.add(
            "skill_check_branches",
            "warn",
            "skill checks wired on one side only: " + ", ".join(missing_branch),
        )
    else:
        report.add("skill_check_branches", "pass")


def _check_reachability(graph: StoryGraph, report: ValidationReport) -> None:
    if graph.starter_id is None:
        return
    unreachable = graph.unreachable_events()
    if unreachable:
        report.add(
            "reachability",
            "warn",
            f"{len(unreachable)} event(s) cannot be reached from the starter",
            unreachable,
        )
    else:
        report.add("reachability", "pass")


def validate_graph(graph: StoryGraph) -> ValidationReport:
    """Run all integrity checks for one storyline."""
    report = ValidationReport(storyline_id=graph.storyline_id)
    _check_starter(graph, report)
    _check_targets(graph, report)
    _check_reachability(graph, report)
    log.debug("graph_validated", storyline_id=graph.storyline_id, summary=report.summary)
    return report

"""JSON export format.

Serializes one storyline to the portable interchange document: a JSON array
with one record per event. Each option is written in one of two flat forms,
chosen by whether it has a skill check:

- probability form: ``{text, optionTargets, optionProbabilities, effects}``
- skill-check form: ``{text, skillCheck, successTargets, failureTargets, effects}``

The document carries no version field; the importer detects shapes
structurally.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from eventflow.observability.logging import get_logger

if TYPE_CHECKING:
    from pathlib import Path

    from eventflow.graph.graph import StoryGraph
    from eventflow.models.story import Event, Option

log = get_logger(__name__)


def export_filename(storyline_id: str) -> str:
    return f"storyline_{storyline_id}.json"


def _effects(option: Option) -> list[dict[str, Any]]:
    return [{"skill": e.skill, "value": e.value} for e in option.effects]


def export_option(option: Option) -> dict[str, Any]:
    """Encode one option in its flat export form."""
    if option.skill_check is not None:
        return {
            "text": option.text,
            "skillCheck": {
                "skill": option.skill_check.skill,
                "minValue": option.skill_check.min_value,
            },
            "successTargets": [t.event_id for t in option.success_targets],
            "failureTargets": [t.event_id for t in option.failure_targets],
            "effects": _effects(option),
        }
    return {
        "text": option.text,
        "optionTargets": [t.event_id for t in option.targets],
        "optionProbabilities": [t.probability for t in option.targets],
        "effects": _effects(option),
    }


def export_event(event: Event) -> dict[str, Any]:
    """Encode one event record."""
    return {
        "id": event.id,
        "title": event.title,
        "content": event.content,
        "isStarter": event.is_starter,
        "position": {"x": event.position.x, "y": event.position.y},
        "triggerRequirements": dict(event.trigger_requirements),
        "options": [export_option(o) for o in event.options],
    }


def build_document(graph: StoryGraph) -> list[dict[str, Any]]:
    """Build the interchange document for a storyline, in event order."""
    return [export_event(e) for e in graph]


class JsonExporter:
    """Export a storyline as ``storyline_<id>.json``."""

    format_name = "json"

    def __init__(self, indent: int = 2) -> None:
        self.indent = indent

    def export(self, graph: StoryGraph, output_dir: Path) -> Path:
        """Write the storyline document.

        Args:
            graph: Storyline to export.
            output_dir: Directory to write the file into (created if missing).

        Returns:
            Path to the written file.
        """
        output_dir.mkdir(parents=True, exist_ok=True)
        output_file = output_dir / export_filename(graph.storyline_id)

        data = build_document(graph)
        output_file.write_text(
            json.dumps(data, indent=self.indent, ensure_ascii=False), encoding="utf-8"
        )

        log.info(
            "storyline_exported",
            storyline_id=graph.storyline_id,
            events=len(data),
            path=str(output_file),
        )
        return output_file

"""Schema migration for persisted events.

Events written by older editor versions store options in several shapes:

- a bare string (the option label only);
- an object with a scalar ``nextEventId`` (one hard-wired destination);
- an object without ``skillCheck`` or ``effects``;
- additionally, an event-level ``links`` array listing destinations.

migrate_event() turns any of these into the canonical Event model. Raw
options are classified into a small tagged union here and nowhere else;
downstream code only ever sees the fixed-shape Option.

Each step is idempotent and deterministic, so running the migration twice
(or concurrently) converges on the same row. load_events() writes migrated
rows back so later loads skip the work.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from eventflow.graph.errors import GraphCorruptionError
from eventflow.models.story import Event
from eventflow.observability.logging import get_logger

if TYPE_CHECKING:
    from eventflow.graph.store import EntityStore

log = get_logger(__name__)


@dataclass(frozen=True)
class LegacyTextOption:
    """Option stored as its label only."""

    text: str


@dataclass(frozen=True)
class LegacyLinkedOption:
    """Option object carrying a scalar ``nextEventId``."""

    text: str
    next_event_id: str | None
    rest: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CanonicalOptionRecord:
    """Option object already using ``targets`` (fields may still be missing)."""

    data: dict[str, Any]


RawOption = LegacyTextOption | LegacyLinkedOption | CanonicalOptionRecord


def classify_option(raw: Any) -> RawOption:
    """Identify the stored shape of one option.

    Raises:
        ValueError: If the value is neither a string nor an option object.
    """
    if isinstance(raw, str):
        return LegacyTextOption(text=raw)
    if not isinstance(raw, dict):
        raise ValueError(f"option must be a string or object, got {type(raw).__name__}")
    if "nextEventId" in raw:
        rest = {k: v for k, v in raw.items() if k not in ("text", "nextEventId")}
        next_id = raw.get("nextEventId")
        return LegacyLinkedOption(
            text=str(raw.get("text", "")),
            next_event_id=next_id if isinstance(next_id, str) and next_id else None,
            rest=rest,
        )
    return CanonicalOptionRecord(data=dict(raw))


def _single_target(event_id: str) -> dict[str, Any]:
    return {"eventId": event_id, "probability": 1.0}


def migrate_option(raw: Any) -> tuple[dict[str, Any], list[str]]:
    """Convert one stored option into the canonical option dict.

    Returns:
        Tuple of (canonical option dict, names of the conversions applied).
    """
    shape = classify_option(raw)
    steps: list[str] = []

    if isinstance(shape, LegacyTextOption):
        data: dict[str, Any] = {"text": shape.text, "targets": []}
        steps.append("wrap_string_option")
    elif isinstance(shape, LegacyLinkedOption):
        data = dict(shape.rest)
        data["text"] = shape.text
        targets = list(data.get("targets") or [])
        if shape.next_event_id and not any(
            isinstance(t, dict) and t.get("eventId") == shape.next_event_id for t in targets
        ):
            targets.append(_single_target(shape.next_event_id))
        data["targets"] = targets
        steps.append("convert_next_event_id")
    else:
        data = shape.data
        if "targets" not in data or data["targets"] is None:
            data["targets"] = []
            steps.append("add_targets")

    if "skillCheck" not in data:
        data["skillCheck"] = None
        steps.append("add_skill_check")
    if "effects" not in data or data["effects"] is None:
        data["effects"] = []
        steps.append("add_effects")
    return data, steps


def _apply_links(options: list[dict[str, Any]], links: Any) -> bool:
    """Pair an event-level ``links`` array with options by index.

    Only used when no option carried its own destination; otherwise the
    links array is a redundant summary of those destinations.
    """
    if not isinstance(links, list):
        return False
    applied = False
    for option, link in zip(options, links, strict=False):
        if isinstance(link, str) and link and not option["targets"]:
            option["targets"] = [_single_target(link)]
            applied = True
    return applied


@dataclass
class MigrationResult:
    """Outcome of migrating one stored event."""

    event: Event
    steps: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.steps)


def migrate_event(raw: dict[str, Any], storyline_id: str | None = None) -> MigrationResult:
    """Canonicalize one stored event row.

    Args:
        raw: Row as read from the store.
        storyline_id: Fallback owner id for rows missing ``storylineId``.

    Returns:
        MigrationResult with the canonical Event and the steps applied.

    Raises:
        GraphCorruptionError: If the row cannot be canonicalized.
    """
    data = dict(raw)
    steps: list[str] = []
    event_id = str(data.get("id", "?"))

    if "storylineId" not in data and storyline_id is not None:
        data["storylineId"] = storyline_id
        steps.append("add_storyline_id")

    raw_options = data.get("options")
    if raw_options is None:
        raw_options = []
        steps.append("add_options")
    if not isinstance(raw_options, list):
        raise GraphCorruptionError(
            [f"options must be a list, got {type(raw_options).__name__}"], f"event '{event_id}'"
        )

    options: list[dict[str, Any]] = []
    had_destinations = False
    violations: list[str] = []
    for index, raw_option in enumerate(raw_options):
        if isinstance(raw_option, dict) and ("nextEventId" in raw_option or raw_option.get("targets")):
            had_destinations = True
        try:
            option, option_steps = migrate_option(raw_option)
        except ValueError as e:
            violations.append(f"options[{index}]: {e}")
            continue
        options.append(option)
        steps.extend(f"{s}[{index}]" for s in option_steps)
    if violations:
        raise GraphCorruptionError(violations, f"event '{event_id}'")

    if "links" in data:
        links = data.pop("links")
        if not had_destinations and _apply_links(options, links):
            steps.append("apply_links")
        else:
            steps.append("drop_links")
    data["options"] = options

    for key, default in (("isStarter", False), ("position", {"x": 0, "y": 0})):
        if key not in data or data[key] is None:
            data[key] = default
            steps.append(f"add_{key}")
    if data.get("triggerRequirements") is None:
        data["triggerRequirements"] = {}
        steps.append("add_triggerRequirements")

    try:
        event = Event.model_validate(data)
    except PydanticValidationError as e:
        problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise GraphCorruptionError(problems, f"event '{event_id}'") from e

    return MigrationResult(event=event, steps=steps)


async def load_events(store: EntityStore, storyline_id: str) -> list[Event]:
    """Read a storyline's events, migrating and writing back legacy rows.

    Write-backs for independent events are issued concurrently.

    Raises:
        StorageError: If reading or writing back fails.
        GraphCorruptionError: If a row cannot be canonicalized.
    """
    rows = await store.get_by_parent(storyline_id)
    results = [migrate_event(row, storyline_id) for row in rows]
    migrated = [r for r in results if r.changed]

    if migrated:
        log.info(
            "events_migrated",
            storyline_id=storyline_id,
            count=len(migrated),
            event_ids=[r.event.id for r in migrated],
        )
        await asyncio.gather(*(store.update(r.event.to_record()) for r in migrated))

    return [r.event for r in results]

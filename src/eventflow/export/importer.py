"""Import of storyline documents, including legacy encodings.

An import document is a JSON array of event records. Shapes are detected
structurally, per option, in this order:

1. bare string: label only;
2. object with ``targets``: the canonical persisted form;
3. object with ``skillCheck``, ``successTargets`` or ``failureTargets``:
   the flat skill-check form;
4. object with ``optionTargets``: the flat probability form;
5. object with ``nextEventId``: a single hard-wired destination;
6. object with ``text`` only: an unconnected option.

Options that carry no destination of their own (forms 1 and 6) pick one up
from event-level arrays: parallel ``optionTargets``/``optionProbabilities``
arrays indexed like ``options`` (each entry a single id or a list of ids),
or a legacy ``links`` array when no option of the event names a destination.

Importing runs in three phases. parse_document() checks the whole document
and raises ImportFormatError before anything is written. rekey_events()
assigns fresh ids and remaps targets; targets that point outside the
document are dropped. import_document() then writes event by event through
the MutationEngine; a storage failure stops the import and is reported in
the ImportReport instead of being rolled back.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from eventflow.graph.errors import ImportFormatError, StorageError
from eventflow.graph.normalize import even_distribution, normalize
from eventflow.models.story import Effect, Event, Option, Position, SkillCheck, Target, new_id
from eventflow.observability.logging import get_logger, storyline_context

if TYPE_CHECKING:
    from pathlib import Path

    from eventflow.graph.mutations import MutationEngine

log = get_logger(__name__)

_SKILL_KEYS = ("skillCheck", "successTargets", "failureTargets")


@dataclass
class ParsedEvent:
    """One document record, structurally valid, still using document ids."""

    source_id: str | None
    title: str
    content: str
    is_starter: bool
    position: Position
    trigger_requirements: dict[str, Any]
    options: list[Option] = field(default_factory=list)


@dataclass
class ImportReport:
    """Outcome of writing an imported document.

    Attributes:
        storyline_id: Storyline the events were written into.
        imported: New ids of the events written, in document order.
        id_map: Document id to new id, for every record that had an id.
        dropped_targets: ``"<doc id>[<option>] -> <target>"`` for each target
            that referenced an event outside the document.
        duplicate_targets: Same format, for each repeated target of an option
            (same event, or same event and outcome for skill checks); only the
            first is kept.
        failed_event: Document id (or ``[index]``) of the event whose write failed.
        error: The storage failure that stopped the import.
    """

    storyline_id: str
    imported: list[str] = field(default_factory=list)
    id_map: dict[str, str] = field(default_factory=dict)
    dropped_targets: list[str] = field(default_factory=list)
    duplicate_targets: list[str] = field(default_factory=list)
    failed_event: str | None = None
    error: StorageError | None = None

    @property
    def is_partial(self) -> bool:
        """True if the import stopped early; earlier events stay written."""
        return self.error is not None

    @property
    def summary(self) -> str:
        if self.is_partial:
            return (
                f"Imported {len(self.imported)} event(s) before failing on "
                f"'{self.failed_event}': {self.error}"
            )
        return f"Imported {len(self.imported)} event(s)"


# -----------------------------------------------------------------------------
# Parsing
# -----------------------------------------------------------------------------


def _id_list(value: Any, location: str) -> list[str]:
    """Accept a single id, a list of ids, or nothing."""
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        ids: list[str] = []
        for i, item in enumerate(value):
            if not isinstance(item, str) or not item:
                raise ImportFormatError("target ids must be non-empty strings", f"{location}[{i}]")
            ids.append(item)
        return ids
    raise ImportFormatError(
        f"expected an event id or a list of ids, got {type(value).__name__}", location
    )


def _weight_list(value: Any, count: int, location: str) -> list[float] | None:
    """Accept a single weight, a list of weights, or nothing (equal weights)."""
    if value is None:
        return None
    weights = value if isinstance(value, list) else [value]
    result: list[float] = []
    for i, w in enumerate(weights):
        numeric = isinstance(w, int | float) and not isinstance(w, bool)
        if not numeric or not math.isfinite(w) or w < 0:
            raise ImportFormatError(
                "probabilities must be finite non-negative numbers", f"{location}[{i}]"
            )
        result.append(float(w))
    if len(result) != count:
        raise ImportFormatError(
            f"{len(result)} probabilities for {count} target(s)", location
        )
    return result


def _weighted_targets(ids: list[str], weights: list[float] | None) -> list[Target]:
    if weights is None:
        return even_distribution([Target.weighted(i) for i in ids])
    return [Target.weighted(i, w) for i, w in zip(ids, weights, strict=True)]


def _effects(raw: Any, location: str) -> list[Effect]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ImportFormatError("effects must be a list", location)
    try:
        return [Effect.model_validate(e) for e in raw]
    except PydanticValidationError as e:
        raise ImportFormatError(f"invalid effect: {e.errors()[0]['msg']}", location) from e


def _skill_option(raw: dict[str, Any], location: str) -> Option:
    check = raw.get("skillCheck")
    if not isinstance(check, dict):
        raise ImportFormatError("skill-check option needs a skillCheck object", location)
    try:
        skill_check = SkillCheck.model_validate(check)
    except PydanticValidationError as e:
        raise ImportFormatError(
            f"invalid skillCheck: {e.errors()[0]['msg']}", f"{location}.skillCheck"
        ) from e
    targets = [
        Target.outcome(i, True)
        for i in _id_list(raw.get("successTargets"), f"{location}.successTargets")
    ] + [
        Target.outcome(i, False)
        for i in _id_list(raw.get("failureTargets"), f"{location}.failureTargets")
    ]
    return Option(
        text=str(raw.get("text", "")),
        targets=targets,
        skill_check=skill_check,
        effects=_effects(raw.get("effects"), f"{location}.effects"),
    )


def _parse_option(raw: Any, location: str) -> tuple[Option, bool]:
    """Decode one option.

    Returns:
        Tuple of (option, whether the option named its own destinations).
    """
    if isinstance(raw, str):
        return Option(text=raw), False
    if not isinstance(raw, dict):
        raise ImportFormatError(
            f"option must be a string or object, got {type(raw).__name__}", location
        )

    if "targets" in raw:
        try:
            return Option.model_validate(raw), True
        except PydanticValidationError as e:
            raise ImportFormatError(f"invalid option: {e.errors()[0]['msg']}", location) from e

    if any(raw.get(key) is not None for key in _SKILL_KEYS):
        return _skill_option(raw, location), True

    effects = _effects(raw.get("effects"), f"{location}.effects")
    text = str(raw.get("text", ""))

    if "optionTargets" in raw:
        ids = _id_list(raw["optionTargets"], f"{location}.optionTargets")
        weights = _weight_list(
            raw.get("optionProbabilities"), len(ids), f"{location}.optionProbabilities"
        )
        return Option(text=text, targets=_weighted_targets(ids, weights), effects=effects), True

    if "nextEventId" in raw:
        ids = _id_list(raw["nextEventId"], f"{location}.nextEventId")[:1]
        return Option(text=text, targets=_weighted_targets(ids, None), effects=effects), True

    if "text" in raw:
        return Option(text=text, effects=effects), False

    raise ImportFormatError("unrecognized option encoding", location)


def _event_level_targets(
    raw: dict[str, Any], index: int, location: str
) -> list[Target] | None:
    """Destinations for option *index* from parallel event-level arrays."""
    option_targets = raw.get("optionTargets")
    if not isinstance(option_targets, list) or index >= len(option_targets):
        return None
    ids = _id_list(option_targets[index], f"{location}.optionTargets[{index}]")
    probabilities = raw.get("optionProbabilities")
    weights = None
    if isinstance(probabilities, list) and index < len(probabilities):
        weights = _weight_list(
            probabilities[index], len(ids), f"{location}.optionProbabilities[{index}]"
        )
    return _weighted_targets(ids, weights)


def _parse_event(raw: Any, location: str) -> ParsedEvent:
    if not isinstance(raw, dict):
        raise ImportFormatError(f"event must be an object, got {type(raw).__name__}", location)
    raw_options = raw.get("options")
    if not isinstance(raw_options, list):
        raise ImportFormatError("event has no options array", location)

    source_id = raw.get("id")
    if source_id is not None and (not isinstance(source_id, str) or not source_id):
        raise ImportFormatError("event id must be a non-empty string", f"{location}.id")

    for key in ("optionTargets", "optionProbabilities", "links"):
        if key in raw and not isinstance(raw[key], list):
            raise ImportFormatError(f"{key} must be an array", f"{location}.{key}")

    options: list[Option] = []
    needs_destination: list[int] = []
    any_destination = False
    for i, raw_option in enumerate(raw_options):
        option, has_own = _parse_option(raw_option, f"{location}.options[{i}]")
        options.append(option)
        any_destination = any_destination or has_own
        if not has_own:
            needs_destination.append(i)

    links = raw.get("links") or []
    for i in needs_destination:
        targets = _event_level_targets(raw, i, location)
        if targets is None and not any_destination and i < len(links):
            targets = _weighted_targets(_id_list(links[i], f"{location}.links[{i}]")[:1], None)
        if targets:
            options[i] = options[i].model_copy(update={"targets": targets})

    try:
        position = Position.model_validate(raw.get("position") or {})
    except PydanticValidationError as e:
        raise ImportFormatError(f"invalid position: {e.errors()[0]['msg']}", f"{location}.position") from e
    requirements = raw.get("triggerRequirements") or {}
    if not isinstance(requirements, dict):
        raise ImportFormatError("triggerRequirements must be an object", f"{location}.triggerRequirements")

    return ParsedEvent(
        source_id=source_id,
        title=str(raw.get("title", "")),
        content=str(raw.get("content", "")),
        is_starter=bool(raw.get("isStarter", False)),
        position=position,
        trigger_requirements=requirements,
        options=options,
    )


def parse_document(data: Any) -> list[ParsedEvent]:
    """Structurally validate a whole document.

    Raises:
        ImportFormatError: On the first structural problem found.
    """
    if not isinstance(data, list):
        raise ImportFormatError(f"document must be a JSON array, got {type(data).__name__}")
    parsed = [_parse_event(raw, f"[{i}]") for i, raw in enumerate(data)]

    seen: set[str] = set()
    for i, event in enumerate(parsed):
        if event.source_id is None:
            continue
        if event.source_id in seen:
            raise ImportFormatError(f"duplicate event id '{event.source_id}'", f"[{i}].id")
        seen.add(event.source_id)
    return parsed


def read_document(path: Path) -> list[ParsedEvent]:
    """Load and parse a document file.

    Raises:
        ImportFormatError: If the file is not JSON or not a valid document.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ImportFormatError(f"not valid JSON ({e.msg}, line {e.lineno})") from e
    return parse_document(data)


# -----------------------------------------------------------------------------
# Re-keying and writing
# -----------------------------------------------------------------------------


def rekey_events(
    parsed: list[ParsedEvent],
    storyline_id: str,
    report: ImportReport,
) -> list[Event]:
    """Give every record a fresh id and remap targets to the new ids.

    Targets referencing ids that are not in the document are dropped;
    repeated targets within an option are reduced to the first one. Surviving
    probability targets are renormalized.
    """
    new_ids = [new_id("event") for _ in parsed]
    for event, fresh in zip(parsed, new_ids, strict=True):
        if event.source_id is not None:
            report.id_map[event.source_id] = fresh

    events: list[Event] = []
    for index, (record, fresh) in enumerate(zip(parsed, new_ids, strict=True)):
        label = record.source_id or f"[{index}]"
        options: list[Option] = []
        for option_index, option in enumerate(record.options):
            targets: list[Target] = []
            seen: set[tuple[str, bool | None]] = set()
            for target in option.targets:
                entry = f"{label}[{option_index}] -> {target.event_id}"
                mapped = report.id_map.get(target.event_id)
                if mapped is None:
                    report.dropped_targets.append(entry)
                    continue
                key = (mapped, target.is_success)
                if key in seen:
                    report.duplicate_targets.append(entry)
                    continue
                seen.add(key)
                targets.append(target.model_copy(update={"event_id": mapped}))
            if not option.is_skill_check:
                targets = normalize(targets)
            options.append(option.model_copy(update={"targets": targets}))

        events.append(
            Event(
                id=fresh,
                storyline_id=storyline_id,
                title=record.title,
                content=record.content,
                options=options,
                is_starter=record.is_starter,
                trigger_requirements=record.trigger_requirements,
                position=record.position,
            )
        )

    if report.dropped_targets:
        log.warning(
            "import_targets_dropped",
            storyline_id=storyline_id,
            count=len(report.dropped_targets),
            targets=report.dropped_targets,
        )
    if report.duplicate_targets:
        log.warning(
            "import_duplicate_targets_dropped",
            storyline_id=storyline_id,
            count=len(report.duplicate_targets),
            targets=report.duplicate_targets,
        )
    return events


async def import_document(engine: MutationEngine, data: Any) -> ImportReport:
    """Import a document into the engine's storyline.

    Raises:
        ImportFormatError: If the document is structurally invalid (nothing
            has been written).
    """
    parsed = parse_document(data)
    return await import_parsed(engine, parsed)


async def import_parsed(engine: MutationEngine, parsed: list[ParsedEvent]) -> ImportReport:
    """Write already-parsed records, stopping at the first storage failure."""
    report = ImportReport(storyline_id=engine.storyline_id)
    with storyline_context(engine.storyline_id):
        try:
            events = rekey_events(parsed, engine.storyline_id, report)
        except PydanticValidationError as e:
            raise ImportFormatError(f"invalid event: {e.errors()[0]['msg']}") from e

        for index, (record, event) in enumerate(zip(parsed, events, strict=True)):
            try:
                await engine.insert_event(event)
            except StorageError as e:
                report.failed_event = record.source_id or f"[{index}]"
                report.error = e
                log.error(
                    "import_partial",
                    imported=len(report.imported),
                    failed_event=report.failed_event,
                    error=str(e),
                )
                return report
            report.imported.append(event.id)

        log.info(
            "import_completed",
            imported=len(report.imported),
            dropped_targets=len(report.dropped_targets),
            duplicate_targets=len(report.duplicate_targets),
        )
    return report

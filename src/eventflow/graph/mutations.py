"""Mutation engine for one storyline graph.

Every change to events, options and targets goes through MutationEngine.
Each operation follows the same sequence:

1. Validate against the latest in-memory copy of the event (raising a
   ValidationError subclass before anything is written).
2. Build an updated copy of the event.
3. Write the copy through the persistence port.
4. Install the copy in the StoryGraph once the write is confirmed.

Edits to the same event are serialized with a per-event asyncio.Lock, so
quick successive edits never work from a stale snapshot. Writes to
independent events (e.g. cleaning up references to a deleted event) are
dispatched concurrently. Storage failures surface as StorageError and are
not retried; the exception is move_event(), which updates the position
optimistically before writing.

Option identity is its index in the event's option list. The engine
offers no reorder operation; remove_option() shifts later indices down.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from eventflow.graph.errors import (
    EntityNotFoundError,
    GraphCorruptionError,
    InvalidValueError,
    ModeConflictError,
    OptionIndexError,
)
from eventflow.graph.graph import StarterReconciliation, StoryGraph
from eventflow.graph.migration import load_events
from eventflow.graph.normalize import check_weight, even_distribution, normalize
from eventflow.models.story import (
    ConnectionKind,
    Effect,
    Event,
    Option,
    Position,
    SkillCheck,
    Storyline,
    Target,
    new_id,
)
from eventflow.observability.logging import get_logger, storyline_context

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping, Sequence

    from eventflow.graph.store import StoryDatabase

log = get_logger(__name__)

DEFAULT_OPTION_LABEL = "Option {n}"
DEFAULT_EVENT_CONTENT = "Add content here..."

_REQUIREMENT_TYPES = (bool, int, float, str)


class DisconnectPolicy(StrEnum):
    """How surviving probability targets are rebalanced after a disconnect.

    EVEN resets them to equal weight (authored weights are discarded).
    PROPORTIONAL rescales them, keeping their relative weights.
    """

    EVEN = "even"
    PROPORTIONAL = "proportional"


def _mode_name(option: Option) -> str:
    return "skill_check" if option.is_skill_check else "probability"


def _replace_option(event: Event, index: int, option: Option) -> Event:
    options = list(event.options)
    options[index] = option
    return event.model_copy(update={"options": options})


def _require_option(event: Event, index: int) -> Option:
    option = event.option_at(index)
    if option is None:
        raise OptionIndexError(event.id, index, len(event.options))
    return option


def _strip_references(event: Event, removed_id: str) -> Event | None:
    """Drop targets pointing at *removed_id*; rescale surviving weights."""
    changed = False
    options: list[Option] = []
    for option in event.options:
        if not option.references(removed_id):
            options.append(option)
            continue
        changed = True
        survivors = [t for t in option.targets if t.event_id != removed_id]
        if not option.is_skill_check:
            survivors = normalize(survivors)
        options.append(option.model_copy(update={"targets": survivors}))
    if not changed:
        return None
    return event.model_copy(update={"options": options})


def _validate_requirements(requirements: Mapping[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in requirements.items():
        if not isinstance(key, str) or not key.strip():
            raise InvalidValueError("trigger requirement key", key, "must be a non-empty string")
        if value is None or not isinstance(value, _REQUIREMENT_TYPES):
            raise InvalidValueError(
                f"trigger requirement '{key}'", value, "must be a bool, number or string"
            )
        result[key] = value
    return result


class MutationEngine:
    """Owns the StoryGraph of one storyline and applies all changes to it.

    Use MutationEngine.load() to build an engine from storage; the
    constructor takes an already-assembled graph (used by tests and by
    callers that just created the storyline).
    """

    def __init__(
        self,
        db: StoryDatabase,
        graph: StoryGraph,
        *,
        disconnect_policy: DisconnectPolicy = DisconnectPolicy.EVEN,
        option_label: str = DEFAULT_OPTION_LABEL,
    ) -> None:
        self._db = db
        self._graph = graph
        self.disconnect_policy = DisconnectPolicy(disconnect_policy)
        self.option_label = option_label
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @classmethod
    async def load(
        cls,
        db: StoryDatabase,
        storyline_id: str,
        **kwargs: Any,
    ) -> MutationEngine:
        """Load a storyline and its events, migrating legacy rows.

        The starter is reconciled from event flags before returning.

        Raises:
            EntityNotFoundError: If the storyline does not exist.
            GraphCorruptionError: If stored rows cannot be canonicalized.
            StorageError: If the store fails.
        """
        row = await db.storylines.get(storyline_id)
        if row is None:
            known = [r["id"] for r in await db.storylines.get_all()]
            raise EntityNotFoundError(storyline_id, kind="storyline", available=known)
        try:
            storyline = Storyline.model_validate(row)
        except PydanticValidationError as e:
            raise GraphCorruptionError(
                [str(err["msg"]) for err in e.errors()], f"storyline '{storyline_id}'"
            ) from e

        events = await load_events(db.events, storyline_id)
        engine = cls(db, StoryGraph(storyline, events), **kwargs)
        await engine.reconcile_starter()
        log.info("storyline_loaded", storyline_id=storyline_id, events=len(events))
        return engine

    @property
    def graph(self) -> StoryGraph:
        return self._graph

    @property
    def storyline_id(self) -> str:
        return self._graph.storyline_id

    # -------------------------------------------------------------------------
    # Write helpers
    # -------------------------------------------------------------------------

    async def _write_storyline(self, storyline: Storyline) -> None:
        await self._db.storylines.update(storyline.to_record())
        self._graph.set_storyline(storyline)

    async def _set_starter_pointer(self, event_id: str | None) -> None:
        if self._graph.starter_id == event_id:
            return
        await self._write_storyline(
            self._graph.storyline.model_copy(update={"starter_event_id": event_id})
        )

    async def _edit_event(
        self,
        event_id: str,
        edit: Callable[[Event], Event | None],
    ) -> Event:
        """Apply *edit* to the latest copy of an event and persist the result.

        *edit* may raise a ValidationError, or return None to signal a no-op.
        """
        async with self._locks[event_id]:
            current = self._graph.get_event(event_id)
            updated = edit(current)
            if updated is None or updated == current:
                return current
            with storyline_context(self.storyline_id):
                await self._db.events.update(updated.to_record())
                self._graph.put_event(updated)
                log.debug("event_written", event_id=event_id, options=len(updated.options))
            return updated

    async def _edit_option(
        self,
        event_id: str,
        index: int,
        edit: Callable[[Option], Option | None],
    ) -> Option:
        def apply(event: Event) -> Event | None:
            option = _require_option(event, index)
            updated = edit(option)
            if updated is None:
                return None
            return _replace_option(event, index, updated)

        # Validate eagerly so a missing event fails before the lock is taken.
        self._graph.get_event(event_id)
        event = await self._edit_event(event_id, apply)
        return event.options[index]

    # -------------------------------------------------------------------------
    # Starter
    # -------------------------------------------------------------------------

    async def reconcile_starter(self) -> StarterReconciliation:
        """Make the storyline pointer agree with the event starter flags.

        Event flags are authoritative. Extra flags (several starters) are
        cleared, keeping the event the pointer names when it is flagged.
        """
        fix = self._graph.reconcile_starter()
        if not fix.needed:
            return fix

        log.warning(
            "starter_reconciled",
            storyline_id=self.storyline_id,
            stored_pointer=self._graph.starter_id,
            starter_id=fix.starter_id,
            cleared=fix.clear_flags,
        )
        await asyncio.gather(
            *(
                self._edit_event(eid, lambda e: e.model_copy(update={"is_starter": False}))
                for eid in fix.clear_flags
            )
        )
        await self._set_starter_pointer(fix.starter_id)
        return fix

    async def set_starter(self, event_id: str) -> None:
        """Make *event_id* the only starter event of the storyline."""
        self._graph.get_event(event_id)
        previous = [eid for eid in self._graph.flagged_starters() if eid != event_id]

        writes = [
            self._edit_event(event_id, lambda e: e.model_copy(update={"is_starter": True})),
            *(
                self._edit_event(eid, lambda e: e.model_copy(update={"is_starter": False}))
                for eid in previous
            ),
        ]
        await asyncio.gather(*writes)
        await self._set_starter_pointer(event_id)
        log.info(
            "starter_set", storyline_id=self.storyline_id, event_id=event_id, cleared=previous
        )

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def create_event(
        self,
        *,
        title: str | None = None,
        content: str | None = None,
        position: Position | tuple[float, float] | None = None,
        trigger_requirements: Mapping[str, Any] | None = None,
    ) -> str:
        """Create an event with no options and return its id.

        The first event of a storyline becomes its starter.
        """
        is_first = len(self._graph) == 0
        if isinstance(position, tuple):
            position = Position(x=position[0], y=position[1])
        event = Event(
            id=new_id("event"),
            storyline_id=self.storyline_id,
            title=title or f"Event {len(self._graph) + 1}",
            content=content if content is not None else DEFAULT_EVENT_CONTENT,
            is_starter=is_first,
            trigger_requirements=_validate_requirements(trigger_requirements or {}),
            position=position or Position(),
        )
        await self._db.events.add(event.to_record())
        self._graph.put_event(event)
        if is_first:
            await self._set_starter_pointer(event.id)

        log.info(
            "event_created",
            storyline_id=self.storyline_id,
            event_id=event.id,
            is_starter=is_first,
        )
        return event.id

    async def insert_event(self, event: Event) -> Event:
        """Persist a fully-formed event (bulk path used by import).

        Targets are not checked against the graph, so callers inserting a
        batch must guarantee every target id is part of that batch. A
        starter flag is honoured only while the storyline has no starter.

        Raises:
            InvalidValueError: If the id is taken or the event belongs elsewhere.
        """
        if event.id in self._graph:
            raise InvalidValueError("event id", event.id, "already exists in storyline")
        if event.storyline_id != self.storyline_id:
            raise InvalidValueError("storylineId", event.storyline_id, "belongs to another storyline")

        claims_starter = event.is_starter and not self._graph.flagged_starters()
        if event.is_starter and not claims_starter:
            event = event.model_copy(update={"is_starter": False})

        await self._db.events.add(event.to_record())
        self._graph.put_event(event)
        if claims_starter:
            await self._set_starter_pointer(event.id)
        return event

    async def delete_event(self, event_id: str) -> list[str]:
        """Delete an event and every target pointing at it.

        Probability targets left behind in affected options are
        renormalized. Deleting the starter clears the storyline pointer; no
        other event is promoted.

        Returns:
            IDs of the other events whose options were cleaned up.
        """
        event = self._graph.get_event(event_id)
        affected = [e.id for e in self._graph.referencing_events(event_id)]

        await asyncio.gather(
            *(self._edit_event(eid, lambda e: _strip_references(e, event_id)) for eid in affected)
        )

        async with self._locks[event_id]:
            await self._db.events.delete(event_id)
            self._graph.remove_event(event_id)
        self._locks.pop(event_id, None)

        if event.is_starter or self._graph.starter_id == event_id:
            await self._set_starter_pointer(None)

        log.info(
            "event_deleted",
            storyline_id=self.storyline_id,
            event_id=event_id,
            cleaned=affected,
            was_starter=event.is_starter,
        )
        return affected

    async def update_event(
        self,
        event_id: str,
        *,
        title: str | None = None,
        content: str | None = None,
    ) -> Event:
        """Change an event's display text."""
        updates: dict[str, Any] = {}
        if title is not None:
            updates["title"] = title
        if content is not None:
            updates["content"] = content
        return await self._edit_event(event_id, lambda e: e.model_copy(update=updates))

    async def move_event(self, event_id: str, x: float, y: float) -> Event:
        """Move an event on the canvas.

        Applied to the in-memory graph before the write resolves. If the
        write fails the new position is kept locally and StorageError is
        raised.
        """
        async with self._locks[event_id]:
            moved = self._graph.get_event(event_id).model_copy(
                update={"position": Position(x=x, y=y)}
            )
            self._graph.put_event(moved)
            await self._db.events.update(moved.to_record())
            return moved

    async def set_trigger_requirements(
        self, event_id: str, requirements: Mapping[str, Any]
    ) -> Event:
        """Replace an event's trigger requirements (shape-checked only)."""
        validated = _validate_requirements(requirements)
        return await self._edit_event(
            event_id, lambda e: e.model_copy(update={"trigger_requirements": validated})
        )

    # -------------------------------------------------------------------------
    # Options
    # -------------------------------------------------------------------------

    async def add_option(self, event_id: str, text: str | None = None) -> int:
        """Append an unconnected option; return its index."""

        def append(event: Event) -> Event:
            label = text if text is not None else self.option_label.format(n=len(event.options) + 1)
            return event.model_copy(update={"options": [*event.options, Option(text=label)]})

        event = await self._edit_event(event_id, append)
        return len(event.options) - 1

    async def remove_option(self, event_id: str, index: int) -> Option:
        """Remove one option. Options after it move down one index."""
        removed: list[Option] = []

        def drop(event: Event) -> Event:
            removed.append(_require_option(event, index))
            options = [o for i, o in enumerate(event.options) if i != index]
            return event.model_copy(update={"options": options})

        await self._edit_event(event_id, drop)
        return removed[0]

    async def update_option_text(self, event_id: str, index: int, text: str) -> Option:
        return await self._edit_option(
            event_id, index, lambda o: o.model_copy(update={"text": text})
        )

    async def set_effects(
        self,
        event_id: str,
        index: int,
        effects: Iterable[Effect | Mapping[str, Any]],
    ) -> Option:
        """Replace the skill effects applied when this option is chosen."""
        parsed: list[Effect] = []
        for raw in effects:
            if isinstance(raw, Effect):
                parsed.append(raw)
                continue
            try:
                parsed.append(Effect.model_validate(raw))
            except PydanticValidationError as e:
                raise InvalidValueError("effect", dict(raw), e.errors()[0]["msg"]) from e
        return await self._edit_option(
            event_id, index, lambda o: o.model_copy(update={"effects": parsed})
        )

    async def set_skill_check(
        self, event_id: str, index: int, skill: str, min_value: int
    ) -> Option:
        """Put an option into skill-check mode (or change its check).

        Raises:
            ModeConflictError: If the option holds probability targets.
        """
        if not skill.strip():
            raise InvalidValueError("skill", skill, "must not be blank")
        check = SkillCheck(skill=skill, min_value=min_value)

        def enable(option: Option) -> Option:
            if option.targets and not option.is_skill_check:
                raise ModeConflictError(event_id, index, _mode_name(option), "enable a skill check")
            return option.model_copy(update={"skill_check": check})

        return await self._edit_option(event_id, index, enable)

    async def clear_skill_check(self, event_id: str, index: int) -> Option:
        """Return an option to probability mode.

        Raises:
            ModeConflictError: If the option still holds skill-check outcome targets.
        """

        def disable(option: Option) -> Option | None:
            if not option.is_skill_check:
                return None
            if option.targets:
                raise ModeConflictError(event_id, index, _mode_name(option), "remove the skill check")
            return option.model_copy(update={"skill_check": None})

        return await self._edit_option(event_id, index, disable)

    async def set_probabilities(
        self, event_id: str, index: int, weights: Sequence[float]
    ) -> Option:
        """Apply author-edited weights, then normalize them to sum to 1."""

        def reweigh(option: Option) -> Option:
            if option.is_skill_check:
                raise ModeConflictError(event_id, index, _mode_name(option), "edit probabilities")
            if len(weights) != len(option.targets):
                raise InvalidValueError(
                    "weights", list(weights), f"expected {len(option.targets)} value(s)"
                )
            for w in weights:
                check_weight(w)
            targets = [
                t.model_copy(update={"probability": float(w)})
                for t, w in zip(option.targets, weights, strict=True)
            ]
            return option.model_copy(update={"targets": normalize(targets)})

        return await self._edit_option(event_id, index, reweigh)

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    async def connect(
        self,
        source_id: str,
        index: int,
        target_id: str,
        kind: ConnectionKind = ConnectionKind.PLAIN,
    ) -> Option:
        """Wire an option to an event.

        Plain connections give every branch of the option an equal share.
        Skill-check connections are tagged success or failure and carry a
        fixed probability of 1. Connecting an existing (event, kind) pair
        again changes nothing.

        Returns:
            The option after the change.

        Raises:
            OptionIndexError: If *index* is out of range.
            EntityNotFoundError: If either event does not exist.
            ModeConflictError: If *kind* does not match the option's mode.
        """
        kind = ConnectionKind(kind)
        self._graph.get_event(target_id, context=f"connect target from '{source_id}'")

        def wire(option: Option) -> Option | None:
            if kind is ConnectionKind.PLAIN:
                if option.is_skill_check:
                    raise ModeConflictError(
                        source_id, index, _mode_name(option), "add a plain connection"
                    )
                if option.references(target_id):
                    return None
                n = len(option.targets)
                targets = [*option.targets, Target.weighted(target_id, 1.0 / (n + 1))]
                return option.model_copy(update={"targets": even_distribution(targets)})

            if not option.is_skill_check:
                raise ModeConflictError(
                    source_id, index, _mode_name(option), f"add a {kind.value} connection"
                )
            success = kind.is_success
            if any(t.event_id == target_id and t.is_success == success for t in option.targets):
                return None
            return option.model_copy(
                update={"targets": [*option.targets, Target.outcome(target_id, bool(success))]}
            )

        option = await self._edit_option(source_id, index, wire)
        log.debug(
            "option_connected",
            source_id=source_id,
            option_index=index,
            target_id=target_id,
            kind=kind.value,
            targets=len(option.targets),
        )
        return option

    async def disconnect(
        self,
        source_id: str,
        index: int,
        target_id: str,
        kind: ConnectionKind = ConnectionKind.PLAIN,
    ) -> Option:
        """Remove a connection from an option.

        Plain disconnects remove the probability target(s) for *target_id*
        and rebalance the survivors according to disconnect_policy.
        Skill-check disconnects remove only the exact (event, outcome) pair.
        Removing a connection that does not exist changes nothing.
        """
        kind = ConnectionKind(kind)
        policy = self.disconnect_policy

        def unwire(option: Option) -> Option | None:
            if kind is ConnectionKind.PLAIN:
                survivors = [
                    t
                    for t in option.targets
                    if t.is_skill_check_outcome or t.event_id != target_id
                ]
                if len(survivors) == len(option.targets):
                    return None
                if policy is DisconnectPolicy.EVEN:
                    survivors = even_distribution(survivors)
                else:
                    survivors = normalize(survivors)
                return option.model_copy(update={"targets": survivors})

            success = kind.is_success
            survivors = [
                t
                for t in option.targets
                if not (t.event_id == target_id and t.is_success == success)
            ]
            if len(survivors) == len(option.targets):
                return None
            return option.model_copy(update={"targets": survivors})

        option = await self._edit_option(source_id, index, unwire)
        log.debug(
            "option_disconnected",
            source_id=source_id,
            option_index=index,
            target_id=target_id,
            kind=kind.value,
            targets=len(option.targets),
        )
        return option

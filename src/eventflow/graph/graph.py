"""In-memory narrative graph for one storyline.

StoryGraph holds a storyline and its events and answers structural
questions about them: option lookup, connection summaries for renderers,
incoming references, reachability and starter consistency.

Events stored in the graph are treated as values. The mutation engine
builds an updated copy of an event, persists it, then installs it with
put_event(); nothing edits an installed event in place. Cross-event
references are event ids resolved through the graph, never object links.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from eventflow.graph.errors import EntityNotFoundError, OptionIndexError
from eventflow.models.story import ConnectionKind

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from eventflow.models.story import Event, Option, Storyline


@dataclass(frozen=True)
class Edge:
    """One target of one option, flattened for traversal and rendering."""

    source_id: str
    option_index: int
    target_id: str
    kind: ConnectionKind
    probability: float = 1.0


@dataclass(frozen=True)
class OptionConnection:
    """Read-only connection summary of one option, used to drive visual state."""

    is_connected: bool
    target_count: int
    is_skill_check: bool
    success_count: int = 0
    failure_count: int = 0


@dataclass
class StarterReconciliation:
    """What has to change for the starter pointer to agree with event flags.

    Attributes:
        starter_id: The starter after reconciliation (None if no event is flagged).
        clear_flags: Events whose ``is_starter`` flag must be cleared.
        pointer_changed: True if the storyline's stored pointer was wrong.
    """

    starter_id: str | None
    clear_flags: list[str] = field(default_factory=list)
    pointer_changed: bool = False

    @property
    def needed(self) -> bool:
        return self.pointer_changed or bool(self.clear_flags)


def _edge_kind(is_outcome: bool, is_success: bool | None) -> ConnectionKind:
    if not is_outcome:
        return ConnectionKind.PLAIN
    return ConnectionKind.SKILL_SUCCESS if is_success else ConnectionKind.SKILL_FAILURE


class StoryGraph:
    """Events of one storyline, keyed by id, in insertion order."""

    def __init__(self, storyline: Storyline, events: Iterable[Event] = ()) -> None:
        self.storyline = storyline
        self._events: dict[str, Event] = {}
        for event in events:
            self._events[event.id] = event

    # -- Events ----------------------------------------------------------------

    @property
    def storyline_id(self) -> str:
        return self.storyline.id

    @property
    def starter_id(self) -> str | None:
        """The storyline's denormalized starter pointer."""
        return self.storyline.starter_event_id

    @property
    def events(self) -> list[Event]:
        return list(self._events.values())

    def event_ids(self) -> list[str]:
        return list(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._events

    def __iter__(self) -> Iterator[Event]:
        return iter(list(self._events.values()))

    def find_event(self, event_id: str) -> Event | None:
        return self._events.get(event_id)

    def get_event(self, event_id: str, *, context: str = "") -> Event:
        """Return an event or raise EntityNotFoundError listing valid ids."""
        event = self._events.get(event_id)
        if event is None:
            raise EntityNotFoundError(
                event_id,
                kind="event",
                available=self.event_ids(),
                context=context or f"storyline '{self.storyline_id}'",
            )
        return event

    def put_event(self, event: Event) -> None:
        """Install (or replace) an event."""
        self._events[event.id] = event

    def remove_event(self, event_id: str) -> Event | None:
        return self._events.pop(event_id, None)

    def set_storyline(self, storyline: Storyline) -> None:
        self.storyline = storyline

    # -- Options ---------------------------------------------------------------

    def option(self, event_id: str, index: int) -> Option:
        """Return one option or raise OptionIndexError / EntityNotFoundError."""
        event = self.get_event(event_id)
        option = event.option_at(index)
        if option is None:
            raise OptionIndexError(event_id, index, len(event.options))
        return option

    def option_connection(self, event_id: str, index: int) -> OptionConnection:
        """Summarize one option: connected or not, to how many, skill check or not."""
        option = self.option(event_id, index)
        return OptionConnection(
            is_connected=option.is_connected,
            target_count=len(option.targets),
            is_skill_check=option.is_skill_check,
            success_count=len(option.success_targets),
            failure_count=len(option.failure_targets),
        )

    # -- Edges -----------------------------------------------------------------

    def edges(self) -> list[Edge]:
        """All option targets in event, option, target order."""
        result: list[Edge] = []
        for event in self._events.values():
            for index, option in enumerate(event.options):
                for target in option.targets:
                    result.append(
                        Edge(
                            source_id=event.id,
                            option_index=index,
                            target_id=target.event_id,
                            kind=_edge_kind(target.is_skill_check_outcome, target.is_success),
                            probability=target.probability,
                        )
                    )
        return result

    def outgoing(self, event_id: str) -> list[Edge]:
        return [e for e in self.edges() if e.source_id == event_id]

    def incoming(self, event_id: str) -> list[Edge]:
        return [e for e in self.edges() if e.target_id == event_id]

    def referencing_events(self, event_id: str) -> list[Event]:
        """Other events with at least one target pointing at *event_id*."""
        return [
            e
            for e in self._events.values()
            if e.id != event_id and any(o.references(event_id) for o in e.options)
        ]

    def dangling_edges(self) -> list[Edge]:
        """Edges whose target is not an event of this storyline."""
        return [e for e in self.edges() if e.target_id not in self._events]

    # -- Reachability ----------------------------------------------------------

    def reachable_from(self, start_id: str | None = None) -> set[str]:
        """Event ids reachable from *start_id* (default: the starter), inclusive.

        Trigger requirements are not evaluated; every target counts as a
        possible path.
        """
        start = start_id if start_id is not None else self.starter_id
        if start is None or start not in self._events:
            return set()
        seen = {start}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            for target_id in self._events[current].outgoing_ids():
                if target_id in self._events and target_id not in seen:
                    seen.add(target_id)
                    queue.append(target_id)
        return seen

    def unreachable_events(self) -> list[str]:
        """Events not reachable from the starter, in insertion order."""
        reachable = self.reachable_from()
        return [eid for eid in self._events if eid not in reachable]

    # -- Starter ---------------------------------------------------------------

    def flagged_starters(self) -> list[str]:
        return [e.id for e in self._events.values() if e.is_starter]

    def reconcile_starter(self) -> StarterReconciliation:
        """Work out the starter from event flags, which win over the stored pointer.

        If several events are flagged, the one the pointer names is kept,
        otherwise the first in insertion order.
        """
        flagged = self.flagged_starters()
        pointer = self.storyline.starter_event_id
        if not flagged:
            return StarterReconciliation(starter_id=None, pointer_changed=pointer is not None)
        keep = pointer if pointer in flagged else flagged[0]
        return StarterReconciliation(
            starter_id=keep,
            clear_flags=[eid for eid in flagged if eid != keep],
            pointer_changed=pointer != keep,
        )

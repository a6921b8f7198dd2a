"""Error types raised by the narrative graph engine.

Three families, matching when they can happen:

- ``ValidationError``: the request is invalid (bad option index, unknown
  event, mode conflict, out-of-range value). Always raised before any
  mutation or storage write, so the caller can simply retry with
  corrected input.
- ``StorageError``: the persistence port failed. Raised after the attempt;
  in-memory state and storage may have diverged until the next load.
- ``ImportFormatError``: an import document is structurally invalid. Raised
  before any write.

Each validation error can describe itself as multi-line, user-facing
feedback via ``describe()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from difflib import get_close_matches

_MAX_AVAILABLE_DISPLAY = 10


class EventFlowError(Exception):
    """Base class for all EventFlow errors."""


class ValidationError(EventFlowError):
    """Base class for rejected requests.

    Subclasses implement describe() to explain what was wrong and how to
    fix it.
    """

    def describe(self) -> str:
        """Format the error as user-facing feedback."""
        return str(self)


@dataclass
class EntityNotFoundError(ValidationError):
    """Raised when referencing a story, storyline or event that does not exist.

    Attributes:
        entity_id: The ID that was referenced but doesn't exist.
        kind: Entity kind ("event", "storyline", "story").
        available: Valid IDs that could be used instead.
        context: Description of where the reference occurred.
    """

    entity_id: str
    kind: str = "event"
    available: list[str] = field(default_factory=list)
    context: str = ""

    def __post_init__(self) -> None:
        msg = f"{self.kind.capitalize()} '{self.entity_id}' not found"
        if self.context:
            msg += f" ({self.context})"
        super().__init__(msg)

    def suggestions(self) -> list[str]:
        """Find similar IDs that might be typos."""
        return get_close_matches(self.entity_id, self.available, n=3, cutoff=0.6)

    def describe(self) -> str:
        lines = [str(self)]
        suggestions = self.suggestions()
        if suggestions:
            lines.append("Did you mean one of these?")
            lines.extend(f"  - {s}" for s in suggestions)
        elif self.available:
            shown = sorted(self.available)[:_MAX_AVAILABLE_DISPLAY]
            lines.append(f"Valid {self.kind} IDs:")
            lines.extend(f"  - {a}" for a in shown)
            if len(self.available) > _MAX_AVAILABLE_DISPLAY:
                lines.append(f"  - ... and {len(self.available) - _MAX_AVAILABLE_DISPLAY} more")
        return "\n".join(lines)


@dataclass
class OptionIndexError(ValidationError):
    """Raised when an option index is outside the event's option list.

    Attributes:
        event_id: Event owning the options.
        index: The requested index.
        option_count: Number of options the event actually has.
    """

    event_id: str
    index: int
    option_count: int

    def __post_init__(self) -> None:
        super().__init__(
            f"Option index {self.index} out of range for event '{self.event_id}' "
            f"({self.option_count} option(s))"
        )

    def describe(self) -> str:
        if self.option_count == 0:
            return f"{self}\nEvent has no options yet. Add one first."
        return f"{self}\nValid indices: 0..{self.option_count - 1}"


@dataclass
class ModeConflictError(ValidationError):
    """Raised when an option would mix probability and skill-check targets.

    Switching an option between probability mode and skill-check mode is
    only allowed while it has no targets. Targets are never discarded to
    make a switch succeed.

    Attributes:
        event_id: Event owning the option.
        index: Option index.
        current_mode: "probability" or "skill_check".
        requested: What the caller tried to do.
    """

    event_id: str
    index: int
    current_mode: str
    requested: str

    def __post_init__(self) -> None:
        super().__init__(
            f"Option {self.index} of event '{self.event_id}' is in {self.current_mode} mode; "
            f"cannot {self.requested}"
        )

    def describe(self) -> str:
        return (
            f"{self}\n"
            "Disconnect the option's existing targets before switching its mode."
        )


@dataclass
class InvalidValueError(ValidationError):
    """Raised when an authored value is outside its allowed domain.

    Attributes:
        field_name: Name of the offending field.
        value: The rejected value.
        reason: Why it was rejected.
    """

    field_name: str
    value: object
    reason: str

    def __post_init__(self) -> None:
        super().__init__(f"Invalid {self.field_name} {self.value!r}: {self.reason}")


@dataclass
class StorageError(EventFlowError):
    """Raised when a persistence port operation fails.

    Attributes:
        operation: Port operation that failed ("add", "update", ...).
        collection: Store collection ("events", "storylines", "stories").
        entity_id: Entity involved, if any.
        reason: Underlying failure description.
    """

    operation: str
    collection: str
    entity_id: str | None = None
    reason: str = ""

    def __post_init__(self) -> None:
        target = f" '{self.entity_id}'" if self.entity_id else ""
        msg = f"Storage {self.operation} failed for {self.collection}{target}"
        if self.reason:
            msg += f": {self.reason}"
        super().__init__(msg)


@dataclass
class ImportFormatError(EventFlowError):
    """Raised when an import document has no recognizable structure.

    Attributes:
        reason: What is wrong.
        location: JSON path of the offending element (e.g. ``[2].options[0]``).
    """

    reason: str
    location: str = ""

    def __post_init__(self) -> None:
        where = f" at {self.location}" if self.location else ""
        super().__init__(f"Invalid import document{where}: {self.reason}")


@dataclass
class GraphCorruptionError(EventFlowError):
    """Raised when persisted rows cannot be turned into canonical entities.

    Unlike ValidationError this indicates damaged storage rather than a bad
    request.

    Attributes:
        violations: Problems found.
        context: Where they were found (e.g. the storyline being loaded).
    """

    violations: list[str]
    context: str = ""

    def __post_init__(self) -> None:
        msg = f"Corrupt data in {self.context or 'store'}"
        if self.violations:
            msg += f": {len(self.violations)} violation(s)"
        super().__init__(msg)

    def __str__(self) -> str:
        lines = [f"Corrupt data in {self.context or 'store'}:"]
        for v in self.violations[:5]:
            lines.append(f"  - {v}")
        if len(self.violations) > 5:
            lines.append(f"  - ... and {len(self.violations) - 5} more")
        return "\n".join(lines)

"""Pydantic models for the narrative graph entities.

Stories own storylines, storylines own events, events own options and
options own targets. Everything below a storyline is addressed by id
(events) or by position (options within an event).

Persisted rows and exported documents use camelCase keys (``isStarter``,
``skillCheck``, ``eventId`` ...). Python code uses the snake_case attribute
names; the alias generator maps between the two.

Option order is load-bearing: the index of an option inside its event's
``options`` list is the option's identity (renderers key their connection
handles on it). There is no reorder operation; removing an option shifts the
indices of the options after it.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializationInfo,
    SerializerFunctionWrapHandler,
    field_validator,
    model_serializer,
    model_validator,
)
from pydantic.alias_generators import to_camel

EFFECT_MIN = -100
EFFECT_MAX = 100

# Trigger requirement values are compared against external player state.
RequirementValue = bool | int | float | str


def new_id(prefix: str) -> str:
    """Generate an opaque entity id such as ``event-3f9c0a1b2d4e``."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def parse_skill_value(raw: Any) -> int:
    """Sanitize an author-entered skill value.

    Unparseable or out-of-range input becomes 0 instead of an error.
    """
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return 0
    if value < EFFECT_MIN or value > EFFECT_MAX:
        return 0
    return value


class ConnectionKind(StrEnum):
    """How a connection from an option to an event is interpreted."""

    PLAIN = "plain"
    SKILL_SUCCESS = "skill_success"
    SKILL_FAILURE = "skill_failure"

    @property
    def is_skill_outcome(self) -> bool:
        return self is not ConnectionKind.PLAIN

    @property
    def is_success(self) -> bool | None:
        if self is ConnectionKind.PLAIN:
            return None
        return self is ConnectionKind.SKILL_SUCCESS


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Position(_CamelModel):
    """Canvas coordinate. Opaque to the engine."""

    x: float = 0.0
    y: float = 0.0


class SkillCheck(_CamelModel):
    """Gate that splits an option's targets into success and failure branches."""

    skill: str = Field(min_length=1)
    min_value: int = 0


class Effect(_CamelModel):
    """Skill change applied to player state when an option is chosen."""

    skill: str = Field(min_length=1)
    value: int = Field(ge=EFFECT_MIN, le=EFFECT_MAX)


class Target(_CamelModel):
    """One outgoing edge from an option.

    Probability targets carry a weight; skill-check outcome targets carry
    ``is_success`` and a fixed probability of 1. The outcome fields are
    omitted from serialized probability targets.
    """

    event_id: str = Field(min_length=1)
    probability: float = Field(default=1.0, ge=0, allow_inf_nan=False)
    is_skill_check_outcome: bool = False
    is_success: bool | None = None

    @classmethod
    def weighted(cls, event_id: str, probability: float = 1.0) -> Target:
        return cls(event_id=event_id, probability=probability)

    @classmethod
    def outcome(cls, event_id: str, success: bool) -> Target:
        return cls(
            event_id=event_id,
            probability=1.0,
            is_skill_check_outcome=True,
            is_success=success,
        )

    @model_validator(mode="after")
    def _outcome_has_flag(self) -> Target:
        if self.is_skill_check_outcome and self.is_success is None:
            raise ValueError("skill check outcome targets need isSuccess")
        if not self.is_skill_check_outcome:
            self.is_success = None
        return self

    @model_serializer(mode="wrap")
    def _drop_outcome_fields(
        self, handler: SerializerFunctionWrapHandler, info: SerializationInfo
    ) -> dict[str, Any]:
        data: dict[str, Any] = handler(self)
        if not self.is_skill_check_outcome:
            for key in ("is_skill_check_outcome", "isSkillCheckOutcome", "is_success", "isSuccess"):
                data.pop(key, None)
        return data


class Option(_CamelModel):
    """A player-facing choice. Canonical shape, never a union.

    The targets are all probability targets when ``skill_check`` is None and
    all skill-check outcome targets otherwise.
    """

    text: str = ""
    targets: list[Target] = Field(default_factory=list)
    skill_check: SkillCheck | None = None
    effects: list[Effect] = Field(default_factory=list)

    @model_validator(mode="after")
    def _targets_match_mode(self) -> Option:
        expect_outcomes = self.skill_check is not None
        for target in self.targets:
            if target.is_skill_check_outcome != expect_outcomes:
                mode = "skill-check" if expect_outcomes else "probability"
                raise ValueError(f"option '{self.text}' mixes target kinds in {mode} mode")
        return self

    @property
    def is_skill_check(self) -> bool:
        return self.skill_check is not None

    @property
    def is_connected(self) -> bool:
        return bool(self.targets)

    @property
    def target_ids(self) -> list[str]:
        return [t.event_id for t in self.targets]

    @property
    def success_targets(self) -> list[Target]:
        return [t for t in self.targets if t.is_skill_check_outcome and t.is_success]

    @property
    def failure_targets(self) -> list[Target]:
        return [t for t in self.targets if t.is_skill_check_outcome and t.is_success is False]

    def references(self, event_id: str) -> bool:
        return any(t.event_id == event_id for t in self.targets)


class Event(_CamelModel):
    """A story beat: one node of the narrative graph."""

    id: str = Field(min_length=1)
    storyline_id: str = Field(min_length=1)
    title: str = ""
    content: str = ""
    options: list[Option] = Field(default_factory=list)
    is_starter: bool = False
    trigger_requirements: dict[str, RequirementValue] = Field(default_factory=dict)
    position: Position = Field(default_factory=Position)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("trigger_requirements")
    @classmethod
    def _keys_not_blank(cls, value: dict[str, RequirementValue]) -> dict[str, RequirementValue]:
        for key in value:
            if not key.strip():
                raise ValueError("trigger requirement keys must not be blank")
        return value

    def option_at(self, index: int) -> Option | None:
        if 0 <= index < len(self.options):
            return self.options[index]
        return None

    def outgoing_ids(self) -> set[str]:
        return {t.event_id for option in self.options for t in option.targets}

    def to_record(self) -> dict[str, Any]:
        """Serialize to the persisted camelCase row."""
        return self.model_dump(mode="json", by_alias=True)


class Storyline(_CamelModel):
    """Container of events with a denormalized starter pointer.

    The per-event ``is_starter`` flags are authoritative; ``starter_event_id``
    is rebuilt from them whenever the two disagree on load.
    """

    id: str = Field(min_length=1)
    story_id: str = Field(min_length=1)
    title: str = ""
    description: str = ""
    starter_event_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Story(_CamelModel):
    """Top-level container of storylines."""

    id: str = Field(min_length=1)
    title: str = ""
    description: str = ""
    author: str = "Anonymous"
    published: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

"""Entity models for stories, storylines, events, options and targets."""

from eventflow.models.story import (
    EFFECT_MAX,
    EFFECT_MIN,
    ConnectionKind,
    Effect,
    Event,
    Option,
    Position,
    RequirementValue,
    SkillCheck,
    Story,
    Storyline,
    Target,
    new_id,
    parse_skill_value,
)

__all__ = [
    "EFFECT_MAX",
    "EFFECT_MIN",
    "ConnectionKind",
    "Effect",
    "Event",
    "Option",
    "Position",
    "RequirementValue",
    "SkillCheck",
    "Story",
    "Storyline",
    "Target",
    "new_id",
    "parse_skill_value",
]

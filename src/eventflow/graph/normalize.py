"""Probability weights across one option's targets.

Pure functions over probability-mode target lists. They never mutate their
input; each returns a new list of targets with updated weights.

The stored invariant is that a non-empty option's probabilities are all
non-negative and sum to 1 within PROBABILITY_TOLERANCE. Percentages shown to
authors are a rounded display concern (see display_percentages) and are
never written back.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from eventflow.graph.errors import InvalidValueError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from eventflow.models.story import Target

PROBABILITY_TOLERANCE = 1e-9


def probability_sum(targets: Sequence[Target]) -> float:
    """Sum of the targets' probabilities (compensated summation)."""
    return math.fsum(t.probability for t in targets)


def is_normalized(targets: Sequence[Target]) -> bool:
    """True if the weights are valid: empty, or non-negative summing to 1."""
    if not targets:
        return True
    if any(not math.isfinite(t.probability) or t.probability < 0 for t in targets):
        return False
    return abs(probability_sum(targets) - 1.0) <= PROBABILITY_TOLERANCE


def check_weight(weight: float) -> None:
    """Raise InvalidValueError unless *weight* is a finite number >= 0."""
    if not math.isfinite(weight) or weight < 0:
        raise InvalidValueError("probability", weight, "must be a finite number >= 0")


def _check_weights(targets: Sequence[Target]) -> None:
    for t in targets:
        check_weight(t.probability)


def _with_weights(targets: Sequence[Target], weights: Sequence[float]) -> list[Target]:
    return [t.model_copy(update={"probability": w}) for t, w in zip(targets, weights, strict=True)]


def even_distribution(targets: Sequence[Target]) -> list[Target]:
    """Give every target the weight 1/n, discarding prior weights."""
    if not targets:
        return []
    share = 1.0 / len(targets)
    return _with_weights(targets, [share] * len(targets))


def normalize(targets: Sequence[Target]) -> list[Target]:
    """Rescale weights so they sum to 1, keeping their relative proportions.

    An all-zero list gets an even distribution instead.

    Raises:
        InvalidValueError: If any weight is negative or not finite.
    """
    if not targets:
        return []
    _check_weights(targets)
    total = probability_sum(targets)
    if total == 0:
        return even_distribution(targets)
    if abs(total - 1.0) <= PROBABILITY_TOLERANCE:
        return list(targets)
    return _with_weights(targets, [t.probability / total for t in targets])


def display_percentages(targets: Sequence[Target]) -> list[int]:
    """Whole-number percentages for display, summing to exactly 100.

    Uses largest-remainder rounding so that three equal branches show as
    34/33/33 rather than 33/33/33.
    """
    if not targets:
        return []
    total = probability_sum(targets)
    if total <= 0:
        raw = [100.0 / len(targets)] * len(targets)
    else:
        raw = [t.probability * 100.0 / total for t in targets]
    floors = [math.floor(r) for r in raw]
    remainder = 100 - sum(floors)
    by_fraction = sorted(range(len(raw)), key=lambda i: raw[i] - floors[i], reverse=True)
    for i in by_fraction[:remainder]:
        floors[i] += 1
    return floors

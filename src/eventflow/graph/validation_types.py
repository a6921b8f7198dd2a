"""Result types for storyline integrity checks."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

Severity = Literal["pass", "warn", "fail"]


@dataclass
class ValidationCheck:
    """Result of a single integrity check.

    Attributes:
        name: Identifier for the check (e.g. "single_starter").
        severity: "pass", "warn", or "fail".
        message: Human-readable description of the result.
        event_ids: Events the finding is about, if any.
    """

    name: str
    severity: Severity
    message: str = ""
    event_ids: list[str] = field(default_factory=list)


@dataclass
class ValidationReport:
    """Aggregated results of the integrity checks for one storyline."""

    storyline_id: str
    checks: list[ValidationCheck] = field(default_factory=list)

    def add(
        self,
        name: str,
        severity: Severity,
        message: str = "",
        event_ids: list[str] | None = None,
    ) -> None:
        self.checks.append(ValidationCheck(name, severity, message, list(event_ids or [])))

    @property
    def failures(self) -> list[ValidationCheck]:
        return [c for c in self.checks if c.severity == "fail"]

    @property
    def warnings(self) -> list[ValidationCheck]:
        return [c for c in self.checks if c.severity == "warn"]

    @property
    def has_failures(self) -> bool:
        return bool(self.failures)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)

    @property
    def summary(self) -> str:
        """Human-readable summary such as "1 failed, 2 warnings, 4 passed"."""
        passes = [c for c in self.checks if c.severity == "pass"]
        parts: list[str] = []
        if self.failures:
            parts.append(f"{len(self.failures)} failed")
        if self.warnings:
            parts.append(f"{len(self.warnings)} warnings")
        if passes:
            parts.append(f"{len(passes)} passed")
        return ", ".join(parts)

"""Tests for error formatting."""

from __future__ import annotations

from eventflow.graph.errors import (
    EntityNotFoundError,
    EventFlowError,
    GraphCorruptionError,
    ImportFormatError,
    InvalidValueError,
    ModeConflictError,
    OptionIndexError,
    StorageError,
    ValidationError,
)


class TestValidationErrors:
    def test_hierarchy(self) -> None:
        for error in (
            EntityNotFoundError("e1"),
            OptionIndexError("e1", 2, 1),
            ModeConflictError("e1", 0, "probability", "enable a skill check"),
            InvalidValueError("weights", [1], "expected 2 value(s)"),
        ):
            assert isinstance(error, ValidationError)
            assert isinstance(error, EventFlowError)

    def test_not_found_lists_available_ids(self) -> None:
        ids = [f"node-{i:02d}" for i in range(12)]
        error = EntityNotFoundError("zzz", kind="event", available=ids)

        text = error.describe()

        assert text.startswith("Event 'zzz' not found")
        assert "Valid event IDs:" in text
        assert "... and 2 more" in text

    def test_option_index_on_empty_event(self) -> None:
        assert "no options yet" in OptionIndexError("e1", 0, 0).describe()

    def test_mode_conflict_message(self) -> None:
        error = ModeConflictError("e1", 0, "skill_check", "add a plain connection")
        assert "skill_check mode" in str(error)
        assert "Disconnect" in error.describe()

    def test_invalid_value_message(self) -> None:
        assert str(InvalidValueError("probability", -1, "must be >= 0")) == (
            "Invalid probability -1: must be >= 0"
        )


class TestOtherErrors:
    def test_storage_error(self) -> None:
        error = StorageError("update", "events", "e1", "disk full")
        assert str(error) == "Storage update failed for events 'e1': disk full"
        assert not isinstance(error, ValidationError)

    def test_import_format_error_location(self) -> None:
        error = ImportFormatError("bad option", "[1].options[0]")
        assert str(error) == "Invalid import document at [1].options[0]: bad option"

    def test_graph_corruption_truncates(self) -> None:
        error = GraphCorruptionError([f"v{i}" for i in range(7)], "storyline 'sl1'")
        text = str(error)
        assert "Corrupt data in storyline 'sl1':" in text
        assert "... and 2 more" in text

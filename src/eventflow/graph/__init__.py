"""Narrative graph: storage port, migration, in-memory model and mutations."""

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
from eventflow.graph.graph import Edge, OptionConnection, StarterReconciliation, StoryGraph
from eventflow.graph.migration import load_events, migrate_event, migrate_option
from eventflow.graph.mutations import DisconnectPolicy, MutationEngine
from eventflow.graph.normalize import (
    PROBABILITY_TOLERANCE,
    display_percentages,
    even_distribution,
    is_normalized,
    normalize,
)
from eventflow.graph.sqlite_store import open_sqlite_database
from eventflow.graph.store import EntityStore, MemoryEntityStore, StoryDatabase
from eventflow.graph.validation import validate_graph
from eventflow.graph.validation_types import ValidationCheck, ValidationReport

__all__ = [
    "PROBABILITY_TOLERANCE",
    "DisconnectPolicy",
    "Edge",
    "EntityNotFoundError",
    "EntityStore",
    "EventFlowError",
    "GraphCorruptionError",
    "ImportFormatError",
    "InvalidValueError",
    "MemoryEntityStore",
    "ModeConflictError",
    "MutationEngine",
    "OptionConnection",
    "OptionIndexError",
    "StarterReconciliation",
    "StorageError",
    "StoryDatabase",
    "StoryGraph",
    "ValidationCheck",
    "ValidationError",
    "ValidationReport",
    "display_percentages",
    "even_distribution",
    "is_normalized",
    "load_events",
    "migrate_event",
    "migrate_option",
    "normalize",
    "open_sqlite_database",
    "validate_graph",
]

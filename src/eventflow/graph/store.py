"""Persistence port protocol and dict-based implementation.

The EntityStore protocol defines the asynchronous CRUD operations the
engine consumes. One store holds one collection (stories, storylines or
events) of camelCase row dicts keyed by ``id``, with a secondary lookup by
parent id (``storyId`` for storylines, ``storylineId`` for events).

Stores deal in raw rows and never validate them: rows may still be in a
legacy shape until the migrator has canonicalized them. Every failure is
reported as StorageError.

MemoryEntityStore keeps rows in a dict. SqliteEntityStore (see
sqlite_store.py) persists them in a SQLite file.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from eventflow.graph.errors import StorageError

STORIES = "stories"
STORYLINES = "storylines"
EVENTS = "events"

# Parent key per collection; stories are top level.
PARENT_KEYS: dict[str, str | None] = {
    STORIES: None,
    STORYLINES: "storyId",
    EVENTS: "storylineId",
}


def utc_now() -> str:
    """ISO timestamp used for createdAt/updatedAt."""
    return datetime.now(UTC).isoformat()


@runtime_checkable
class EntityStore(Protocol):
    """Asynchronous storage port for one entity collection.

    ``add`` fails if the id exists; ``update`` writes the full row (create
    or overwrite). Both stamp timestamps on the stored copy. ``delete`` of an
    absent id is a no-op.
    """

    collection: str

    async def get(self, entity_id: str) -> dict[str, Any] | None:
        """Return the row with this id, or None."""
        ...

    async def get_all(self) -> list[dict[str, Any]]:
        """Return every row in the collection."""
        ...

    async def get_by_parent(self, parent_id: str) -> list[dict[str, Any]]:
        """Return rows whose parent key equals *parent_id*."""
        ...

    async def add(self, entity: dict[str, Any]) -> None:
        """Insert a new row."""
        ...

    async def update(self, entity: dict[str, Any]) -> None:
        """Insert or overwrite a row."""
        ...

    async def delete(self, entity_id: str) -> None:
        """Delete a row by id."""
        ...

    async def delete_all_by_parent(self, parent_id: str) -> int:
        """Delete all rows under *parent_id*; return how many were removed."""
        ...


class MemoryEntityStore:
    """In-memory dict-based entity store.

    Rows are deep-copied on the way in and out so callers never share
    mutable state with the store, as with a real database.
    """

    def __init__(self, collection: str, rows: list[dict[str, Any]] | None = None) -> None:
        if collection not in PARENT_KEYS:
            raise ValueError(f"Unknown collection '{collection}'")
        self.collection = collection
        self.parent_key = PARENT_KEYS[collection]
        self._rows: dict[str, dict[str, Any]] = {}
        for row in rows or []:
            self._rows[row["id"]] = copy.deepcopy(row)

    def _require_id(self, operation: str, entity: dict[str, Any]) -> str:
        entity_id = entity.get("id")
        if not isinstance(entity_id, str) or not entity_id:
            raise StorageError(operation, self.collection, reason="row has no id")
        return entity_id

    async def get(self, entity_id: str) -> dict[str, Any] | None:
        row = self._rows.get(entity_id)
        return copy.deepcopy(row) if row is not None else None

    async def get_all(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._rows.values()]

    async def get_by_parent(self, parent_id: str) -> list[dict[str, Any]]:
        if self.parent_key is None:
            raise StorageError("get_by_parent", self.collection, reason="no parent index")
        return [copy.deepcopy(r) for r in self._rows.values() if r.get(self.parent_key) == parent_id]

    async def add(self, entity: dict[str, Any]) -> None:
        entity_id = self._require_id("add", entity)
        if entity_id in self._rows:
            raise StorageError("add", self.collection, entity_id, "key already exists")
        row = copy.deepcopy(entity)
        now = utc_now()
        row["createdAt"] = now
        row["updatedAt"] = now
        self._rows[entity_id] = row

    async def update(self, entity: dict[str, Any]) -> None:
        entity_id = self._require_id("update", entity)
        row = copy.deepcopy(entity)
        now = utc_now()
        if not row.get("createdAt"):
            existing = self._rows.get(entity_id)
            row["createdAt"] = (existing or {}).get("createdAt") or now
        row["updatedAt"] = now
        self._rows[entity_id] = row

    async def delete(self, entity_id: str) -> None:
        self._rows.pop(entity_id, None)

    async def delete_all_by_parent(self, parent_id: str) -> int:
        if self.parent_key is None:
            raise StorageError("delete_all_by_parent", self.collection, reason="no parent index")
        doomed = [rid for rid, r in self._rows.items() if r.get(self.parent_key) == parent_id]
        for rid in doomed:
            del self._rows[rid]
        return len(doomed)

    def __len__(self) -> int:
        return len(self._rows)


@dataclass
class StoryDatabase:
    """The three collections the engine works against."""

    stories: EntityStore
    storylines: EntityStore
    events: EntityStore

    @classmethod
    def in_memory(cls) -> StoryDatabase:
        """Create an empty dict-backed database."""
        return cls(
            stories=MemoryEntityStore(STORIES),
            storylines=MemoryEntityStore(STORYLINES),
            events=MemoryEntityStore(EVENTS),
        )

    def close(self) -> None:
        """Release resources held by the underlying stores."""
        for store in (self.stories, self.storylines, self.events):
            closer = getattr(store, "close", None)
            if callable(closer):
                closer()

"""SQLite-backed implementation of the persistence port.

All three collections live in one database file, one table each, with the
row kept as a JSON document next to indexed ``id`` and ``parent_id``
columns. sqlite3 calls are blocking, so every operation runs in a worker
thread via ``asyncio.to_thread``; a lock serializes access to the shared
connection.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, TypeVar

from eventflow.graph.errors import StorageError
from eventflow.graph.store import (
    EVENTS,
    PARENT_KEYS,
    STORIES,
    STORYLINES,
    StoryDatabase,
    utc_now,
)
from eventflow.observability.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

_TABLE_SCHEMA = """\
CREATE TABLE IF NOT EXISTS {table} (
    id         TEXT PRIMARY KEY,
    parent_id  TEXT,
    data       JSON NOT NULL,
    created_at TEXT,
    updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_{table}_parent ON {table}(parent_id);
"""

SCHEMA_VERSION = "1"


class SqliteConnection:
    """A sqlite3 connection shared by the collection stores."""

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self.db_path = str(db_path) if isinstance(db_path, Path) else db_path
        self._conn = sqlite3.connect(
            self.db_path,
            isolation_level=None,  # autocommit
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        for table in PARENT_KEYS:
            self._conn.executescript(_TABLE_SCHEMA.format(table=table))
        self._conn.execute("CREATE TABLE IF NOT EXISTS meta (key TEXT PRIMARY KEY, value TEXT)")
        self._conn.execute(
            "INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', ?)",
            (SCHEMA_VERSION,),
        )

    def run(self, fn: Any, *args: Any) -> Any:
        """Run *fn(conn, *args)* while holding the connection lock."""
        with self._lock:
            if self._closed:
                raise sqlite3.ProgrammingError("Cannot operate on a closed database.")
            return fn(self._conn, *args)

    def close(self) -> None:
        with self._lock:
            if not self._closed:
                self._conn.close()
                self._closed = True


class SqliteEntityStore:
    """EntityStore over one table of a shared SqliteConnection."""

    def __init__(self, collection: str, connection: SqliteConnection) -> None:
        if collection not in PARENT_KEYS:
            raise ValueError(f"Unknown collection '{collection}'")
        self.collection = collection
        self.parent_key = PARENT_KEYS[collection]
        self._connection = connection

    async def _call(self, operation: str, entity_id: str | None, fn: Any, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(self._connection.run, fn, *args)
        except sqlite3.Error as e:
            log.warning(
                "sqlite_operation_failed",
                collection=self.collection,
                operation=operation,
                entity_id=entity_id,
                error=str(e),
            )
            raise StorageError(operation, self.collection, entity_id, str(e)) from e

    def _parent_of(self, entity: dict[str, Any]) -> str | None:
        if self.parent_key is None:
            return None
        parent = entity.get(self.parent_key)
        return parent if isinstance(parent, str) else None

    def _require_id(self, operation: str, entity: dict[str, Any]) -> str:
        entity_id = entity.get("id")
        if not isinstance(entity_id, str) or not entity_id:
            raise StorageError(operation, self.collection, reason="row has no id")
        return entity_id

    async def get(self, entity_id: str) -> dict[str, Any] | None:
        table = self.collection

        def _get(conn: sqlite3.Connection) -> dict[str, Any] | None:
            row = conn.execute(f"SELECT data FROM {table} WHERE id = ?", (entity_id,)).fetchone()
            return json.loads(row["data"]) if row else None

        result: dict[str, Any] | None = await self._call("get", entity_id, _get)
        return result

    async def get_all(self) -> list[dict[str, Any]]:
        table = self.collection

        def _all(conn: sqlite3.Connection) -> list[dict[str, Any]]:
            rows = conn.execute(f"SELECT data FROM {table} ORDER BY rowid").fetchall()
            return [json.loads(r["data"]) for r in rows]

        result: list[dict[str, Any]] = await self._call("get_all", None, _all)
        return result

    async def get_by_parent(self, parent_id: str) -> list[dict[str, Any]]:
        if self.parent_key is None:
            raise StorageError("get_by_parent", self.collection, reason="no parent index")
        table = self.collection

        def _children(conn: sqlite3.Connection) -> list[dict[str, Any]]:
            rows = conn.execute(
                f"SELECT data FROM {table} WHERE parent_id = ? ORDER BY rowid", (parent_id,)
            ).fetchall()
            return [json.loads(r["data"]) for r in rows]

        result: list[dict[str, Any]] = await self._call("get_by_parent", parent_id, _children)
        return result

    async def add(self, entity: dict[str, Any]) -> None:
        entity_id = self._require_id("add", entity)
        now = utc_now()
        row = {**entity, "createdAt": now, "updatedAt": now}
        table = self.collection
        parent = self._parent_of(entity)

        def _insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                f"INSERT INTO {table} (id, parent_id, data, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (entity_id, parent, json.dumps(row), now, now),
            )

        await self._call("add", entity_id, _insert)

    async def update(self, entity: dict[str, Any]) -> None:
        entity_id = self._require_id("update", entity)
        now = utc_now()
        row = {**entity, "updatedAt": now}
        table = self.collection
        parent = self._parent_of(entity)

        def _upsert(conn: sqlite3.Connection) -> None:
            if not row.get("createdAt"):
                found = conn.execute(
                    f"SELECT created_at FROM {table} WHERE id = ?", (entity_id,)
                ).fetchone()
                row["createdAt"] = (found["created_at"] if found else None) or now
            conn.execute(
                f"INSERT INTO {table} (id, parent_id, data, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET parent_id = excluded.parent_id, "
                "data = excluded.data, updated_at = excluded.updated_at",
                (entity_id, parent, json.dumps(row), row.get("createdAt"), now),
            )

        await self._call("update", entity_id, _upsert)

    async def delete(self, entity_id: str) -> None:
        table = self.collection

        def _delete(conn: sqlite3.Connection) -> None:
            conn.execute(f"DELETE FROM {table} WHERE id = ?", (entity_id,))

        await self._call("delete", entity_id, _delete)

    async def delete_all_by_parent(self, parent_id: str) -> int:
        if self.parent_key is None:
            raise StorageError("delete_all_by_parent", self.collection, reason="no parent index")
        table = self.collection

        def _delete_children(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(f"DELETE FROM {table} WHERE parent_id = ?", (parent_id,))
            return cursor.rowcount

        count: int = await self._call("delete_all_by_parent", parent_id, _delete_children)
        return count

    def close(self) -> None:
        self._connection.close()


def open_sqlite_database(db_path: str | Path = ":memory:") -> StoryDatabase:
    """Open (or create) a SQLite file and return the three collection stores.

    Args:
        db_path: Path to the ``.db`` file, or ``":memory:"``.

    Raises:
        StorageError: If the file cannot be opened.
    """
    if isinstance(db_path, Path):
        db_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        connection = SqliteConnection(db_path)
    except sqlite3.Error as e:
        raise StorageError("open", "database", str(db_path), str(e)) from e
    log.debug("sqlite_database_opened", path=str(db_path))
    return StoryDatabase(
        stories=SqliteEntityStore(STORIES, connection),
        storylines=SqliteEntityStore(STORYLINES, connection),
        events=SqliteEntityStore(EVENTS, connection),
    )

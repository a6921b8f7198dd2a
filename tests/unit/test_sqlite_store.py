"""Tests for the SQLite-backed entity stores."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from eventflow.graph.errors import StorageError
from eventflow.graph.mutations import MutationEngine
from eventflow.graph.sqlite_store import open_sqlite_database

if TYPE_CHECKING:
    from pathlib import Path


class TestSqliteEntityStore:
    @pytest.mark.asyncio
    async def test_round_trip(self) -> None:
        db = open_sqlite_database()
        try:
            await db.events.add({"id": "e1", "storylineId": "sl1", "options": [{"text": "Go"}]})
            row = await db.events.get("e1")
            assert row is not None
            assert row["options"] == [{"text": "Go"}]
            assert row["createdAt"]
            assert await db.events.get("missing") is None
        finally:
            db.close()

    @pytest.mark.asyncio
    async def test_duplicate_add_raises_storage_error(self) -> None:
        db = open_sqlite_database()
        try:
            await db.stories.add({"id": "s1", "title": "One"})
            with pytest.raises(StorageError) as exc_info:
                await db.stories.add({"id": "s1", "title": "Again"})
            assert exc_info.value.operation == "add"
            assert exc_info.value.collection == "stories"
        finally:
            db.close()

    @pytest.mark.asyncio
    async def test_update_upserts_and_keeps_created_at(self) -> None:
        db = open_sqlite_database()
        try:
            await db.events.update({"id": "e1", "storylineId": "sl1", "title": "New"})
            first = await db.events.get("e1")
            assert first is not None

            await db.events.update({"id": "e1", "storylineId": "sl1", "title": "Renamed"})
            second = await db.events.get("e1")

            assert second is not None
            assert second["title"] == "Renamed"
            assert second["createdAt"] == first["createdAt"]
        finally:
            db.close()

    @pytest.mark.asyncio
    async def test_parent_queries(self) -> None:
        db = open_sqlite_database()
        try:
            for eid, parent in (("e1", "sl1"), ("e2", "sl2"), ("e3", "sl1")):
                await db.events.add({"id": eid, "storylineId": parent})

            assert [r["id"] for r in await db.events.get_by_parent("sl1")] == ["e1", "e3"]
            assert await db.events.delete_all_by_parent("sl1") == 2
            assert [r["id"] for r in await db.events.get_all()] == ["e2"]
        finally:
            db.close()

    @pytest.mark.asyncio
    async def test_closed_database_raises_storage_error(self) -> None:
        db = open_sqlite_database()
        db.close()
        with pytest.raises(StorageError):
            await db.events.get("e1")

    @pytest.mark.asyncio
    async def test_file_database_persists(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "story.db"
        db = open_sqlite_database(path)
        await db.storylines.add({"id": "sl1", "storyId": "s1", "starterEventId": None})
        await db.events.add(
            {"id": "e1", "storylineId": "sl1", "options": ["Go"], "links": ["e2"]}
        )
        await db.events.add({"id": "e2", "storylineId": "sl1", "isStarter": True})
        db.close()

        reopened = open_sqlite_database(path)
        try:
            engine = await MutationEngine.load(reopened, "sl1")
            assert engine.graph.starter_id == "e2"
            assert engine.graph.option("e1", 0).target_ids == ["e2"]
            migrated = await reopened.events.get("e1")
            assert migrated is not None
            assert "links" not in migrated
        finally:
            reopened.close()

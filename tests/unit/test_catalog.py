"""Tests for story and storyline management."""

from __future__ import annotations

import pytest

from eventflow.catalog import StoryCatalog
from eventflow.graph.errors import EntityNotFoundError, InvalidValueError
from eventflow.graph.mutations import MutationEngine
from eventflow.graph.store import StoryDatabase
from tests.fixtures.story_fixtures import STORY_ID, STORYLINE_ID, make_branching_rows, make_database


class TestStories:
    @pytest.mark.asyncio
    async def test_create_fills_defaults(self) -> None:
        catalog = StoryCatalog(StoryDatabase.in_memory())

        first = await catalog.create_story()
        second = await catalog.create_story(title="Named", author="Ada")

        assert first.title == "New Story 1"
        assert first.description == "Add a description"
        assert first.author == "Anonymous"
        assert not first.published
        assert second.title == "Named"
        assert [s.id for s in await catalog.list_stories()] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_update(self) -> None:
        catalog = StoryCatalog(StoryDatabase.in_memory())
        story = await catalog.create_story()

        updated = await catalog.update_story(story.id, title="Final", published=True)

        assert updated.title == "Final"
        assert (await catalog.get_story(story.id)).published

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_field(self) -> None:
        catalog = StoryCatalog(StoryDatabase.in_memory())
        story = await catalog.create_story()
        with pytest.raises(InvalidValueError):
            await catalog.update_story(story.id, starter="e1")

    @pytest.mark.asyncio
    async def test_missing_story(self) -> None:
        catalog = StoryCatalog(StoryDatabase.in_memory())
        with pytest.raises(EntityNotFoundError) as exc_info:
            await catalog.get_story("nope")
        assert exc_info.value.kind == "story"

    @pytest.mark.asyncio
    async def test_delete_cascades(self) -> None:
        db = make_database(make_branching_rows(), starter_event_id="A")
        catalog = StoryCatalog(db)

        removed = await catalog.delete_story(STORY_ID)

        assert removed == 4
        assert await db.stories.get_all() == []
        assert await db.storylines.get_all() == []
        assert await db.events.get_all() == []


class TestStorylines:
    @pytest.mark.asyncio
    async def test_create_is_empty(self, empty_db: StoryDatabase) -> None:
        catalog = StoryCatalog(empty_db)

        storyline = await catalog.create_storyline(STORY_ID)
        engine = await MutationEngine.load(empty_db, storyline.id)

        assert storyline.title == "New Storyline 2"
        assert storyline.starter_event_id is None
        assert len(engine.graph) == 0

    @pytest.mark.asyncio
    async def test_create_requires_story(self, empty_db: StoryDatabase) -> None:
        with pytest.raises(EntityNotFoundError):
            await StoryCatalog(empty_db).create_storyline("ghost")

    @pytest.mark.asyncio
    async def test_update_cannot_touch_starter(self, empty_db: StoryDatabase) -> None:
        catalog = StoryCatalog(empty_db)
        with pytest.raises(InvalidValueError):
            await catalog.update_storyline(STORYLINE_ID, starter_event_id="e1")
        renamed = await catalog.update_storyline(STORYLINE_ID, title="Side Quest")
        assert renamed.title == "Side Quest"

    @pytest.mark.asyncio
    async def test_delete_removes_events(self, branching_db: StoryDatabase) -> None:
        catalog = StoryCatalog(branching_db)

        removed = await catalog.delete_storyline(STORYLINE_ID)

        assert removed == 4
        assert await catalog.list_storylines(STORY_ID) == []
        with pytest.raises(EntityNotFoundError):
            await MutationEngine.load(branching_db, STORYLINE_ID)

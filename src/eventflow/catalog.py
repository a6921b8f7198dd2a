"""Stories and storylines: the containers above the event graph.

StoryCatalog creates, lists, updates and deletes stories and storylines
through the persistence port. Deletes cascade downwards: removing a story
removes its storylines, and removing a storyline removes its events.
Editing the events themselves is the MutationEngine's job.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from eventflow.graph.errors import EntityNotFoundError, GraphCorruptionError, InvalidValueError
from eventflow.models.story import Story, Storyline, new_id
from eventflow.observability.logging import get_logger

if TYPE_CHECKING:
    from eventflow.graph.store import StoryDatabase

log = get_logger(__name__)

DEFAULT_STORY_DESCRIPTION = "Add a description"
DEFAULT_AUTHOR = "Anonymous"

_STORY_FIELDS = frozenset({"title", "description", "author", "published"})
_STORYLINE_FIELDS = frozenset({"title", "description"})


def _parse(model: type[Story] | type[Storyline], row: dict[str, Any]) -> Any:
    try:
        return model.model_validate(row)
    except PydanticValidationError as e:
        raise GraphCorruptionError(
            [str(err["msg"]) for err in e.errors()],
            f"{model.__name__.lower()} '{row.get('id', '?')}'",
        ) from e


def _check_fields(kind: str, changes: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = sorted(set(changes) - allowed)
    if unknown:
        raise InvalidValueError(f"{kind} field", unknown[0], f"allowed: {', '.join(sorted(allowed))}")


class StoryCatalog:
    """CRUD over the stories and storylines collections."""

    def __init__(self, db: StoryDatabase) -> None:
        self._db = db

    # -- Stories ---------------------------------------------------------------

    async def list_stories(self) -> list[Story]:
        return [_parse(Story, row) for row in await self._db.stories.get_all()]

    async def get_story(self, story_id: str) -> Story:
        row = await self._db.stories.get(story_id)
        if row is None:
            known = [s.id for s in await self.list_stories()]
            raise EntityNotFoundError(story_id, kind="story", available=known)
        return _parse(Story, row)

    async def create_story(
        self,
        title: str | None = None,
        description: str | None = None,
        author: str | None = None,
    ) -> Story:
        """Create a story, filling in the editor's default texts."""
        count = len(await self._db.stories.get_all())
        story = Story(
            id=new_id("story"),
            title=title or f"New Story {count + 1}",
            description=description or DEFAULT_STORY_DESCRIPTION,
            author=author or DEFAULT_AUTHOR,
        )
        await self._db.stories.add(story.to_record())
        log.info("story_created", story_id=story.id, title=story.title)
        return story

    async def update_story(self, story_id: str, **changes: Any) -> Story:
        """Change title, description, author or published."""
        _check_fields("story", changes, _STORY_FIELDS)
        story = (await self.get_story(story_id)).model_copy(update=changes)
        await self._db.stories.update(story.to_record())
        return story

    async def delete_story(self, story_id: str) -> int:
        """Delete a story with its storylines and their events.

        Returns:
            Number of events removed.
        """
        await self.get_story(story_id)
        storylines = await self._db.storylines.get_by_parent(story_id)
        removed = await asyncio.gather(
            *(self._db.events.delete_all_by_parent(row["id"]) for row in storylines)
        )
        await self._db.storylines.delete_all_by_parent(story_id)
        await self._db.stories.delete(story_id)
        log.info(
            "story_deleted",
            story_id=story_id,
            storylines=len(storylines),
            events=sum(removed),
        )
        return sum(removed)

    # -- Storylines ------------------------------------------------------------

    async def list_storylines(self, story_id: str) -> list[Storyline]:
        return [_parse(Storyline, row) for row in await self._db.storylines.get_by_parent(story_id)]

    async def get_storyline(self, storyline_id: str) -> Storyline:
        row = await self._db.storylines.get(storyline_id)
        if row is None:
            known = [r["id"] for r in await self._db.storylines.get_all()]
            raise EntityNotFoundError(storyline_id, kind="storyline", available=known)
        return _parse(Storyline, row)

    async def create_storyline(
        self,
        story_id: str,
        title: str | None = None,
        description: str = "",
    ) -> Storyline:
        """Create an empty storyline (no events, no starter) in a story."""
        await self.get_story(story_id)
        count = len(await self._db.storylines.get_by_parent(story_id))
        storyline = Storyline(
            id=new_id("storyline"),
            story_id=story_id,
            title=title or f"New Storyline {count + 1}",
            description=description,
        )
        await self._db.storylines.add(storyline.to_record())
        log.info("storyline_created", story_id=story_id, storyline_id=storyline.id)
        return storyline

    async def update_storyline(self, storyline_id: str, **changes: Any) -> Storyline:
        """Change title or description. The starter is managed by the engine."""
        _check_fields("storyline", changes, _STORYLINE_FIELDS)
        storyline = (await self.get_storyline(storyline_id)).model_copy(update=changes)
        await self._db.storylines.update(storyline.to_record())
        return storyline

    async def delete_storyline(self, storyline_id: str) -> int:
        """Delete a storyline and all of its events; return the event count."""
        await self.get_storyline(storyline_id)
        removed = await self._db.events.delete_all_by_parent(storyline_id)
        await self._db.storylines.delete(storyline_id)
        log.info("storyline_deleted", storyline_id=storyline_id, events=removed)
        return removed

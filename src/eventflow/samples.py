"""Sample story for trying out the editor.

The sample events are written in the oldest stored shape (options with a
scalar ``nextEventId`` plus an event-level ``links`` array), so the first
load of the "Main Path" storyline runs them through the migrator.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from eventflow.models.story import new_id
from eventflow.observability.logging import get_logger

if TYPE_CHECKING:
    from eventflow.graph.store import StoryDatabase

log = get_logger(__name__)

SAMPLE_STORY_TITLE = "Adventure in Wonderland"


async def seed_sample_data(db: StoryDatabase) -> str | None:
    """Create the sample story unless the database already has stories.

    Returns:
        The sample story id, or None if seeding was skipped.
    """
    if await db.stories.get_all():
        log.debug("sample_data_skipped")
        return None

    story_id = new_id("story")
    await db.stories.add(
        {
            "id": story_id,
            "title": SAMPLE_STORY_TITLE,
            "description": "An exciting journey through a magical world",
            "author": "Sample Author",
            "published": False,
        }
    )

    main_id = new_id("storyline")
    secret_id = new_id("storyline")
    event1_id, event2_id, event3_id = new_id("event"), new_id("event"), new_id("event")

    await db.storylines.add(
        {
            "id": main_id,
            "storyId": story_id,
            "title": "Main Path",
            "description": "The primary storyline",
            "starterEventId": event1_id,
        }
    )
    await db.storylines.add(
        {
            "id": secret_id,
            "storyId": story_id,
            "title": "Secret Ending",
            "description": "An alternative secret ending",
            "starterEventId": None,
        }
    )

    await db.events.add(
        {
            "id": event1_id,
            "storylineId": main_id,
            "title": "The Beginning",
            "content": "You find yourself at the entrance to a mysterious forest...",
            "isStarter": True,
            "options": [
                {"text": "Enter the forest", "nextEventId": event2_id},
                {"text": "Turn back", "nextEventId": event3_id},
            ],
            "links": [event2_id, event3_id],
            "position": {"x": 150, "y": 100},
        }
    )
    await db.events.add(
        {
            "id": event2_id,
            "storylineId": main_id,
            "title": "Into the Woods",
            "content": "The forest is dark and full of strange sounds...",
            "options": [],
            "links": [],
            "position": {"x": 450, "y": 50},
        }
    )
    await db.events.add(
        {
            "id": event3_id,
            "storylineId": main_id,
            "title": "Return Home",
            "content": "You decide that adventure is not for you today...",
            "options": [],
            "links": [],
            "position": {"x": 450, "y": 200},
        }
    )

    log.info("sample_data_seeded", story_id=story_id, storylines=2, events=3)
    return story_id

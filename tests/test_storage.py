"""
Unit tests for the Chapter Store backends

Both MemoryStorage and SQLiteStorage run the same checks: monotonic ids,
ordered chapter listing, non-decreasing chapter index and single-assignment
resolved choices.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from eternal_storyteller.errors import ChoiceAlreadyResolved
from eternal_storyteller.models import ChapterCreate
from eternal_storyteller.services.storage import MemoryStorage, SQLiteStorage, create_storage

from fakes import make_settings


def chapter_create(story_id: int, index: int) -> ChapterCreate:
    return ChapterCreate(
        story_id=story_id,
        chapter_index=index,
        text=f"Chapter {index} text",
        audio_ref="data:audio/mpeg;base64,SUQz",
        choices=[
            {"id": "choice_1", "text": "Follow the river"},
            {"id": "choice_2", "text": "Sleep under the oak"},
        ],
    )


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        yield MemoryStorage()
    else:
        store = SQLiteStorage(path=str(tmp_path / "stories.db"))
        store.initialize()
        yield store
        store.close()


class TestStories:
    """Story records"""

    async def test_ids_are_monotonic(self, storage):
        first = await storage.create_story("fantasy", "sarah", "The Enchanted Forest")
        second = await storage.create_story("mystery", "david", "The Silent Clue")
        assert second.id > first.id
        assert first.current_chapter_index == 1
        assert first.state_blob == {}

    async def test_get_unknown_returns_none(self, storage):
        assert await storage.get_story(999) is None
        assert await storage.update_story(999, {"title": "x"}) is None

    async def test_list_stories(self, storage):
        await storage.create_story("fantasy", "sarah", "One")
        await storage.create_story("peaceful", "luna", "Two")
        assert [s.title for s in await storage.list_stories()] == ["One", "Two"]

    async def test_update_persists_state(self, storage):
        story = await storage.create_story("fantasy", "sarah", "One")
        await storage.update_story(story.id, {
            "current_chapter_index": 2,
            "state_blob": {"history": ["Follow the river"]},
        })
        reloaded = await storage.get_story(story.id)
        assert reloaded.current_chapter_index == 2
        assert reloaded.state_blob == {"history": ["Follow the river"]}

    async def test_chapter_index_cannot_decrease(self, storage):
        story = await storage.create_story("fantasy", "sarah", "One")
        await storage.update_story(story.id, {"current_chapter_index": 3})
        with pytest.raises(ValueError):
            await storage.update_story(story.id, {"current_chapter_index": 2})
        assert (await storage.get_story(story.id)).current_chapter_index == 3

    async def test_id_cannot_be_rewritten(self, storage):
        story = await storage.create_story("fantasy", "sarah", "One")
        with pytest.raises(ValueError):
            await storage.update_story(story.id, {"id": 42})


class TestChapters:
    """Chapter records"""

    async def test_create_and_get(self, storage):
        story = await storage.create_story("fantasy", "sarah", "One")
        chapter = await storage.create_chapter(chapter_create(story.id, 1))
        loaded = await storage.get_chapter(chapter.id)
        assert loaded.text == "Chapter 1 text"
        assert [c.label for c in loaded.choices] == ["Follow the river", "Sleep under the oak"]
        assert loaded.resolved_choice_text is None

    async def test_list_ordered_by_index(self, storage):
        story = await storage.create_story("fantasy", "sarah", "One")
        other = await storage.create_story("mystery", "david", "Two")
        await storage.create_chapter(chapter_create(story.id, 2))
        await storage.create_chapter(chapter_create(other.id, 1))
        await storage.create_chapter(chapter_create(story.id, 1))

        chapters = await storage.list_chapters_by_story(story.id)
        assert [c.chapter_index for c in chapters] == [1, 2]
        assert all(c.story_id == story.id for c in chapters)

    async def test_resolved_choice_single_assignment(self, storage):
        story = await storage.create_story("fantasy", "sarah", "One")
        chapter = await storage.create_chapter(chapter_create(story.id, 1))

        updated = await storage.update_chapter(chapter.id, {"resolved_choice_text": "Follow the river"})
        assert updated.resolved_choice_text == "Follow the river"

        # Same value again is accepted
        again = await storage.update_chapter(chapter.id, {"resolved_choice_text": "Follow the river"})
        assert again.resolved_choice_text == "Follow the river"

        with pytest.raises(ChoiceAlreadyResolved):
            await storage.update_chapter(chapter.id, {"resolved_choice_text": "Sleep under the oak"})
        assert (await storage.get_chapter(chapter.id)).resolved_choice_text == "Follow the river"

    async def test_only_resolved_choice_is_mutable(self, storage):
        story = await storage.create_story("fantasy", "sarah", "One")
        chapter = await storage.create_chapter(chapter_create(story.id, 1))
        with pytest.raises(ValueError):
            await storage.update_chapter(chapter.id, {"text": "rewritten"})

    async def test_update_unknown_chapter(self, storage):
        assert await storage.update_chapter(404, {"resolved_choice_text": "x"}) is None


class TestCreateStorage:
    """Backend selection from settings"""

    def test_memory_default(self):
        assert isinstance(create_storage(make_settings()), MemoryStorage)

    def test_sqlite(self, tmp_path):
        store = create_storage(make_settings(storage_backend="sqlite", sqlite_path=str(tmp_path / "s.db")))
        assert isinstance(store, SQLiteStorage)
        assert (tmp_path / "s.db").exists()
        store.close()

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_storage(make_settings(storage_backend="postgres"))

    async def test_sqlite_survives_reopen(self, tmp_path):
        path = str(tmp_path / "persist.db")
        first = SQLiteStorage(path=path)
        first.initialize()
        story = await first.create_story("fantasy", "sarah", "Kept")
        first.close()

        second = SQLiteStorage(path=path)
        second.initialize()
        assert (await second.get_story(story.id)).title == "Kept"
        second.close()

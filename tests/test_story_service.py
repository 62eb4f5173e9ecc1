"""
Unit tests for the StoryService chapter cycle

Real storage, narration and voice services run against fake SDK clients.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from eternal_storyteller.errors import ChoiceAlreadyResolved, StoreMiss, UpstreamGenerationFailure
from eternal_storyteller.models import GENRES, StoryCreate
from eternal_storyteller.services.events import (
    EventEmitter,
    EVENT_CHAPTER_FAILED,
    EVENT_CHAPTER_GENERATING,
    EVENT_CHAPTER_READY,
    EVENT_CHOICE_RESOLVED,
    EVENT_STORY_CREATED,
)

from fakes import FakeAsyncOpenAI, FakeElevenLabs, build_story_service, chapter_json


def build_service(settings=None, openai=None, elevenlabs=None):
    openai = openai or FakeAsyncOpenAI()
    service = build_story_service(settings=settings, openai=openai, elevenlabs=elevenlabs)
    return service, openai, service.events


def record_events(events: EventEmitter):
    seen = []
    for kind in (EVENT_STORY_CREATED, EVENT_CHAPTER_GENERATING, EVENT_CHAPTER_READY,
                 EVENT_CHAPTER_FAILED, EVENT_CHOICE_RESOLVED):
        events.subscribe(kind, seen.append)
    return seen


class TestStories:
    """Story creation and lookup"""

    def setup_method(self):
        self.service, self.openai, self.events = build_service()

    def teardown_method(self):
        self.service.voice.close()

    async def test_title_picked_from_genre(self):
        story = await self.service.create_story(StoryCreate(genre="fantasy", voice_id="sarah"))
        assert story.title in GENRES["fantasy"].titles
        assert story.current_chapter_index == 1

    async def test_unknown_genre_uses_peaceful_titles(self):
        story = await self.service.create_story(StoryCreate(genre="space opera", voice_id="luna"))
        assert story.title in GENRES["peaceful"].titles

    async def test_explicit_title_kept(self):
        story = await self.service.create_story(
            StoryCreate(genre="mystery", voice_id="david", title="The Lantern Keeper")
        )
        assert story.title == "The Lantern Keeper"

    async def test_unknown_story(self):
        with pytest.raises(StoreMiss):
            await self.service.get_story(99)
        with pytest.raises(StoreMiss):
            await self.service.list_chapters(99)
        with pytest.raises(StoreMiss):
            await self.service.generate_chapter(99)

    async def test_story_created_event(self):
        seen = record_events(self.events)
        story = await self.service.create_story(StoryCreate(genre="fantasy", voice_id="sarah"))
        assert [e.kind for e in seen] == [EVENT_STORY_CREATED]
        assert seen[0].story_id == story.id


class TestGenerateChapter:
    """Generation, voicing and storage of chapters"""

    def setup_method(self):
        self.service, self.openai, self.events = build_service(openai=FakeAsyncOpenAI(replies=[
            chapter_json("The first night."),
            chapter_json("The second night."),
        ]))

    def teardown_method(self):
        self.service.voice.close()

    async def test_chapters_advance_index_and_history(self):
        story = await self.service.create_story(StoryCreate(genre="fantasy", voice_id="sarah"))

        first = await self.service.generate_chapter(story.id)
        second = await self.service.generate_chapter(story.id, "Follow the glowing path")

        assert (first.chapter_index, second.chapter_index) == (1, 2)
        assert first.text == "The first night."
        assert first.audio_ref.startswith("data:audio/mpeg;base64,")

        updated = await self.service.get_story(story.id)
        assert updated.current_chapter_index == 3
        assert updated.state_blob["history"] == ["Follow the glowing path"]
        assert updated.state_blob["last_chapter_id"] == second.id

        prompts = self.openai.user_prompts()
        assert "opening chapter" in prompts[0]
        assert "Follow the glowing path" in prompts[1]

        chapters = await self.service.list_chapters(story.id)
        assert [c.id for c in chapters] == [first.id, second.id]

    async def test_events_in_order(self):
        seen = record_events(self.events)
        story = await self.service.create_story(StoryCreate(genre="fantasy", voice_id="sarah"))
        await self.service.generate_chapter(story.id)
        assert [e.kind for e in seen] == [
            EVENT_STORY_CREATED, EVENT_CHAPTER_GENERATING, EVENT_CHAPTER_READY
        ]

    async def test_every_stored_chapter_has_audio(self):
        story = await self.service.create_story(StoryCreate(genre="fantasy", voice_id="sarah"))
        chapter = await self.service.generate_chapter(story.id)
        assert chapter.audio_ref.startswith("data:audio/mpeg;base64,")

    async def test_storyteller_logger_follows_events(self):
        calls = []

        class RecordingLogger:
            def __getattr__(self, name):
                return lambda *args: calls.append((name, args))

        service = build_story_service(storyteller_logger=RecordingLogger())
        story = await service.create_story(StoryCreate(genre="fantasy", voice_id="sarah"))
        chapter = await service.generate_chapter(story.id)
        await service.resolve_chapter(chapter.id, "Follow the glowing path", path="voice")

        assert [name for name, _ in calls] == [
            "story_created", "chapter_requested", "chapter_ready", "choice_resolved"
        ]
        assert calls[0][1] == (story.id, "fantasy", "sarah")
        assert calls[3][1] == (chapter.id, "Follow the glowing path", "voice")
        service.voice.close()


class TestGenerationFailures:
    """Nothing is stored when narration or voicing fails"""

    async def test_narration_failure(self):
        service, _, events = build_service(openai=FakeAsyncOpenAI(error=RuntimeError("boom")))
        seen = record_events(events)
        story = await service.create_story(StoryCreate(genre="fantasy", voice_id="sarah"))

        with pytest.raises(UpstreamGenerationFailure):
            await service.generate_chapter(story.id)

        assert await service.list_chapters(story.id) == []
        assert (await service.get_story(story.id)).current_chapter_index == 1
        assert seen[-1].kind == EVENT_CHAPTER_FAILED
        service.voice.close()

    async def test_tts_failure(self):
        service, _, _ = build_service(elevenlabs=FakeElevenLabs(error=RuntimeError("quota")))
        story = await service.create_story(StoryCreate(genre="fantasy", voice_id="sarah"))

        with pytest.raises(UpstreamGenerationFailure) as exc_info:
            await service.generate_chapter(story.id)

        assert exc_info.value.provider == "elevenlabs"
        assert await service.list_chapters(story.id) == []
        service.voice.close()


class TestResolveChapter:
    """Recording the listener's choice"""

    def setup_method(self):
        self.service, _, self.events = build_service()

    def teardown_method(self):
        self.service.voice.close()

    async def test_resolve_once(self):
        seen = record_events(self.events)
        story = await self.service.create_story(StoryCreate(genre="fantasy", voice_id="sarah"))
        chapter = await self.service.generate_chapter(story.id)

        resolved = await self.service.resolve_chapter(chapter.id, "Rest beside the quiet lake")
        assert resolved.resolved_choice_text == "Rest beside the quiet lake"
        assert seen[-1].kind == EVENT_CHOICE_RESOLVED

        # Idempotent for the same text, conflict for a different one
        await self.service.resolve_chapter(chapter.id, "Rest beside the quiet lake")
        with pytest.raises(ChoiceAlreadyResolved):
            await self.service.resolve_chapter(chapter.id, "Follow the glowing path")

    async def test_unknown_chapter(self):
        with pytest.raises(StoreMiss):
            await self.service.resolve_chapter(404, "Anything")
        with pytest.raises(StoreMiss):
            await self.service.get_chapter(404)

    async def test_transcribe(self):
        assert await self.service.transcribe(b"RIFFdata", "choice.wav") == "the second one"

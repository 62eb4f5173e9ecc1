"""
Story Service - server-side orchestration of the chapter cycle

Creates stories, generates chapters (narration then voice synthesis),
persists them in the Chapter Store and records the listener's choices.
Route handlers call into this service; it raises StorytellerError
subclasses which the app's exception handlers map to status codes.
"""

import logging
import random
import time
from typing import Optional, List, Dict, Any

from eternal_storyteller.errors import StoreMiss, UpstreamGenerationFailure
from eternal_storyteller.models import (
    Story,
    StoryCreate,
    Chapter,
    ChapterCreate,
    NarrationRequest,
    Voice,
    Genre,
    GENRES,
)
from eternal_storyteller.services.events import (
    EventEmitter,
    log_events,
    EVENT_STORY_CREATED,
    EVENT_CHAPTER_GENERATING,
    EVENT_CHAPTER_READY,
    EVENT_CHAPTER_FAILED,
    EVENT_CHOICE_RESOLVED,
)
from eternal_storyteller.services.narration import NarrationEngine
from eternal_storyteller.services.storage import StorageService
from eternal_storyteller.services.voice import VoiceService

logger = logging.getLogger(__name__)

DEFAULT_GENRE = "peaceful"


class StoryService:
    """
    Coordinates narration, voice synthesis and storage for each story.

    A story's ``current_chapter_index`` is the index of the next chapter to
    generate; it advances by one after every stored chapter.
    """

    def __init__(
        self,
        settings,
        storage: StorageService,
        narration: NarrationEngine,
        voice: VoiceService,
        events: Optional[EventEmitter] = None,
        storyteller_logger=None,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings
        self.storage = storage
        self.narration = narration
        self.voice = voice
        self.events = events or EventEmitter()
        if storyteller_logger:
            log_events(self.events, storyteller_logger)
        self.rng = rng or random.Random()

    # ===== Catalogue =====

    def list_voices(self) -> List[Voice]:
        return self.voice.list_voices()

    def list_genres(self) -> List[Genre]:
        return list(GENRES.values())

    def pick_title(self, genre: str) -> str:
        """Random default title for a genre (unknown genres use peaceful titles)"""
        titles = GENRES.get(genre, GENRES[DEFAULT_GENRE]).titles
        return self.rng.choice(titles)

    # ===== Stories =====

    async def create_story(self, request: StoryCreate) -> Story:
        title = request.title or self.pick_title(request.genre)
        story = await self.storage.create_story(request.genre, request.voice_id, title)

        await self.events.emit(
            EVENT_STORY_CREATED, story.id, title=story.title, genre=story.genre, voice_id=story.voice_id
        )
        return story

    async def list_stories(self) -> List[Story]:
        stories = await self.storage.list_stories()
        logger.debug(f"Returning {len(stories)} stories")
        return stories

    async def get_story(self, story_id: int) -> Story:
        story = await self.storage.get_story(story_id)
        if story is None:
            raise StoreMiss("story", story_id)
        return story

    # ===== Chapters =====

    async def generate_chapter(self, story_id: int, previous_choice: Optional[str] = None) -> Chapter:
        """
        Generate, voice and store the next chapter of a story.

        Raises:
            StoreMiss: unknown story
            UpstreamGenerationFailure: narration or synthesis failed (nothing is stored)
        """
        story = await self.get_story(story_id)
        chapter_index = story.current_chapter_index
        started = time.monotonic()

        await self.events.emit(
            EVENT_CHAPTER_GENERATING, story_id, chapter_index=chapter_index, previous_choice=previous_choice
        )

        try:
            generated = await self.narration.generate(NarrationRequest(
                genre=story.genre,
                chapter_index=chapter_index,
                previous_choice_text=previous_choice,
                prior_state=story.state_blob,
            ))
            audio_bytes = await self.voice.text_to_speech(generated.text, story.voice_id)
        except UpstreamGenerationFailure as e:
            await self.events.emit(
                EVENT_CHAPTER_FAILED, story_id, chapter_index=chapter_index, error=str(e), timed_out=e.timed_out
            )
            raise

        chapter = await self.storage.create_chapter(ChapterCreate(
            story_id=story_id,
            chapter_index=chapter_index,
            text=generated.text,
            audio_ref=self.voice.encode_audio_data_url(audio_bytes),
            choices=generated.choices,
        ))

        await self.storage.update_story(story_id, {
            "current_chapter_index": chapter_index + 1,
            "state_blob": self._next_state(story.state_blob, chapter.id, previous_choice),
        })

        await self.events.emit(
            EVENT_CHAPTER_READY,
            story_id,
            chapter_id=chapter.id,
            chapter_index=chapter.chapter_index,
            chars=len(chapter.text),
            audio_bytes=len(audio_bytes),
            duration=time.monotonic() - started,
        )
        return chapter

    @staticmethod
    def _next_state(state: Dict[str, Any], chapter_id: int, previous_choice: Optional[str]) -> Dict[str, Any]:
        history = list(state.get("history", []))
        if previous_choice:
            history.append(previous_choice)
        return {**state, "last_chapter_id": chapter_id, "history": history}

    async def list_chapters(self, story_id: int) -> List[Chapter]:
        await self.get_story(story_id)
        return await self.storage.list_chapters_by_story(story_id)

    async def get_chapter(self, chapter_id: int) -> Chapter:
        chapter = await self.storage.get_chapter(chapter_id)
        if chapter is None:
            raise StoreMiss("chapter", chapter_id)
        return chapter

    async def resolve_chapter(self, chapter_id: int, choice_text: str, path: str = "manual") -> Chapter:
        """
        Record the listener's choice on a chapter.

        Raises:
            StoreMiss: unknown chapter
            ChoiceAlreadyResolved: a different choice was already recorded
        """
        chapter = await self.storage.update_chapter(chapter_id, {"resolved_choice_text": choice_text})
        if chapter is None:
            raise StoreMiss("chapter", chapter_id)

        await self.events.emit(
            EVENT_CHOICE_RESOLVED, chapter.story_id, chapter_id=chapter_id, choice=choice_text, path=path
        )
        return chapter

    # ===== Transcription =====

    async def transcribe(self, audio_data: bytes, filename: str = "audio.webm") -> str:
        return await self.voice.speech_to_text(audio_data, filename)

"""
Story Session - client-side chapter cycle

Sequences one listener's story:
request chapter -> play narration -> collect a choice -> record it on the
finished chapter -> request the next chapter with that choice -> repeat.

Generation failures put the session in ERROR and are reported through
``on_error``; a chapter without text or audio is never played. A blocked
output only pauses the cycle in BLOCKED until the listener starts playback.
"""

import asyncio
import logging
import random
from typing import Callable, List, Optional

from eternal_storyteller.errors import PlaybackBlocked, StorytellerError, UpstreamGenerationFailure
from eternal_storyteller.models import Chapter, Choice, ChoiceState, SessionStatus, Story
from eternal_storyteller.player.ambience import AmbienceController
from eternal_storyteller.player.choice import ChoiceResolver, Resolution
from eternal_storyteller.player.client import ChapterSource
from eternal_storyteller.player.playback import PlaybackController
from eternal_storyteller.services.voice import VoiceService

logger = logging.getLogger(__name__)


class StorySession:
    """
    Plays a story chapter after chapter until stopped.

    Args:
        source: where stories and chapters come from
        playback: narration playback controller
        resolver: choice resolution state machine
        ambience: optional background music, coupled to narration activity
        stop_on_sleep: end the session on the sleep sentinel instead of
            picking a random choice and carrying on
    """

    def __init__(
        self,
        source: ChapterSource,
        playback: PlaybackController,
        resolver: ChoiceResolver,
        ambience: Optional[AmbienceController] = None,
        stop_on_sleep: bool = False,
        rng: Optional[random.Random] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.source = source
        self.playback = playback
        self.resolver = resolver
        self.ambience = ambience
        self.stop_on_sleep = stop_on_sleep
        self.rng = rng or random.Random()
        self.log = log or logger

        self.status = SessionStatus.IDLE
        self.story: Optional[Story] = None
        self.chapter: Optional[Chapter] = None
        self.chapters: List[Chapter] = []
        self.last_resolution: Optional[Resolution] = None
        self.error: Optional[Exception] = None

        self.on_status_change: Optional[Callable[[SessionStatus], None]] = None
        self.on_chapter: Optional[Callable[[Chapter], None]] = None
        self.on_error: Optional[Callable[[Exception], None]] = None
        self.on_blocked: Optional[Callable[[PlaybackBlocked], None]] = None

        self._run_task: Optional[asyncio.Task] = None

        self.playback.on_ended = self.resolver.playback_ended
        self.playback.on_blocked = self._blocked
        self.playback.add_activity_listener(self._on_activity)
        self.resolver.on_state_change = self._on_choice_state
        if ambience is not None:
            self.playback.add_activity_listener(ambience.narration_activity)

    def _set_status(self, status: SessionStatus):
        if self.status == status:
            return
        self.status = status
        self.log.debug(f"Session status -> {status.value}")
        if self.on_status_change:
            self.on_status_change(status)

    def _on_choice_state(self, state: ChoiceState):
        if state == ChoiceState.COLLECTING_CHOICE:
            self._set_status(SessionStatus.CHOOSING)

    def _on_activity(self, playing: bool):
        if playing and self.status == SessionStatus.BLOCKED:
            self._set_status(SessionStatus.PLAYING)

    def _blocked(self, error: PlaybackBlocked):
        self.log.warning(f"⚠️ Narration blocked, waiting for the listener to press play: {error}")
        self._set_status(SessionStatus.BLOCKED)
        if self.on_blocked:
            self.on_blocked(error)

    # ===== Listener actions =====

    def select(self, choice_id: str) -> bool:
        """Manual choice from the listener"""
        return self.resolver.select(choice_id)

    def stop(self):
        """Stop playback and end the session"""
        self.playback.stop()
        self.resolver.reset()
        if self._run_task is not None and self._run_task is not asyncio.current_task():
            self._run_task.cancel()
        if self.status != SessionStatus.ERROR:
            self._set_status(SessionStatus.STOPPED)

    # ===== Cycle =====

    async def start(self, genre: str, voice_id: str, title: Optional[str] = None) -> Story:
        self.story = await self.source.create_story(genre, voice_id, title)
        self.log.info(f"📚 Session started for story {self.story.id}: {self.story.title}")
        return self.story

    async def play_chapter(self, previous_choice: Optional[str] = None) -> Optional[Choice]:
        """
        Generate, play and resolve one chapter.

        Returns:
            The choice applied to the chapter, or None when the session
            stops on the sleep sentinel
        """
        self._set_status(SessionStatus.GENERATING)
        chapter = await self.source.generate_chapter(self.story.id, previous_choice)
        audio = self._chapter_audio(chapter)

        self.chapter = chapter
        self.chapters.append(chapter)
        if self.on_chapter:
            self.on_chapter(chapter)

        self.resolver.begin_chapter(chapter)
        self._set_status(SessionStatus.PLAYING)
        self.playback.load(audio)
        if not self.playback.autoplay:
            try:
                self.playback.play()
            except PlaybackBlocked as e:
                self._blocked(e)

        resolution = await self.resolver.wait()
        self.last_resolution = resolution
        self.resolver.reset()

        if resolution.is_sleep:
            if self.stop_on_sleep:
                self.log.info("😴 Listener asleep, ending session")
                self._set_status(SessionStatus.STOPPED)
                return None
            choice = self.rng.choice(chapter.choices)
            self.log.info(f"😴 Listener asleep, continuing with '{choice.label}'")
        else:
            choice = chapter.find_choice(resolution.choice_id)

        await self.source.resolve_chapter(chapter.id, choice.label)
        return choice

    @staticmethod
    def _chapter_audio(chapter: Chapter) -> bytes:
        if not chapter.text or not chapter.audio_ref:
            raise UpstreamGenerationFailure("narration", f"chapter {chapter.id} has no text or audio")
        return VoiceService.decode_audio_data_url(chapter.audio_ref)

    async def run(self, genre: str, voice_id: str, title: Optional[str] = None,
                  max_chapters: Optional[int] = None) -> SessionStatus:
        """
        Run the story until stopped, asleep (with ``stop_on_sleep``), failed
        or ``max_chapters`` chapters have been resolved.
        """
        self._run_task = asyncio.current_task()
        try:
            if self.story is None:
                await self.start(genre, voice_id, title)

            previous_choice: Optional[str] = None
            played = 0
            while self.status != SessionStatus.STOPPED:
                choice = await self.play_chapter(previous_choice)
                if choice is None:
                    break
                previous_choice = choice.label
                played += 1
                if max_chapters is not None and played >= max_chapters:
                    break
        except StorytellerError as e:
            self._fail(e)
        finally:
            self._run_task = None

        if self.status != SessionStatus.ERROR:
            self._set_status(SessionStatus.STOPPED)
        return self.status

    def _fail(self, error: Exception):
        self.error = error
        self.log.error(f"❌ Story session failed: {error}")
        self.playback.stop()
        self.resolver.reset()
        self._set_status(SessionStatus.ERROR)
        if self.on_error:
            self.on_error(error)

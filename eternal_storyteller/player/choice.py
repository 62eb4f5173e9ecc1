"""
Choice Resolution State Machine

IDLE -> AWAITING_PLAYBACK_END -> COLLECTING_CHOICE -> RESOLVED

While collecting, the manual, timeout, voice and sleep paths race as
asyncio tasks on one event loop. They all write to a single-assignment
ResolutionCell: the first write wins and synchronously runs the cancellation
list, which cancels the other tasks and aborts any active recording.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from eternal_storyteller.errors import StorytellerError
from eternal_storyteller.models import Chapter, ChoiceState, ResolutionPath
from eternal_storyteller.player.capabilities import AudioCapture
from eternal_storyteller.player.voice_match import SpeechHeuristic, match_choice

logger = logging.getLogger(__name__)

Transcriber = Callable[[bytes, str], Awaitable[str]]


@dataclass
class ChoiceConfig:
    """Which resolution paths run and their timings (seconds)"""
    manual: bool = True
    timeout: bool = True
    voice: bool = True
    sleep: bool = True
    timeout_seconds: int = 45
    tick_seconds: float = 1.0
    voice_window_seconds: float = 5.0
    sleep_timeout_seconds: float = 60.0
    end_delay_seconds: float = 0.0

    @classmethod
    def from_settings(cls, settings, **overrides) -> "ChoiceConfig":
        values = dict(
            timeout_seconds=settings.choice_timeout_seconds,
            voice_window_seconds=settings.voice_window_seconds,
            sleep_timeout_seconds=settings.sleep_timeout_seconds,
            end_delay_seconds=settings.choice_end_delay_seconds,
        )
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class Resolution:
    """Winning outcome of one cycle; ``choice_id`` is None for the sleep sentinel"""
    choice_id: Optional[str]
    path: ResolutionPath

    @property
    def is_sleep(self) -> bool:
        return self.path == ResolutionPath.SLEEP


class ResolutionCell:
    """Single-assignment result with a cancellation list run exactly once"""

    def __init__(self):
        self._value: Optional[Resolution] = None
        self._cancellers: List[Callable[[], None]] = []
        self._done = asyncio.Event()

    @property
    def resolved(self) -> bool:
        return self._value is not None

    @property
    def value(self) -> Optional[Resolution]:
        return self._value

    def add_canceller(self, canceller: Callable[[], None]):
        if self.resolved:
            canceller()
        else:
            self._cancellers.append(canceller)

    def resolve(self, value: Resolution) -> bool:
        """Store ``value`` if the cell is empty; returns False otherwise"""
        if self.resolved:
            return False
        self._value = value
        self.cancel()
        self._done.set()
        return True

    def cancel(self):
        cancellers, self._cancellers = self._cancellers, []
        for canceller in cancellers:
            try:
                canceller()
            except Exception as e:
                logger.error(f"Error cancelling resolution path: {e}", exc_info=True)

    async def wait(self) -> Resolution:
        await self._done.wait()
        return self._value


def _task_canceller(task: asyncio.Task) -> Callable[[], None]:
    def cancel():
        # A path resolving from inside its own task just returns
        if task is not asyncio.current_task():
            task.cancel()
    return cancel


class ChoiceResolver:
    """
    Runs one choice-resolution cycle per chapter.

    Args:
        config: enabled paths and timings
        capture: audio input for the voice path (voice path off when None)
        transcriber: async ``(audio_bytes, filename) -> text`` (voice path off when None)
        heuristic: speech pre-filter applied before transcription
        rng: random source for the timeout pick
    """

    def __init__(
        self,
        config: Optional[ChoiceConfig] = None,
        capture: Optional[AudioCapture] = None,
        transcriber: Optional[Transcriber] = None,
        heuristic: Optional[SpeechHeuristic] = None,
        rng: Optional[random.Random] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.config = config or ChoiceConfig()
        self.capture = capture
        self.transcriber = transcriber
        self.heuristic = heuristic or SpeechHeuristic()
        self.rng = rng or random.Random()
        self.log = log or logger

        self.state = ChoiceState.IDLE
        self.chapter: Optional[Chapter] = None
        self.remaining = 0
        self.listening = False
        self.last_transcript: Optional[str] = None

        self.on_tick: Optional[Callable[[int], None]] = None
        self.on_state_change: Optional[Callable[[ChoiceState], None]] = None
        self.on_resolved: Optional[Callable[[Resolution], None]] = None

        self._cell: Optional[ResolutionCell] = None
        self._delay_task: Optional[asyncio.Task] = None
        self._collecting = asyncio.Event()

    @property
    def resolution(self) -> Optional[Resolution]:
        return self._cell.value if self._cell else None

    @property
    def voice_enabled(self) -> bool:
        return self.config.voice and self.capture is not None and self.transcriber is not None

    def _set_state(self, state: ChoiceState):
        self.state = state
        self.log.debug(f"Choice state -> {state.value}")
        if self.on_state_change:
            self.on_state_change(state)

    # ===== Transitions =====

    def begin_chapter(self, chapter: Chapter):
        """Start a cycle for a chapter whose narration is about to play"""
        if self.state != ChoiceState.IDLE:
            self.reset()
        self.chapter = chapter
        self._collecting = asyncio.Event()
        self._set_state(ChoiceState.AWAITING_PLAYBACK_END)

    def playback_ended(self):
        """Narration reached its natural end; start collecting after the end delay"""
        if self.state != ChoiceState.AWAITING_PLAYBACK_END or self._delay_task is not None:
            self.log.debug(f"Ignoring playback end in state {self.state.value}")
            return

        if self.config.end_delay_seconds > 0:
            self._delay_task = asyncio.get_running_loop().create_task(self._delayed_start())
        else:
            self._start_collecting()

    async def _delayed_start(self):
        await asyncio.sleep(self.config.end_delay_seconds)
        self._delay_task = None
        self._start_collecting()

    def _start_collecting(self):
        cell = ResolutionCell()
        self._cell = cell
        self.remaining = int(self.config.timeout_seconds)
        self._set_state(ChoiceState.COLLECTING_CHOICE)
        self._collecting.set()

        loop = asyncio.get_running_loop()
        if self.config.timeout:
            cell.add_canceller(_task_canceller(loop.create_task(self._countdown(cell))))
        if self.voice_enabled:
            cell.add_canceller(_task_canceller(loop.create_task(self._listen(cell))))
            cell.add_canceller(self.capture.abort)
        if self.config.sleep:
            cell.add_canceller(_task_canceller(loop.create_task(self._sleep_timer(cell))))

    def select(self, choice_id: str) -> bool:
        """
        Manual selection.

        Returns False when not collecting or already resolved.

        Raises:
            ValueError: unknown choice id
        """
        if self.chapter is None or self.chapter.find_choice(choice_id) is None:
            raise ValueError(f"Unknown choice id: {choice_id}")
        if not self.config.manual:
            return False
        return self.resolve(choice_id, ResolutionPath.MANUAL)

    def resolve(self, choice_id: Optional[str], path: ResolutionPath) -> bool:
        """First call in a cycle wins; later calls return False"""
        if self.state != ChoiceState.COLLECTING_CHOICE or self._cell is None:
            return False

        resolution = Resolution(choice_id=choice_id, path=path)
        if not self._cell.resolve(resolution):
            return False

        self.listening = False
        self._set_state(ChoiceState.RESOLVED)
        self.log.info(f"🔀 Choice resolved via {path.value}: {choice_id or 'sleep'}")
        if self.on_resolved:
            self.on_resolved(resolution)
        return True

    async def wait(self) -> Resolution:
        """Wait for the current cycle's resolution"""
        if self.state == ChoiceState.IDLE:
            raise RuntimeError("No choice cycle in progress")
        await self._collecting.wait()
        return await self._cell.wait()

    def reset(self):
        """Cancel everything still running and return to IDLE"""
        if self._delay_task is not None:
            self._delay_task.cancel()
            self._delay_task = None
        if self._cell is not None:
            self._cell.cancel()
            self._cell = None
        self.chapter = None
        self.remaining = 0
        self.listening = False
        self._set_state(ChoiceState.IDLE)

    # ===== Paths =====

    async def _countdown(self, cell: ResolutionCell):
        if self.on_tick:
            self.on_tick(self.remaining)
        while self.remaining > 0:
            await asyncio.sleep(self.config.tick_seconds)
            if cell.resolved:
                return
            self.remaining -= 1
            if self.on_tick:
                self.on_tick(self.remaining)

        choice = self.rng.choice(self.chapter.choices)
        self.log.info(f"⏰ Choice countdown expired, picking '{choice.label}'")
        self.resolve(choice.id, ResolutionPath.TIMEOUT)

    async def _sleep_timer(self, cell: ResolutionCell):
        await asyncio.sleep(self.config.sleep_timeout_seconds)
        if not cell.resolved:
            self.log.info("😴 No response, listener presumed asleep")
            self.resolve(None, ResolutionPath.SLEEP)

    async def _listen(self, cell: ResolutionCell):
        choices = self.chapter.choices
        while not cell.resolved:
            self.listening = True
            clip = await self.capture.record(self.config.voice_window_seconds)
            self.listening = False
            if clip is None or cell.resolved:
                return

            if not self.heuristic.is_speech(clip):
                self.log.debug("Voice window: no speech detected")
                continue

            try:
                transcript = await self.transcriber(clip.to_wav(), "choice.wav")
            except StorytellerError as e:
                self.log.warning(f"⚠️ Transcription failed, treating as no match: {e}")
                continue

            self.last_transcript = transcript
            choice_id = match_choice(transcript, choices)
            if choice_id is None:
                self.log.debug(f"Voice window: no choice matched \"{transcript}\"")
                continue

            self.resolve(choice_id, ResolutionPath.VOICE)
            return

"""
Unit tests for the choice resolution state machine

Timings are scaled down so the manual, timeout, voice and sleep paths race
in milliseconds.
"""

import asyncio
import random
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from eternal_storyteller.errors import TranscriptionFailure, UpstreamGenerationFailure
from eternal_storyteller.models import Chapter, ChoiceState, ResolutionPath
from eternal_storyteller.player.capabilities import AudioClip, ScriptedCapture
from eternal_storyteller.player.choice import ChoiceConfig, ChoiceResolver, Resolution, ResolutionCell


def make_chapter(chapter_id: int = 1) -> Chapter:
    return Chapter(
        id=chapter_id,
        story_id=1,
        chapter_index=chapter_id,
        text="The lantern flickered.",
        audio_ref="data:audio/mpeg;base64,SUQz",
        choices=[
            {"id": "a", "text": "Follow the glowing path"},
            {"id": "b", "text": "Rest beside the quiet lake"},
        ],
    )


class FakeTranscriber:
    """Async transcriber returning scripted replies (the last one repeats)"""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    async def __call__(self, audio: bytes, filename: str) -> str:
        self.calls.append((audio, filename))
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


class TestResolutionCell:
    """Single-assignment cell"""

    def test_first_write_wins(self):
        cell = ResolutionCell()
        cancelled = []
        cell.add_canceller(lambda: cancelled.append("timer"))

        assert cell.resolve(Resolution("a", ResolutionPath.MANUAL))
        assert not cell.resolve(Resolution("b", ResolutionPath.TIMEOUT))
        assert cell.value.choice_id == "a"
        assert cancelled == ["timer"]

    def test_late_canceller_runs_immediately(self):
        cell = ResolutionCell()
        cell.resolve(Resolution(None, ResolutionPath.SLEEP))
        cancelled = []
        cell.add_canceller(lambda: cancelled.append(True))
        assert cancelled == [True]
        assert cell.value.is_sleep


class TestManualPath:
    """Manual selection"""

    def setup_method(self):
        self.resolver = ChoiceResolver(ChoiceConfig(timeout=False, voice=False, sleep=False))
        self.states = []
        self.resolver.on_state_change = self.states.append

    async def test_select_resolves_once(self):
        self.resolver.begin_chapter(make_chapter())
        self.resolver.playback_ended()

        assert self.resolver.select("b")
        assert not self.resolver.select("a")

        resolution = await self.resolver.wait()
        assert resolution == Resolution("b", ResolutionPath.MANUAL)
        assert self.states == [
            ChoiceState.AWAITING_PLAYBACK_END,
            ChoiceState.COLLECTING_CHOICE,
            ChoiceState.RESOLVED,
        ]

    async def test_select_ignored_while_narration_plays(self):
        self.resolver.begin_chapter(make_chapter())
        assert not self.resolver.select("a")
        assert self.resolver.state == ChoiceState.AWAITING_PLAYBACK_END

    async def test_unknown_choice(self):
        self.resolver.begin_chapter(make_chapter())
        self.resolver.playback_ended()
        with pytest.raises(ValueError):
            self.resolver.select("z")

    async def test_manual_disabled(self):
        resolver = ChoiceResolver(ChoiceConfig(manual=False, timeout=False, voice=False, sleep=False))
        resolver.begin_chapter(make_chapter())
        resolver.playback_ended()
        assert not resolver.select("a")
        assert resolver.state == ChoiceState.COLLECTING_CHOICE
        resolver.reset()

    async def test_end_delay(self):
        resolver = ChoiceResolver(ChoiceConfig(timeout=False, voice=False, sleep=False, end_delay_seconds=0.01))
        resolver.begin_chapter(make_chapter())
        waiter = asyncio.ensure_future(resolver.wait())

        resolver.playback_ended()
        resolver.playback_ended()
        assert resolver.state == ChoiceState.AWAITING_PLAYBACK_END

        await asyncio.sleep(0.05)
        assert resolver.state == ChoiceState.COLLECTING_CHOICE
        resolver.select("a")
        assert (await waiter).choice_id == "a"

    async def test_reset(self):
        resolver = ChoiceResolver(ChoiceConfig(voice=False, sleep=False))
        resolver.begin_chapter(make_chapter())
        resolver.playback_ended()
        resolver.reset()

        assert resolver.state == ChoiceState.IDLE
        assert resolver.chapter is None
        with pytest.raises(RuntimeError):
            await resolver.wait()


class TestTimeoutPath:
    """Countdown expiry picks a random choice"""

    async def test_countdown_ticks(self):
        resolver = ChoiceResolver(
            ChoiceConfig(voice=False, sleep=False, timeout_seconds=3, tick_seconds=0.001),
            rng=random.Random(1),
        )
        ticks = []
        resolver.on_tick = ticks.append
        resolver.begin_chapter(make_chapter())
        resolver.playback_ended()

        resolution = await asyncio.wait_for(resolver.wait(), timeout=2)

        assert ticks == [3, 2, 1, 0]
        assert resolution.path == ResolutionPath.TIMEOUT
        assert resolution.choice_id in ("a", "b")

    async def test_manual_beats_countdown(self):
        resolver = ChoiceResolver(ChoiceConfig(voice=False, sleep=False, timeout_seconds=2, tick_seconds=0.01))
        ticks = []
        resolver.on_tick = ticks.append
        resolver.begin_chapter(make_chapter())
        resolver.playback_ended()
        resolver.select("a")
        await asyncio.sleep(0.05)

        assert resolver.resolution.path == ResolutionPath.MANUAL
        assert 0 not in ticks

    async def test_pick_is_roughly_even(self):
        resolver = ChoiceResolver(
            ChoiceConfig(voice=False, sleep=False, timeout_seconds=0),
            rng=random.Random(7),
        )
        counts = {"a": 0, "b": 0}
        for _ in range(200):
            resolver.begin_chapter(make_chapter())
            resolver.playback_ended()
            resolution = await resolver.wait()
            counts[resolution.choice_id] += 1

        assert 70 <= counts["a"] <= 130
        assert counts["a"] + counts["b"] == 200


class TestVoicePath:
    """Spoken choices through a scripted recorder"""

    def make_resolver(self, capture, transcriber, sleep_timeout=None):
        config = ChoiceConfig(
            timeout=False,
            sleep=sleep_timeout is not None,
            sleep_timeout_seconds=sleep_timeout or 60.0,
            voice_window_seconds=5.0,
        )
        return ChoiceResolver(config, capture=capture, transcriber=transcriber)

    async def test_ordinal_selects_first_choice(self):
        capture = ScriptedCapture([AudioClip.tone(0.5)], time_scale=0.001)
        transcriber = FakeTranscriber("I choose option one")
        resolver = self.make_resolver(capture, transcriber)
        resolver.begin_chapter(make_chapter())
        resolver.playback_ended()

        resolution = await asyncio.wait_for(resolver.wait(), timeout=2)

        assert resolution == Resolution("a", ResolutionPath.VOICE)
        audio, filename = transcriber.calls[0]
        assert audio.startswith(b"RIFF")
        assert filename == "choice.wav"

    async def test_silence_is_never_transcribed(self):
        capture = ScriptedCapture(time_scale=0.001)
        transcriber = FakeTranscriber("the first one")
        resolver = self.make_resolver(capture, transcriber, sleep_timeout=0.05)
        resolver.begin_chapter(make_chapter())
        resolver.playback_ended()

        resolution = await asyncio.wait_for(resolver.wait(), timeout=2)

        assert resolution.is_sleep
        assert resolution.choice_id is None
        assert transcriber.calls == []
        assert capture.recordings >= 2

    async def test_no_match_keeps_listening_until_sleep(self):
        capture = ScriptedCapture([AudioClip.tone(0.5) for _ in range(50)], time_scale=0.001)
        transcriber = FakeTranscriber("maybe tomorrow")
        resolver = self.make_resolver(capture, transcriber, sleep_timeout=0.05)
        resolver.begin_chapter(make_chapter())
        resolver.playback_ended()

        resolution = await asyncio.wait_for(resolver.wait(), timeout=2)

        assert resolution.path == ResolutionPath.SLEEP
        assert resolver.last_transcript == "maybe tomorrow"
        assert len(transcriber.calls) >= 1

    async def test_transcription_failure_counts_as_no_match(self):
        capture = ScriptedCapture([AudioClip.tone(0.5), AudioClip.tone(0.5)], time_scale=0.001)
        transcriber = FakeTranscriber(TranscriptionFailure("upstream down"), "number two please")
        resolver = self.make_resolver(capture, transcriber)
        resolver.begin_chapter(make_chapter())
        resolver.playback_ended()

        resolution = await asyncio.wait_for(resolver.wait(), timeout=2)

        assert resolution == Resolution("b", ResolutionPath.VOICE)
        assert len(transcriber.calls) == 2

    async def test_unreachable_transcriber_keeps_listening(self):
        capture = ScriptedCapture([AudioClip.tone(0.5), AudioClip.tone(0.5)], time_scale=0.001)
        transcriber = FakeTranscriber(
            UpstreamGenerationFailure("api", "connection refused"), "number two please"
        )
        resolver = self.make_resolver(capture, transcriber, sleep_timeout=1.0)
        resolver.begin_chapter(make_chapter())
        resolver.playback_ended()

        resolution = await asyncio.wait_for(resolver.wait(), timeout=2)

        assert resolution == Resolution("b", ResolutionPath.VOICE)
        assert len(transcriber.calls) == 2

    async def test_no_match_never_resolves_before_sleep_timeout(self):
        capture = ScriptedCapture([AudioClip.tone(0.5) for _ in range(200)], time_scale=0.001)
        transcriber = FakeTranscriber("maybe tomorrow")
        resolver = self.make_resolver(capture, transcriber, sleep_timeout=0.3)
        loop = asyncio.get_running_loop()
        started = loop.time()
        resolver.begin_chapter(make_chapter())
        resolver.playback_ended()

        await asyncio.sleep(0.2)
        assert resolver.resolution is None
        assert resolver.state == ChoiceState.COLLECTING_CHOICE
        assert len(transcriber.calls) >= 2

        resolution = await asyncio.wait_for(resolver.wait(), timeout=2)

        assert resolution == Resolution(None, ResolutionPath.SLEEP)
        assert 0.29 <= loop.time() - started < 1.0

    async def test_manual_choice_aborts_recording(self):
        capture = ScriptedCapture(time_scale=1.0)
        transcriber = FakeTranscriber("the first one")
        resolver = self.make_resolver(capture, transcriber)
        resolver.begin_chapter(make_chapter())
        resolver.playback_ended()
        await asyncio.sleep(0.01)
        assert resolver.listening

        resolver.select("b")
        await asyncio.sleep(0.01)

        assert capture.aborted == 1
        assert capture.recordings == 1
        assert not resolver.listening
        assert transcriber.calls == []

    async def test_voice_off_without_capture(self):
        resolver = ChoiceResolver(ChoiceConfig(), transcriber=FakeTranscriber("one"))
        assert not resolver.voice_enabled

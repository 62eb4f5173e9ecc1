"""
Audio capability interfaces

Core player logic depends only on these interfaces; device backends live in
``eternal_storyteller.player.devices``. ``SimulatedPlayback`` and
``ScriptedCapture`` are headless implementations driven by code, used for
tests and for running a session without audio hardware.
"""

import asyncio
import io
import wave
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

import numpy as np

from eternal_storyteller.errors import PlaybackBlocked

ReadyCallback = Callable[[float], None]
ProgressCallback = Callable[[float], None]
EndedCallback = Callable[[], None]


# ==================== Playback ====================

class AudioPlayback(ABC):
    """
    One audio output channel.

    ``load`` receives the callbacks for that source only. Implementations
    call ``on_ready(duration)`` once the duration is known, ``on_progress``
    while playing and ``on_ended`` when the source plays to its natural end.
    """

    @abstractmethod
    def load(
        self,
        audio: bytes,
        on_ready: ReadyCallback,
        on_progress: ProgressCallback,
        on_ended: EndedCallback,
    ) -> None:
        ...

    @abstractmethod
    def play(self) -> None:
        """Start or resume; raises PlaybackBlocked if the output refuses"""

    @abstractmethod
    def pause(self) -> None:
        ...

    @abstractmethod
    def seek(self, seconds: float) -> None:
        ...

    @abstractmethod
    def set_volume(self, level: float) -> None:
        """Effective output level in 0.0..1.0"""

    @abstractmethod
    def stop(self) -> None:
        """Stop and forget the current source; no further callbacks for it"""


class SimulatedPlayback(AudioPlayback):
    """
    Playback without an audio device.

    Durations come from ``duration`` (seconds). With ``autorun`` the source
    reports ready on load and plays to its end on the running event loop in
    ``tick`` steps; without it, tests drive events via ``emit_ready``,
    ``advance`` and ``finish``.
    """

    def __init__(self, duration: float = 1.0, autorun: bool = False, tick: float = 0.01,
                 blocked: bool = False):
        self.duration = duration
        self.autorun = autorun
        self.tick = tick
        self.blocked = blocked

        self.position = 0.0
        self.playing = False
        self.level = 1.0
        self.loads: List[bytes] = []
        self.play_calls = 0
        self._callbacks = None
        self._task: Optional[asyncio.Task] = None

    def load(self, audio, on_ready, on_progress, on_ended):
        self.stop()
        self.loads.append(audio)
        self._callbacks = (on_ready, on_progress, on_ended)
        if self.autorun:
            self.emit_ready()

    def play(self):
        self.play_calls += 1
        if self.blocked:
            raise PlaybackBlocked("Simulated output refused to start")
        self.playing = True
        if self.autorun and self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    def pause(self):
        self.playing = False

    def seek(self, seconds):
        self.position = max(0.0, min(seconds, self.duration))

    def set_volume(self, level):
        self.level = level

    def stop(self):
        self.playing = False
        self.position = 0.0
        self._callbacks = None
        if self._task is not None:
            self._task.cancel()
            self._task = None

    # Driving helpers

    def emit_ready(self):
        if self._callbacks:
            self._callbacks[0](self.duration)

    def advance(self, seconds: float):
        if self._callbacks and self.playing:
            self.position = min(self.position + seconds, self.duration)
            self._callbacks[1](self.position)
            if self.position >= self.duration:
                self.finish()

    def finish(self):
        if self._callbacks:
            callbacks = self._callbacks
            self.playing = False
            self.position = self.duration
            self._callbacks = None
            callbacks[2]()

    async def _run(self):
        try:
            while self._callbacks:
                await asyncio.sleep(self.tick)
                if self.playing:
                    self.advance(self.tick)
        finally:
            if self._task is asyncio.current_task():
                self._task = None


# ==================== Capture ====================

@dataclass
class AudioClip:
    """Mono float32 samples in -1.0..1.0"""
    samples: np.ndarray
    sample_rate: int = 16000

    @property
    def duration(self) -> float:
        return len(self.samples) / float(self.sample_rate) if self.sample_rate else 0.0

    def to_wav(self) -> bytes:
        """Encode as 16-bit PCM WAV for transcription"""
        pcm = (np.clip(self.samples, -1.0, 1.0) * 32767).astype(np.int16)
        buffer = io.BytesIO()
        with wave.open(buffer, "wb") as wav:
            wav.setnchannels(1)
            wav.setsampwidth(2)
            wav.setframerate(self.sample_rate)
            wav.writeframes(pcm.tobytes())
        return buffer.getvalue()

    @classmethod
    def silence(cls, seconds: float, sample_rate: int = 16000) -> "AudioClip":
        return cls(np.zeros(int(seconds * sample_rate), dtype=np.float32), sample_rate)

    @classmethod
    def tone(cls, seconds: float, amplitude: float = 0.5, frequency: float = 220.0,
             sample_rate: int = 16000) -> "AudioClip":
        t = np.arange(int(seconds * sample_rate)) / float(sample_rate)
        return cls((amplitude * np.sin(2 * np.pi * frequency * t)).astype(np.float32), sample_rate)


class AudioCapture(ABC):
    """Microphone-like input recording fixed windows"""

    @abstractmethod
    async def record(self, seconds: float) -> Optional[AudioClip]:
        """Record one window; returns None when aborted"""

    @abstractmethod
    def abort(self) -> None:
        """Stop an in-progress recording"""


class ScriptedCapture(AudioCapture):
    """
    Capture that returns pre-made clips in order, then silence.

    Each window still waits ``seconds`` (scaled by ``time_scale``) so timing
    matches a real recorder.
    """

    def __init__(self, clips: Iterable[AudioClip] = (), time_scale: float = 1.0):
        self._clips = list(clips)
        self.time_scale = time_scale
        self.recordings = 0
        self.aborted = 0
        self._abort_event: Optional[asyncio.Event] = None

    async def record(self, seconds: float) -> Optional[AudioClip]:
        self._abort_event = asyncio.Event()
        self.recordings += 1
        try:
            await asyncio.wait_for(self._abort_event.wait(), timeout=seconds * self.time_scale)
            return None
        except asyncio.TimeoutError:
            pass
        finally:
            self._abort_event = None

        if self._clips:
            return self._clips.pop(0)
        return AudioClip.silence(seconds)

    def abort(self):
        if self._abort_event is not None:
            self.aborted += 1
            self._abort_event.set()

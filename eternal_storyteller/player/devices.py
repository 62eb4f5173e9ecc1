"""
Device backends for the audio capabilities

- PygamePlayback: narration through pygame.mixer.music (seekable)
- PygameChannelPlayback: background music on a pygame mixer channel
- SoundDeviceCapture: microphone windows through sounddevice

pygame and sounddevice come with the ``devices`` extra and are imported
when a backend is constructed.
"""

import asyncio
import io
import logging
from abc import abstractmethod
from typing import Optional

from eternal_storyteller.errors import PlaybackBlocked
from eternal_storyteller.player.capabilities import AudioCapture, AudioClip, AudioPlayback

logger = logging.getLogger(__name__)


def _init_mixer():
    import pygame

    if not pygame.mixer.get_init():
        pygame.mixer.init(frequency=44100, size=-16, channels=2, buffer=1024)
        logger.info("🔊 pygame.mixer initialized")
    return pygame


class _PolledPlayback(AudioPlayback):
    """Shared polling loop: reports progress and detects the natural end"""

    def __init__(self, poll_interval: float = 0.1, progress_interval: float = 1.0):
        self.poll_interval = poll_interval
        self.progress_interval = progress_interval
        self._callbacks = None
        self._token = 0
        self._paused = False
        self._started = False
        self._poll_task: Optional[asyncio.Task] = None

    @abstractmethod
    def _busy(self) -> bool:
        """True while the device is still playing the current source"""

    def _position(self) -> float:
        return 0.0

    def _start_polling(self):
        if self._poll_task is None:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll(self._token))

    async def _poll(self, token: int):
        since_progress = 0.0
        try:
            while token == self._token and self._callbacks:
                await asyncio.sleep(self.poll_interval)
                if token != self._token or not self._callbacks:
                    return
                if self._paused:
                    continue

                if not self._busy():
                    callbacks = self._callbacks
                    self._callbacks = None
                    self._started = False
                    callbacks[2]()
                    return

                since_progress += self.poll_interval
                if since_progress >= self.progress_interval:
                    since_progress = 0.0
                    self._callbacks[1](self._position())
        finally:
            if self._poll_task is asyncio.current_task():
                self._poll_task = None

    def _forget(self):
        self._token += 1
        self._callbacks = None
        self._paused = False
        self._started = False
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None


class PygamePlayback(_PolledPlayback):
    """Narration output on the pygame music stream"""

    def __init__(self, poll_interval: float = 0.1, progress_interval: float = 1.0):
        super().__init__(poll_interval, progress_interval)
        self._pygame = _init_mixer()
        self._offset = 0.0

    def load(self, audio, on_ready, on_progress, on_ended):
        pygame = self._pygame
        self.stop()
        try:
            duration = pygame.mixer.Sound(io.BytesIO(audio)).get_length()
            pygame.mixer.music.load(io.BytesIO(audio), "mp3")
        except pygame.error as e:
            logger.error(f"❌ Could not load narration audio: {e}")
            raise
        self._callbacks = (on_ready, on_progress, on_ended)
        on_ready(duration)

    def play(self):
        pygame = self._pygame
        try:
            if self._paused:
                pygame.mixer.music.unpause()
            elif not self._started:
                pygame.mixer.music.play(loops=0, start=self._offset)
        except pygame.error as e:
            raise PlaybackBlocked(f"pygame refused to play: {e}") from e
        self._paused = False
        self._started = True
        self._start_polling()

    def pause(self):
        if self._started and not self._paused:
            self._pygame.mixer.music.pause()
            self._paused = True

    def seek(self, seconds):
        self._offset = seconds
        if self._started:
            self._pygame.mixer.music.play(loops=0, start=seconds)
            if self._paused:
                self._pygame.mixer.music.pause()

    def set_volume(self, level):
        self._pygame.mixer.music.set_volume(level)

    def stop(self):
        self._forget()
        self._offset = 0.0
        self._pygame.mixer.music.stop()

    def _busy(self):
        return self._pygame.mixer.music.get_busy()

    def _position(self):
        pos_ms = self._pygame.mixer.music.get_pos()
        return self._offset + max(pos_ms, 0) / 1000.0


class PygameChannelPlayback(_PolledPlayback):
    """Output on a dedicated pygame mixer channel; seeking is not supported"""

    def __init__(self, channel: int = 1, poll_interval: float = 0.25):
        super().__init__(poll_interval, progress_interval=1.0)
        self._pygame = _init_mixer()
        self._channel = self._pygame.mixer.Channel(channel)
        self._sound = None
        self._level = 1.0

    def load(self, audio, on_ready, on_progress, on_ended):
        self.stop()
        self._sound = self._pygame.mixer.Sound(io.BytesIO(audio))
        self._sound.set_volume(self._level)
        self._callbacks = (on_ready, on_progress, on_ended)
        on_ready(self._sound.get_length())

    def play(self):
        if self._sound is None:
            return
        try:
            if self._paused:
                self._channel.unpause()
            elif not self._started:
                self._channel.play(self._sound)
        except self._pygame.error as e:
            raise PlaybackBlocked(f"pygame refused to play: {e}") from e
        self._paused = False
        self._started = True
        self._start_polling()

    def pause(self):
        if self._started and not self._paused:
            self._channel.pause()
            self._paused = True

    def seek(self, seconds):
        logger.debug("Seek not supported on mixer channels")

    def set_volume(self, level):
        self._level = level
        if self._sound is not None:
            self._sound.set_volume(level)

    def stop(self):
        self._forget()
        self._channel.stop()
        self._sound = None

    def _busy(self):
        return self._channel.get_busy()


class SoundDeviceCapture(AudioCapture):
    """Records mono float32 windows from the default (or given) input device"""

    def __init__(self, sample_rate: int = 16000, device: Optional[int] = None):
        import sounddevice

        self._sd = sounddevice
        self.sample_rate = sample_rate
        self.device = device
        self._aborted = False

    async def record(self, seconds: float) -> Optional[AudioClip]:
        self._aborted = False
        frames = int(seconds * self.sample_rate)
        recording = self._sd.rec(
            frames, samplerate=self.sample_rate, channels=1, dtype="float32", device=self.device
        )
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._sd.wait)
        except asyncio.CancelledError:
            self._sd.stop()
            raise

        if self._aborted:
            return None
        return AudioClip(recording[:, 0].copy(), self.sample_rate)

    def abort(self):
        self._aborted = True
        self._sd.stop()

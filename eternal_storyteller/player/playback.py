"""
Playback Controller

Wraps an AudioPlayback capability for narration audio. Every loaded source
gets a new token; device callbacks carrying an older token are dropped, so
reloading a source can never produce a second ``on_ended`` for the old one.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from eternal_storyteller.errors import PlaybackBlocked
from eternal_storyteller.player.capabilities import AudioPlayback

logger = logging.getLogger(__name__)


@dataclass
class PlaybackSession:
    """State of the currently loaded narration source"""
    token: int = 0
    position: float = 0.0
    duration: float = 0.0
    volume: int = 75
    muted: bool = False
    playing: bool = False
    ended: bool = False
    loaded: bool = False

    @property
    def effective_volume(self) -> float:
        return 0.0 if self.muted else self.volume / 100.0


class PlaybackController:
    """
    Narration playback with load/play/pause/seek/volume controls.

    Callbacks (assign to the attributes):
        on_ready(duration), on_progress(seconds), on_ended(), on_blocked(error)

    Activity listeners receive ``True`` when narration starts playing and
    ``False`` when it pauses, stops or ends.
    """

    def __init__(self, playback: AudioPlayback, volume: int = 75, muted: bool = False,
                 autoplay: bool = False, log: Optional[logging.Logger] = None):
        self.playback = playback
        self.autoplay = autoplay
        self.log = log or logger
        self.session = PlaybackSession(volume=self._clamp_volume(volume), muted=muted)

        self.on_ready: Optional[Callable[[float], None]] = None
        self.on_progress: Optional[Callable[[float], None]] = None
        self.on_ended: Optional[Callable[[], None]] = None
        self.on_blocked: Optional[Callable[[PlaybackBlocked], None]] = None
        self._activity_listeners: List[Callable[[bool], None]] = []

    # ===== Activity listeners =====

    def add_activity_listener(self, callback: Callable[[bool], None]):
        self._activity_listeners.append(callback)

    def remove_activity_listener(self, callback: Callable[[bool], None]):
        if callback in self._activity_listeners:
            self._activity_listeners.remove(callback)

    def _set_playing(self, playing: bool):
        if self.session.playing == playing:
            return
        self.session.playing = playing
        for callback in list(self._activity_listeners):
            try:
                callback(playing)
            except Exception as e:
                self.log.error(f"Error in playback activity listener: {e}", exc_info=True)

    # ===== Source control =====

    @property
    def token(self) -> int:
        return self.session.token

    def load(self, audio: bytes):
        """Load a new source, invalidating every pending callback of the previous one"""
        self._set_playing(False)
        previous = self.session
        self.session = PlaybackSession(
            token=previous.token + 1,
            volume=previous.volume,
            muted=previous.muted,
            loaded=True,
        )
        token = self.session.token
        self.log.debug(f"🔊 Loading source #{token} ({len(audio)} bytes)")

        self.playback.set_volume(self.session.effective_volume)
        self.playback.load(
            audio,
            on_ready=lambda duration: self._handle_ready(token, duration),
            on_progress=lambda seconds: self._handle_progress(token, seconds),
            on_ended=lambda: self._handle_ended(token),
        )

    def stop(self):
        """Stop playback and drop all callbacks of the current source"""
        self.playback.stop()
        self._set_playing(False)
        self.session = PlaybackSession(
            token=self.session.token + 1,
            volume=self.session.volume,
            muted=self.session.muted,
        )

    def play(self):
        """
        Start or resume playback.

        Raises:
            PlaybackBlocked: the output refused to start; not retried
        """
        if not self.session.loaded or self.session.ended:
            return
        try:
            self.playback.play()
        except PlaybackBlocked:
            self.log.warning("⚠️ Playback blocked; waiting for a user gesture")
            self._set_playing(False)
            raise
        self._set_playing(True)

    def pause(self):
        if not self.session.playing:
            return
        self.playback.pause()
        self._set_playing(False)

    def toggle_play_pause(self):
        if self.session.playing:
            self.pause()
        else:
            self.play()

    def seek(self, fraction: float):
        """Seek to a fraction (0..1) of the duration; ignored until the duration is known"""
        if self.session.duration <= 0:
            self.log.debug("Seek ignored, duration unknown")
            return
        fraction = min(1.0, max(0.0, fraction))
        seconds = fraction * self.session.duration
        self.playback.seek(seconds)
        self.session.position = seconds

    # ===== Volume =====

    @staticmethod
    def _clamp_volume(volume: int) -> int:
        return int(min(100, max(0, volume)))

    def set_volume(self, volume: int):
        """Set volume 0..100; moving the volume also un-mutes"""
        self.session.volume = self._clamp_volume(volume)
        self.session.muted = False
        self.playback.set_volume(self.session.effective_volume)

    def set_muted(self, muted: bool):
        self.session.muted = muted
        self.playback.set_volume(self.session.effective_volume)

    @property
    def effective_volume(self) -> float:
        return self.session.effective_volume

    # ===== Device callbacks =====

    def _is_stale(self, token: int, event: str) -> bool:
        if token != self.session.token:
            self.log.debug(f"Dropping stale {event} for source #{token} (current #{self.session.token})")
            return True
        return False

    def _handle_ready(self, token: int, duration: float):
        if self._is_stale(token, "ready"):
            return
        self.session.duration = duration
        if self.on_ready:
            self.on_ready(duration)

        if self.autoplay:
            try:
                self.play()
            except PlaybackBlocked as e:
                if self.on_blocked is None:
                    raise
                self.on_blocked(e)

    def _handle_progress(self, token: int, seconds: float):
        if self._is_stale(token, "progress"):
            return
        self.session.position = seconds
        if self.on_progress:
            self.on_progress(seconds)

    def _handle_ended(self, token: int):
        if self._is_stale(token, "ended") or self.session.ended:
            return
        self.session.ended = True
        self.session.position = self.session.duration
        self._set_playing(False)
        self.log.info(f"🔚 Narration source #{token} finished")
        if self.on_ended:
            self.on_ended()

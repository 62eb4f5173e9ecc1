"""
Background Ambience Controller

Looping background music on its own AudioPlayback channel with its own
volume and mute. When coupled, the music yields to narration: it pauses as
soon as narration starts and resumes when narration stops.
"""

import logging
import random
from pathlib import Path
from typing import List, Optional, Sequence, Union

from eternal_storyteller.errors import PlaybackBlocked
from eternal_storyteller.player.capabilities import AudioPlayback

logger = logging.getLogger(__name__)

Track = Union[str, Path, bytes]


def load_tracks(music_dir: Union[str, Path]) -> List[Path]:
    """MP3 files of a music directory in name order (empty if it does not exist)"""
    directory = Path(music_dir)
    if not directory.is_dir():
        return []
    return sorted(directory.glob("*.mp3"))


class AmbienceController:
    """
    Wrap-around playlist player.

    ``is_user_playing`` is the listener's play/pause intent; the music
    actually plays when that is set and, with coupling on, narration is
    silent.
    """

    def __init__(
        self,
        playback: AudioPlayback,
        tracks: Sequence[Track],
        volume: int = 30,
        muted: bool = False,
        coupled: bool = True,
        random_start: bool = False,
        rng: Optional[random.Random] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.playback = playback
        self.tracks = list(tracks)
        self.volume = self._clamp_volume(volume)
        self.muted = muted
        self.coupled = coupled
        self.log = log or logger

        self.index = 0
        if random_start and self.tracks:
            self.index = (rng or random.Random()).randrange(len(self.tracks))

        self.is_user_playing = False
        self.narration_active = False
        self.playing = False
        self._token = 0
        self._loaded_index: Optional[int] = None

    @classmethod
    def from_settings(cls, settings, playback: AudioPlayback, **kwargs) -> "AmbienceController":
        kwargs.setdefault("volume", settings.ambience_volume)
        kwargs.setdefault("coupled", settings.ambience_coupled)
        return cls(playback, load_tracks(settings.music_dir), **kwargs)

    @property
    def current_track(self) -> Optional[Track]:
        return self.tracks[self.index] if self.tracks else None

    @property
    def effective_volume(self) -> float:
        return 0.0 if self.muted else self.volume / 100.0

    @property
    def should_play(self) -> bool:
        if not self.is_user_playing or not self.tracks:
            return False
        return not (self.coupled and self.narration_active)

    # ===== Listener controls =====

    def toggle_play_pause(self):
        self.is_user_playing = not self.is_user_playing
        self.log.info(f"🎶 Background music {'on' if self.is_user_playing else 'off'}")
        self._apply()

    def set_volume(self, volume: int):
        """Set volume 0..100; moving the volume also un-mutes"""
        self.volume = self._clamp_volume(volume)
        self.muted = False
        self.playback.set_volume(self.effective_volume)

    def set_muted(self, muted: bool):
        self.muted = muted
        self.playback.set_volume(self.effective_volume)

    def set_coupled(self, coupled: bool):
        self.coupled = coupled
        self._apply()

    # ===== Narration coupling =====

    def narration_activity(self, active: bool):
        """Activity listener for the narration PlaybackController"""
        self.narration_active = active
        if self.coupled:
            self._apply()

    # ===== Internals =====

    @staticmethod
    def _clamp_volume(volume: int) -> int:
        return int(min(100, max(0, volume)))

    def _apply(self):
        if self.should_play and not self.playing:
            self._start()
        elif not self.should_play and self.playing:
            self.playback.pause()
            self.playing = False
            self.log.debug("🎶 Background music paused")

    def _start(self):
        if self._loaded_index != self.index:
            self._load_current()
        try:
            self.playback.play()
        except PlaybackBlocked:
            self.log.warning("⚠️ Background music blocked; waiting for a user gesture")
            self.is_user_playing = False
            raise
        self.playing = True
        self.log.debug(f"🎶 Background music playing track {self.index + 1}/{len(self.tracks)}")

    def _load_current(self):
        self._token += 1
        token = self._token
        self._loaded_index = self.index
        self.playback.set_volume(self.effective_volume)
        self.playback.load(
            self._read(self.current_track),
            on_ready=lambda duration: None,
            on_progress=lambda seconds: None,
            on_ended=lambda: self._handle_track_end(token),
        )

    @staticmethod
    def _read(track: Track) -> bytes:
        if isinstance(track, bytes):
            return track
        return Path(track).read_bytes()

    def _handle_track_end(self, token: int):
        if token != self._token:
            return
        self.playing = False
        self.index = (self.index + 1) % len(self.tracks)
        self._load_current()
        if self.should_play:
            self._start()

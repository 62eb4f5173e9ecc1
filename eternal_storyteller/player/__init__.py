"""Story player - playback, choice resolution and ambience for one listener"""

from .ambience import AmbienceController, load_tracks
from .capabilities import (
    AudioCapture,
    AudioClip,
    AudioPlayback,
    ScriptedCapture,
    SimulatedPlayback,
)
from .choice import ChoiceConfig, ChoiceResolver, Resolution, ResolutionCell
from .client import ChapterSource, LocalChapterSource, StoryApiClient
from .playback import PlaybackController, PlaybackSession
from .session import StorySession
from .voice_match import SpeechHeuristic, match_choice

__all__ = [
    "AmbienceController",
    "load_tracks",
    "AudioCapture",
    "AudioClip",
    "AudioPlayback",
    "ScriptedCapture",
    "SimulatedPlayback",
    "ChoiceConfig",
    "ChoiceResolver",
    "Resolution",
    "ResolutionCell",
    "ChapterSource",
    "LocalChapterSource",
    "StoryApiClient",
    "PlaybackController",
    "PlaybackSession",
    "StorySession",
    "SpeechHeuristic",
    "match_choice",
]

"""
Spoken choice matching

Two steps of the voice resolution path:
- ``SpeechHeuristic`` decides whether a recorded window contains speech at
  all, so silence never costs a transcription call
- ``match_choice`` maps a transcript to a choice by ordinal words
  ("first"/"one"/"1", ...) or by keywords from the choice labels
"""

import re
from dataclasses import dataclass
from typing import Optional, Sequence, Set, Tuple

import numpy as np

from eternal_storyteller.models import Choice
from eternal_storyteller.player.capabilities import AudioClip

# Position -> words that select it
ORDINAL_WORDS = [
    ("first", "one", "1"),
    ("second", "two", "2"),
    ("third", "three", "3"),
]

KEYWORD_MIN_LENGTH = 4


def normalize(text: str) -> str:
    """Lowercase and strip punctuation"""
    return re.sub(r"[^\w\s]", "", text or "").lower().strip()


def choice_keywords(label: str) -> Set[str]:
    """Words of a choice label longer than three characters"""
    return {word for word in normalize(label).split() if len(word) >= KEYWORD_MIN_LENGTH}


def match_choice(transcript: str, choices: Sequence[Choice]) -> Optional[str]:
    """
    Return the id of the choice the transcript refers to, or None.

    Ordinal words are checked first as whole words, then label keywords as
    substrings of the transcript (first choice in order wins for keywords).
    """
    text = normalize(transcript)
    if not text:
        return None

    # Earliest ordinal in the transcript wins ("the second one" -> second)
    for token in text.split():
        for position, words in enumerate(ORDINAL_WORDS[:len(choices)]):
            if token in words:
                return choices[position].id

    for choice in choices:
        if any(keyword in text for keyword in choice_keywords(choice.label)):
            return choice.id

    return None


@dataclass
class SpeechHeuristic:
    """
    Energy/peak pre-filter for recorded windows.

    A clip counts as speech when its RMS level exceeds ``rms_threshold``,
    the share of samples louder than ``peak_threshold`` exceeds
    ``peak_ratio`` and it lasts at least ``min_duration`` seconds.
    """
    rms_threshold: float = 0.02
    peak_threshold: float = 0.1
    peak_ratio: float = 0.01
    min_duration: float = 0.3

    @classmethod
    def from_settings(cls, settings) -> "SpeechHeuristic":
        return cls(
            rms_threshold=settings.speech_rms_threshold,
            peak_threshold=settings.speech_peak_threshold,
            peak_ratio=settings.speech_peak_ratio,
            min_duration=settings.speech_min_duration_seconds,
        )

    def measure(self, clip: AudioClip) -> Tuple[float, float]:
        """Return (rms, peak share) for a clip"""
        samples = np.asarray(clip.samples, dtype=np.float32)
        if samples.size == 0:
            return 0.0, 0.0
        rms = float(np.sqrt(np.mean(np.square(samples))))
        peaks = float(np.count_nonzero(np.abs(samples) >= self.peak_threshold)) / samples.size
        return rms, peaks

    def is_speech(self, clip: Optional[AudioClip]) -> bool:
        if clip is None or clip.duration < self.min_duration:
            return False
        rms, peaks = self.measure(clip)
        return rms > self.rms_threshold and peaks > self.peak_ratio

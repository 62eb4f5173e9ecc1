"""Configuration package for Eternal Storyteller"""

from .settings import Settings, get_settings
from .limits import (
    GENRE_MAX_LENGTH,
    VOICE_ID_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    TITLE_MIN_LENGTH,
    CHOICE_TEXT_MAX_LENGTH,
    CHAPTER_TEXT_MAX_LENGTH,
    CHOICES_PER_CHAPTER,
)

__all__ = [
    "Settings",
    "get_settings",
    "GENRE_MAX_LENGTH",
    "VOICE_ID_MAX_LENGTH",
    "TITLE_MAX_LENGTH",
    "TITLE_MIN_LENGTH",
    "CHOICE_TEXT_MAX_LENGTH",
    "CHAPTER_TEXT_MAX_LENGTH",
    "CHOICES_PER_CHAPTER",
]

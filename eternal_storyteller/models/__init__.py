"""
Models package - Pydantic data models for Eternal Storyteller

Re-exports all models for cleaner imports:
    from eternal_storyteller.models import Story, Chapter, Choice
"""

from eternal_storyteller.models.models import (
    ChoiceState,
    ResolutionPath,
    SessionStatus,
    Voice,
    Genre,
    VOICES,
    GENRES,
    Choice,
    check_choice_count,
    StoryCreate,
    Story,
    ChapterCreate,
    Chapter,
    GeneratedChapter,
    NarrationRequest,
    ChapterGenerateRequest,
    ChapterUpdate,
    TranscriptionResponse,
)

__all__ = [
    "ChoiceState",
    "ResolutionPath",
    "SessionStatus",
    "Voice",
    "Genre",
    "VOICES",
    "GENRES",
    "Choice",
    "check_choice_count",
    "StoryCreate",
    "Story",
    "ChapterCreate",
    "Chapter",
    "GeneratedChapter",
    "NarrationRequest",
    "ChapterGenerateRequest",
    "ChapterUpdate",
    "TranscriptionResponse",
]

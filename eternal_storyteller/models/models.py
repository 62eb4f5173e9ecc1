"""
Pydantic data models for Eternal Storyteller

Stories, chapters and choices as persisted by the Chapter Store, plus the
request/response bodies of the HTTP API.

API LIMITS (user-facing)
========================
| Field                         | Min | Max    | Model        |
|-------------------------------|-----|--------|--------------|
| StoryCreate.genre             | 1   | 50     | StoryCreate  |
| StoryCreate.voice_id          | 1   | 50     | StoryCreate  |
| Story/StoryCreate.title       | 1   | 100    | Story        |
| Chapter.text                  | 1   | 20,000 | Chapter      |
| ChapterUpdate.resolved_choice | 1   | 500    | ChapterUpdate|
"""

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
)
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum

from eternal_storyteller.config.limits import (
    GENRE_MAX_LENGTH,
    VOICE_ID_MAX_LENGTH,
    TITLE_MAX_LENGTH,
    TITLE_MIN_LENGTH,
    CHOICE_TEXT_MAX_LENGTH,
    CHAPTER_TEXT_MAX_LENGTH,
    CHOICES_PER_CHAPTER,
)


# ============================================================================
# Enums
# ============================================================================

class ChoiceState(str, Enum):
    """States of the per-chapter choice resolution cycle"""
    IDLE = "idle"                                    # No chapter loaded
    AWAITING_PLAYBACK_END = "awaiting_playback_end"  # Narration playing
    COLLECTING_CHOICE = "collecting_choice"          # Manual/timeout/voice racing
    RESOLVED = "resolved"                            # Winner emitted


class ResolutionPath(str, Enum):
    """Which mechanism produced the winning resolution"""
    MANUAL = "manual"
    TIMEOUT = "timeout"
    VOICE = "voice"
    SLEEP = "sleep"


class SessionStatus(str, Enum):
    """Status of a client-side story session"""
    IDLE = "idle"
    GENERATING = "generating"
    PLAYING = "playing"
    CHOOSING = "choosing"
    BLOCKED = "blocked"
    ERROR = "error"
    STOPPED = "stopped"


# ============================================================================
# Catalogue Models
# ============================================================================

class Voice(BaseModel):
    """Narrator voice offered to the listener"""
    id: str
    name: str
    description: str


class Genre(BaseModel):
    """Story genre with default titles used when none is supplied"""
    id: str
    name: str
    description: str
    titles: List[str] = Field(default_factory=list)


VOICES: List[Voice] = [
    Voice(id="sarah", name="Sarah", description="Gentle & Warm"),
    Voice(id="david", name="David", description="Deep & Soothing"),
    Voice(id="luna", name="Luna", description="Ethereal & Dreamy"),
]

GENRES: Dict[str, Genre] = {
    "fantasy": Genre(
        id="fantasy",
        name="Fantasy",
        description="Enchanted forests and gentle magic",
        titles=["The Enchanted Forest", "Moonlit Kingdoms", "The Crystal Caves", "Whispers of Magic"],
    ),
    "adventure": Genre(
        id="adventure",
        name="Adventure",
        description="Quiet journeys to faraway places",
        titles=["Journey to Tomorrow", "The Hidden Valley", "Across Distant Lands", "The Explorer's Tale"],
    ),
    "mystery": Genre(
        id="mystery",
        name="Mystery",
        description="Soft puzzles under the stars",
        titles=["Secrets in the Shadows", "The Midnight Puzzle", "Whispers in the Dark", "The Silent Clue"],
    ),
    "peaceful": Genre(
        id="peaceful",
        name="Peaceful",
        description="Calm gardens and gentle streams",
        titles=["Garden of Dreams", "Gentle Streams", "The Quiet Valley", "Harmony's Embrace"],
    ),
}


# ============================================================================
# Story Models
# ============================================================================

class Choice(BaseModel):
    """One of the two forward choices offered at the end of a chapter.

    The narration engine emits the label under ``text``; both spellings are
    accepted on input, ``label`` is used on output.
    """
    id: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1, validation_alias=AliasChoices("label", "text"))
    description: str = ""


def check_choice_count(choices: List[Choice]) -> List[Choice]:
    """Enforce the exactly-two-choices contract"""
    if len(choices) != CHOICES_PER_CHAPTER:
        raise ValueError(
            f"Chapter must have exactly {CHOICES_PER_CHAPTER} choices, got {len(choices)}"
        )
    ids = [choice.id for choice in choices]
    if len(set(ids)) != len(ids):
        raise ValueError(f"Choice ids must be unique, got {ids}")
    return choices


class StoryCreate(BaseModel):
    """Request to create a new story"""
    genre: str = Field(..., min_length=1, max_length=GENRE_MAX_LENGTH)
    voice_id: str = Field(
        ...,
        min_length=1,
        max_length=VOICE_ID_MAX_LENGTH,
        validation_alias=AliasChoices("voice_id", "voiceId", "voice"),
    )
    title: Optional[str] = Field(None, min_length=TITLE_MIN_LENGTH, max_length=TITLE_MAX_LENGTH)

    @field_validator("genre", "voice_id", mode="before")
    @classmethod
    def normalize_identifier(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class Story(BaseModel):
    """A listener's story; one per session"""
    id: int
    genre: str
    voice_id: str
    title: str = Field(..., min_length=TITLE_MIN_LENGTH, max_length=TITLE_MAX_LENGTH)
    current_chapter_index: int = Field(default=1, ge=1)
    state_blob: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)

    @field_serializer("created_at")
    def serialize_created_at(self, v: datetime, _info):
        """Serialize datetime to ISO format string for JSON compatibility."""
        return v.isoformat() if v else None


class ChapterCreate(BaseModel):
    """Chapter fields supplied by the generation cycle"""
    story_id: int
    chapter_index: int = Field(..., ge=1)
    text: str = Field(..., min_length=1, max_length=CHAPTER_TEXT_MAX_LENGTH)
    audio_ref: Optional[str] = None
    choices: List[Choice]

    @field_validator("choices")
    @classmethod
    def validate_choices(cls, v):
        return check_choice_count(v)


class Chapter(ChapterCreate):
    """Generated chapter; immutable except for ``resolved_choice_text``"""
    id: int
    resolved_choice_text: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)

    @field_serializer("created_at")
    def serialize_created_at(self, v: datetime, _info):
        return v.isoformat() if v else None

    def find_choice(self, choice_id: str) -> Optional[Choice]:
        for choice in self.choices:
            if choice.id == choice_id:
                return choice
        return None


class GeneratedChapter(BaseModel):
    """Validated narration engine output"""
    text: str = Field(..., min_length=1, max_length=CHAPTER_TEXT_MAX_LENGTH)
    choices: List[Choice]

    @field_validator("choices")
    @classmethod
    def validate_choices(cls, v):
        return check_choice_count(v)


class NarrationRequest(BaseModel):
    """Input to the narration engine"""
    genre: str
    chapter_index: int = Field(..., ge=1)
    previous_choice_text: Optional[str] = None
    prior_state: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# API Request/Response Models
# ============================================================================

class ChapterGenerateRequest(BaseModel):
    """Body of POST /api/stories/{id}/chapters"""
    previous_choice: Optional[str] = Field(
        None,
        max_length=CHOICE_TEXT_MAX_LENGTH,
        validation_alias=AliasChoices("previous_choice", "previousChoice"),
    )


class ChapterUpdate(BaseModel):
    """Body of PATCH /api/chapters/{id}"""
    resolved_choice_text: str = Field(
        ...,
        min_length=1,
        max_length=CHOICE_TEXT_MAX_LENGTH,
        validation_alias=AliasChoices("resolved_choice_text", "userChoice", "user_choice"),
    )

    @field_validator("resolved_choice_text", mode="before")
    @classmethod
    def clean_choice(cls, v):
        return v.strip() if isinstance(v, str) else v


class TranscriptionResponse(BaseModel):
    """Result of POST /api/transcribe"""
    model_config = ConfigDict(frozen=True)

    text: str
    success: bool = True

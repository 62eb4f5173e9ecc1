"""
API routes for Eternal Storyteller

REST endpoints for stories, chapters, voices and transcription.
Domain errors (StoreMiss, ChoiceAlreadyResolved, UpstreamGenerationFailure,
TranscriptionFailure) propagate to the exception handlers registered in
eternal_storyteller.main.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, File, HTTPException, UploadFile

from eternal_storyteller.config import get_settings
from eternal_storyteller.models import (
    Chapter,
    ChapterGenerateRequest,
    ChapterUpdate,
    Genre,
    Story,
    StoryCreate,
    TranscriptionResponse,
    Voice,
)
from eternal_storyteller.services.story_service import StoryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["stories"])

# Global service (set by main app)
_story_service: Optional[StoryService] = None


def set_story_service(service: Optional[StoryService]):
    """Set the global story service instance"""
    global _story_service
    _story_service = service


def has_story_service() -> bool:
    return _story_service is not None


def get_story_service() -> StoryService:
    """Get the global story service instance"""
    if not _story_service:
        raise HTTPException(status_code=500, detail="Story service not initialized")
    return _story_service


# ==================== Catalogue ====================

@router.get("/voices", response_model=List[Voice])
async def list_voices():
    """Narrator voices offered to the listener"""
    return get_story_service().list_voices()


@router.get("/genres", response_model=List[Genre])
async def list_genres():
    return get_story_service().list_genres()


# ==================== Stories ====================

@router.post("/stories", response_model=Story, status_code=201)
async def create_story(request: StoryCreate):
    """
    Create a story.

    When no title is given, one is picked from the genre's default titles.
    """
    return await get_story_service().create_story(request)


@router.get("/stories", response_model=List[Story])
async def list_stories():
    stories = await get_story_service().list_stories()
    logger.info(f"📚 Returning {len(stories)} stories")
    return stories


@router.get("/stories/{story_id}", response_model=Story)
async def get_story(story_id: int):
    return await get_story_service().get_story(story_id)


# ==================== Chapters ====================

@router.post("/stories/{story_id}/chapters", response_model=Chapter)
async def generate_chapter(story_id: int, request: Optional[ChapterGenerateRequest] = None):
    """
    Generate the next chapter of a story.

    Narration text is generated first, then voiced; the chapter is stored
    only when both succeed. Upstream failures return 502 (504 on timeout).
    """
    previous_choice = request.previous_choice if request else None
    return await get_story_service().generate_chapter(story_id, previous_choice)


@router.get("/stories/{story_id}/chapters", response_model=List[Chapter])
async def list_chapters(story_id: int):
    chapters = await get_story_service().list_chapters(story_id)
    logger.info(f"📖 Found {len(chapters)} chapters for story {story_id}")
    return chapters


@router.get("/chapters/{chapter_id}", response_model=Chapter)
async def get_chapter(chapter_id: int):
    return await get_story_service().get_chapter(chapter_id)


@router.patch("/chapters/{chapter_id}", response_model=Chapter)
async def resolve_chapter(chapter_id: int, request: ChapterUpdate):
    """Record the listener's choice; a different second choice returns 409"""
    return await get_story_service().resolve_chapter(chapter_id, request.resolved_choice_text)


# ==================== Transcription ====================

@router.post("/transcribe", response_model=TranscriptionResponse)
async def transcribe(audio: Optional[UploadFile] = File(None)):
    """Transcribe a spoken choice (multipart field ``audio``, audio/* up to the upload limit)"""
    service = get_story_service()

    if audio is None:
        raise HTTPException(status_code=400, detail="No audio file provided")
    if not (audio.content_type or "").startswith("audio/"):
        raise HTTPException(status_code=400, detail="Only audio files are allowed")

    data = await audio.read()
    logger.info(f"🎤 Received audio: {audio.filename} ({audio.content_type}, {len(data)} bytes)")

    if not data:
        raise HTTPException(status_code=400, detail="Audio file is empty")
    if len(data) > service.settings.max_upload_bytes:
        raise HTTPException(status_code=413, detail="Audio file too large")

    text = await service.transcribe(data, audio.filename or "audio.webm")
    return TranscriptionResponse(text=text)


# ==================== Health ====================

@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": get_settings().app_name,
        "story_service_initialized": _story_service is not None
    }

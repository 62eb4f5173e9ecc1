"""
Chapter sources for the story player

A StorySession talks to a ChapterSource:
- LocalChapterSource: calls a StoryService in the same process
- StoryApiClient: calls the HTTP API of a running server (aiohttp)

Both raise the same StorytellerError subclasses, so the session handles
failures identically whichever source it uses.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp

from eternal_storyteller.errors import (
    ChoiceAlreadyResolved,
    StorytellerError,
    StoreMiss,
    TranscriptionFailure,
    UpstreamGenerationFailure,
)
from eternal_storyteller.models import Chapter, Story, StoryCreate, Voice

logger = logging.getLogger(__name__)


class ChapterSource(ABC):
    """Where a StorySession gets stories and chapters from"""

    @abstractmethod
    async def create_story(self, genre: str, voice_id: str, title: Optional[str] = None) -> Story:
        ...

    @abstractmethod
    async def generate_chapter(self, story_id: int, previous_choice: Optional[str] = None) -> Chapter:
        ...

    @abstractmethod
    async def resolve_chapter(self, chapter_id: int, choice_text: str) -> Chapter:
        ...

    @abstractmethod
    async def transcribe(self, audio: bytes, filename: str = "choice.wav") -> str:
        ...

    async def close(self):
        pass


class LocalChapterSource(ChapterSource):
    """Chapter source backed by an in-process StoryService"""

    def __init__(self, story_service):
        self.service = story_service

    async def create_story(self, genre, voice_id, title=None):
        return await self.service.create_story(StoryCreate(genre=genre, voice_id=voice_id, title=title))

    async def generate_chapter(self, story_id, previous_choice=None):
        return await self.service.generate_chapter(story_id, previous_choice)

    async def resolve_chapter(self, chapter_id, choice_text):
        return await self.service.resolve_chapter(chapter_id, choice_text)

    async def transcribe(self, audio, filename="choice.wav"):
        return await self.service.transcribe(audio, filename)


class StoryApiClient(ChapterSource):
    """
    Client for the storyteller HTTP API.

    Usage:
        client = StoryApiClient("http://localhost:5000")
        story = await client.create_story("fantasy", "sarah")
        chapter = await client.generate_chapter(story.id)
        await client.close()
    """

    def __init__(self, base_url: str = "http://localhost:5000", timeout: float = 300.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    # ===== Requests =====

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}/api{path}"
        try:
            async with self.session.request(method, url, **kwargs) as response:
                if response.status >= 400:
                    raise await self._error_from_response(response, path)
                return await response.json()
        except aiohttp.ClientError as e:
            logger.error(f"❌ {method} {path} failed: {e}")
            raise UpstreamGenerationFailure("api", str(e)) from e
        except asyncio.TimeoutError as e:
            logger.error(f"⏰ {method} {path} timed out after {self.timeout.total}s")
            raise UpstreamGenerationFailure(
                "api", f"no response within {self.timeout.total}s", timed_out=True
            ) from e

    @staticmethod
    async def _error_from_response(response: aiohttp.ClientResponse, path: str) -> StorytellerError:
        try:
            body: Dict[str, Any] = await response.json()
        except (aiohttp.ContentTypeError, ValueError):
            body = {"detail": await response.text()}
        detail = str(body.get("detail") or response.reason)

        if path == "/transcribe":
            return TranscriptionFailure(detail)

        record_id = next((part for part in path.split("/") if part.isdigit()), "")
        if response.status == 404:
            kind = "chapter" if path.startswith("/chapters") else "story"
            return StoreMiss(kind, int(record_id) if record_id else path)
        if response.status == 409:
            return ChoiceAlreadyResolved(int(record_id or 0), detail)
        if response.status in (502, 504):
            return UpstreamGenerationFailure("api", detail, timed_out=response.status == 504)

        error = StorytellerError(f"HTTP {response.status}: {detail}")
        error.status_code = response.status
        return error

    # ===== Operations =====

    async def list_voices(self) -> List[Voice]:
        return [Voice.model_validate(item) for item in await self._request("GET", "/voices")]

    async def list_stories(self) -> List[Story]:
        return [Story.model_validate(item) for item in await self._request("GET", "/stories")]

    async def create_story(self, genre, voice_id, title=None):
        payload = {"genre": genre, "voice_id": voice_id}
        if title:
            payload["title"] = title
        return Story.model_validate(await self._request("POST", "/stories", json=payload))

    async def generate_chapter(self, story_id, previous_choice=None):
        data = await self._request(
            "POST", f"/stories/{story_id}/chapters", json={"previous_choice": previous_choice}
        )
        return Chapter.model_validate(data)

    async def list_chapters(self, story_id: int) -> List[Chapter]:
        return [Chapter.model_validate(item) for item in await self._request("GET", f"/stories/{story_id}/chapters")]

    async def resolve_chapter(self, chapter_id, choice_text):
        data = await self._request(
            "PATCH", f"/chapters/{chapter_id}", json={"resolved_choice_text": choice_text}
        )
        return Chapter.model_validate(data)

    async def transcribe(self, audio, filename="choice.wav"):
        form = aiohttp.FormData()
        form.add_field("audio", audio, filename=filename, content_type="audio/wav")
        data = await self._request("POST", "/transcribe", data=form)
        return data.get("text", "")

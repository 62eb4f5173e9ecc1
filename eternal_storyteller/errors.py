"""
Error taxonomy for Eternal Storyteller

Every failure the story cycle can surface maps to one of these exceptions.
The exception handlers in eternal_storyteller.main translate them into
HTTP status codes via ``status_code``.
"""

from typing import Optional, Union


class StorytellerError(Exception):
    """Base class for all storyteller errors"""

    status_code: int = 500


class UpstreamGenerationFailure(StorytellerError):
    """Raised when the narration or voice synthesis call fails or times out"""

    status_code = 502

    def __init__(self, provider: str, message: str, timed_out: bool = False):
        self.provider = provider
        self.timed_out = timed_out
        if timed_out:
            self.status_code = 504
        super().__init__(f"{provider}: {message}")


class ContractViolation(UpstreamGenerationFailure):
    """Raised when the narration engine returns malformed output"""

    def __init__(self, message: str, raw: Optional[str] = None):
        self.raw = raw
        super().__init__("narration", message)


class TranscriptionFailure(StorytellerError):
    """Raised when the transcription service fails; callers treat it as no match"""

    status_code = 502


class PlaybackBlocked(StorytellerError):
    """Raised when the audio backend refuses to start playback (e.g. autoplay policy)"""

    status_code = 409


class StoreMiss(StorytellerError):
    """Raised when a story or chapter id is unknown"""

    status_code = 404

    def __init__(self, kind: str, record_id: Union[int, str]):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind.capitalize()} not found: {record_id}")


class ChoiceAlreadyResolved(StorytellerError):
    """Raised when a chapter's resolved choice would be overwritten"""

    status_code = 409

    def __init__(self, chapter_id: int, existing: str):
        self.chapter_id = chapter_id
        self.existing = existing
        super().__init__(f"Chapter {chapter_id} already resolved with '{existing}'")

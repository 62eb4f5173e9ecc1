"""Services package for Eternal Storyteller"""

from .events import EventEmitter, StoryEvent
from .logger import StorytellerLogger, init_logger
from .narration import NarrationEngine
from .storage import StorageService, MemoryStorage, SQLiteStorage, create_storage
from .story_service import StoryService
from .voice import VoiceService

__all__ = [
    "EventEmitter",
    "StoryEvent",
    "StorytellerLogger",
    "init_logger",
    "NarrationEngine",
    "StorageService",
    "MemoryStorage",
    "SQLiteStorage",
    "create_storage",
    "StoryService",
    "VoiceService",
]

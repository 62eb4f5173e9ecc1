"""
Story lifecycle events

StoryService publishes one event per step of the chapter cycle. The
StorytellerLogger is attached with ``log_events``; tests and embedding
applications subscribe their own listeners.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


EVENT_STORY_CREATED = "story_created"
EVENT_CHAPTER_GENERATING = "chapter_generating"
EVENT_CHAPTER_READY = "chapter_ready"
EVENT_CHAPTER_FAILED = "chapter_failed"
EVENT_CHOICE_RESOLVED = "choice_resolved"

Listener = Callable[["StoryEvent"], Any]


@dataclass(frozen=True)
class StoryEvent:
    kind: str
    story_id: int
    data: Dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=datetime.now)


class EventEmitter:
    """
    Per-kind listener registry.

    Listeners may be plain functions or coroutines. A failing listener is
    logged and does not stop delivery to the others.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def subscribe(self, kind: str, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for ``kind``; returns a function that unregisters it"""
        listeners = self._listeners.setdefault(kind, [])
        listeners.append(listener)

        def unsubscribe():
            if listener in listeners:
                listeners.remove(listener)
        return unsubscribe

    async def emit(self, kind: str, story_id: int, **data) -> StoryEvent:
        event = StoryEvent(kind, story_id, data)
        for listener in list(self._listeners.get(kind, ())):
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in {kind} listener: {e}", exc_info=True)
        return event


def log_events(emitter: EventEmitter, storyteller_logger) -> None:
    """Report every story event through a StorytellerLogger"""
    emitter.subscribe(EVENT_STORY_CREATED, lambda e: storyteller_logger.story_created(
        e.story_id, e.data["genre"], e.data["voice_id"]))
    emitter.subscribe(EVENT_CHAPTER_GENERATING, lambda e: storyteller_logger.chapter_requested(
        e.story_id, e.data["chapter_index"], e.data.get("previous_choice")))
    emitter.subscribe(EVENT_CHAPTER_READY, lambda e: storyteller_logger.chapter_ready(
        e.story_id, e.data["chapter_id"], e.data["chars"], e.data["audio_bytes"], e.data.get("duration")))
    emitter.subscribe(EVENT_CHAPTER_FAILED, lambda e: storyteller_logger.chapter_failed(
        e.story_id, e.data["error"]))
    emitter.subscribe(EVENT_CHOICE_RESOLVED, lambda e: storyteller_logger.choice_resolved(
        e.data["chapter_id"], e.data["choice"], e.data.get("path", "manual")))

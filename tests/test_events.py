"""
Unit tests for the story event emitter
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from eternal_storyteller.services.events import (
    EventEmitter,
    EVENT_CHAPTER_FAILED,
    EVENT_CHAPTER_READY,
    EVENT_STORY_CREATED,
    log_events,
)


class TestEventEmitter:
    """Listener registration and delivery"""

    def setup_method(self):
        self.emitter = EventEmitter()
        self.received = []

    async def test_sync_and_async_listeners(self):
        async def async_listener(event):
            self.received.append(("async", event.kind))

        self.emitter.subscribe(EVENT_CHAPTER_READY, lambda event: self.received.append(("sync", event.kind)))
        self.emitter.subscribe(EVENT_CHAPTER_READY, async_listener)

        event = await self.emitter.emit(EVENT_CHAPTER_READY, 4, chapter_id=9)

        assert self.received == [("sync", "chapter_ready"), ("async", "chapter_ready")]
        assert event.story_id == 4
        assert event.data == {"chapter_id": 9}

    async def test_failing_listener_does_not_block_others(self):
        def broken(event):
            raise RuntimeError("listener bug")

        self.emitter.subscribe(EVENT_STORY_CREATED, broken)
        self.emitter.subscribe(EVENT_STORY_CREATED, self.received.append)

        await self.emitter.emit(EVENT_STORY_CREATED, 1)
        assert len(self.received) == 1

    async def test_unsubscribe(self):
        unsubscribe = self.emitter.subscribe(EVENT_STORY_CREATED, self.received.append)
        unsubscribe()
        unsubscribe()
        await self.emitter.emit(EVENT_STORY_CREATED, 1)
        assert self.received == []

    async def test_log_events_reports_failures(self):
        failures = []

        class FailureLogger:
            def chapter_failed(self, story_id, error):
                failures.append((story_id, error))

        log_events(self.emitter, FailureLogger())
        await self.emitter.emit(EVENT_CHAPTER_FAILED, 3, chapter_index=1, error="quota", timed_out=False)
        assert failures == [(3, "quota")]

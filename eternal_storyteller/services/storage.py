"""
Chapter Store for Eternal Storyteller

Persists story and chapter records keyed by integer ids assigned
monotonically at creation. ``StorageService`` is the interface the rest of
the application depends on; two backends implement it:

- MemoryStorage: process-lifetime maps (the default)
- SQLiteStorage: a single SQLite file, for keeping stories across restarts

Both backends share the update rules defined on the base class:
- ``current_chapter_index`` never decreases
- ``id``/``created_at`` are never rewritten
- a chapter's ``resolved_choice_text`` is written at most once
"""

import asyncio
import json
import sqlite3
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from datetime import datetime
from typing import Optional, Dict, Any, List

from eternal_storyteller.errors import ChoiceAlreadyResolved
from eternal_storyteller.models import Story, Chapter, ChapterCreate

STORY_IMMUTABLE_FIELDS = {"id", "created_at"}
CHAPTER_MUTABLE_FIELDS = {"resolved_choice_text"}


class StorageService(ABC):
    """Abstract Chapter Store; lookups of unknown ids return None"""

    def __init__(self, storyteller_logger=None):
        self.storyteller_logger = storyteller_logger

    # ===== Story Operations =====

    @abstractmethod
    async def create_story(self, genre: str, voice_id: str, title: str) -> Story:
        ...

    @abstractmethod
    async def get_story(self, story_id: int) -> Optional[Story]:
        ...

    @abstractmethod
    async def list_stories(self) -> List[Story]:
        ...

    @abstractmethod
    async def update_story(self, story_id: int, updates: Dict[str, Any]) -> Optional[Story]:
        ...

    # ===== Chapter Operations =====

    @abstractmethod
    async def create_chapter(self, chapter: ChapterCreate) -> Chapter:
        ...

    @abstractmethod
    async def get_chapter(self, chapter_id: int) -> Optional[Chapter]:
        ...

    @abstractmethod
    async def list_chapters_by_story(self, story_id: int) -> List[Chapter]:
        """Chapters of a story ordered by chapter index"""

    @abstractmethod
    async def update_chapter(self, chapter_id: int, updates: Dict[str, Any]) -> Optional[Chapter]:
        ...

    # ===== Shared update rules =====

    @staticmethod
    def apply_story_update(story: Story, updates: Dict[str, Any]) -> Story:
        """Return a new Story with ``updates`` applied, enforcing invariants."""
        illegal = STORY_IMMUTABLE_FIELDS.intersection(updates)
        if illegal:
            raise ValueError(f"Cannot update story fields: {sorted(illegal)}")

        new_index = updates.get("current_chapter_index")
        if new_index is not None and new_index < story.current_chapter_index:
            raise ValueError(
                f"current_chapter_index cannot decrease ({story.current_chapter_index} -> {new_index})"
            )

        merged = story.model_dump()
        merged.update(updates)
        return Story.model_validate(merged)

    @staticmethod
    def apply_chapter_update(chapter: Chapter, updates: Dict[str, Any]) -> Chapter:
        """Return a new Chapter with ``updates`` applied, enforcing invariants."""
        illegal = set(updates) - CHAPTER_MUTABLE_FIELDS
        if illegal:
            raise ValueError(f"Cannot update chapter fields: {sorted(illegal)}")

        resolved = updates.get("resolved_choice_text")
        if resolved is not None and chapter.resolved_choice_text is not None:
            if resolved == chapter.resolved_choice_text:
                return chapter
            raise ChoiceAlreadyResolved(chapter.id, chapter.resolved_choice_text)

        merged = chapter.model_dump()
        merged.update(updates)
        return Chapter.model_validate(merged)

    def _log(self, operation: str, path: str, summary: str = "", started: Optional[float] = None):
        if self.storyteller_logger:
            duration = time.monotonic() - started if started is not None else None
            self.storyteller_logger.storage_operation(operation, path, summary, duration)


class MemoryStorage(StorageService):
    """In-memory store; records live for the lifetime of the process"""

    def __init__(self, storyteller_logger=None):
        super().__init__(storyteller_logger=storyteller_logger)
        self._stories: Dict[int, Story] = {}
        self._chapters: Dict[int, Chapter] = {}
        self._next_story_id = 1
        self._next_chapter_id = 1

    async def create_story(self, genre: str, voice_id: str, title: str) -> Story:
        story = Story(id=self._next_story_id, genre=genre, voice_id=voice_id, title=title)
        self._next_story_id += 1
        self._stories[story.id] = story
        self._log("create", f"stories/{story.id}", f"{genre}/{voice_id}: {title}")
        return story

    async def get_story(self, story_id: int) -> Optional[Story]:
        return self._stories.get(story_id)

    async def list_stories(self) -> List[Story]:
        return [self._stories[key] for key in sorted(self._stories)]

    async def update_story(self, story_id: int, updates: Dict[str, Any]) -> Optional[Story]:
        story = self._stories.get(story_id)
        if story is None:
            return None
        updated = self.apply_story_update(story, updates)
        self._stories[story_id] = updated
        self._log("update", f"stories/{story_id}", ", ".join(updates))
        return updated

    async def create_chapter(self, chapter: ChapterCreate) -> Chapter:
        created = Chapter(id=self._next_chapter_id, **chapter.model_dump())
        self._next_chapter_id += 1
        self._chapters[created.id] = created
        self._log("create", f"chapters/{created.id}", f"story {created.story_id} #{created.chapter_index}")
        return created

    async def get_chapter(self, chapter_id: int) -> Optional[Chapter]:
        return self._chapters.get(chapter_id)

    async def list_chapters_by_story(self, story_id: int) -> List[Chapter]:
        chapters = [ch for ch in self._chapters.values() if ch.story_id == story_id]
        return sorted(chapters, key=lambda ch: (ch.chapter_index, ch.id))

    async def update_chapter(self, chapter_id: int, updates: Dict[str, Any]) -> Optional[Chapter]:
        chapter = self._chapters.get(chapter_id)
        if chapter is None:
            return None
        updated = self.apply_chapter_update(chapter, updates)
        self._chapters[chapter_id] = updated
        self._log("update", f"chapters/{chapter_id}", ", ".join(updates))
        return updated


class SQLiteStorage(StorageService):
    """SQLite-backed store; blocking calls run in a small thread pool"""

    def __init__(self, path: str = "storyteller.db", storyteller_logger=None):
        super().__init__(storyteller_logger=storyteller_logger)
        self.path = path
        self._executor = ThreadPoolExecutor(max_workers=1)
        self._initialized = False

    def initialize(self):
        """Create tables if needed."""
        if self._initialized:
            return

        with closing(self._get_connection()) as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS stories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    genre TEXT NOT NULL,
                    voice_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    current_chapter_index INTEGER NOT NULL DEFAULT 1,
                    state_blob TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL
                )
            ''')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS chapters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    story_id INTEGER NOT NULL,
                    chapter_index INTEGER NOT NULL,
                    text TEXT NOT NULL,
                    audio_ref TEXT,
                    choices TEXT NOT NULL,
                    resolved_choice_text TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (story_id) REFERENCES stories(id)
                )
            ''')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_chapters_story ON chapters(story_id, chapter_index)')
            conn.commit()

        self._initialized = True

    def close(self):
        self._executor.shutdown(wait=True)

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        return conn

    async def _run_async(self, func, *args, **kwargs):
        """Run a sync function in the thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor,
            lambda: func(*args, **kwargs)
        )

    # ===== Row conversion =====

    @staticmethod
    def _row_to_story(row: sqlite3.Row) -> Story:
        return Story(
            id=row["id"],
            genre=row["genre"],
            voice_id=row["voice_id"],
            title=row["title"],
            current_chapter_index=row["current_chapter_index"],
            state_blob=json.loads(row["state_blob"] or "{}"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_chapter(row: sqlite3.Row) -> Chapter:
        return Chapter(
            id=row["id"],
            story_id=row["story_id"],
            chapter_index=row["chapter_index"],
            text=row["text"],
            audio_ref=row["audio_ref"],
            choices=json.loads(row["choices"]),
            resolved_choice_text=row["resolved_choice_text"],
            created_at=row["created_at"],
        )

    # ===== Story Operations =====

    def _create_story_sync(self, genre: str, voice_id: str, title: str) -> Story:
        created_at = datetime.now().isoformat()
        with closing(self._get_connection()) as conn:
            cursor = conn.execute(
                'INSERT INTO stories (genre, voice_id, title, created_at) VALUES (?, ?, ?, ?)',
                (genre, voice_id, title, created_at)
            )
            conn.commit()
            story_id = cursor.lastrowid
        return Story(id=story_id, genre=genre, voice_id=voice_id, title=title, created_at=created_at)

    async def create_story(self, genre: str, voice_id: str, title: str) -> Story:
        started = time.monotonic()
        story = await self._run_async(self._create_story_sync, genre, voice_id, title)
        self._log("create", f"stories/{story.id}", f"{genre}/{voice_id}: {title}", started)
        return story

    def _get_story_sync(self, story_id: int) -> Optional[Story]:
        with closing(self._get_connection()) as conn:
            row = conn.execute('SELECT * FROM stories WHERE id = ?', (story_id,)).fetchone()
        return self._row_to_story(row) if row else None

    async def get_story(self, story_id: int) -> Optional[Story]:
        return await self._run_async(self._get_story_sync, story_id)

    def _list_stories_sync(self) -> List[Story]:
        with closing(self._get_connection()) as conn:
            rows = conn.execute('SELECT * FROM stories ORDER BY id').fetchall()
        return [self._row_to_story(row) for row in rows]

    async def list_stories(self) -> List[Story]:
        return await self._run_async(self._list_stories_sync)

    def _update_story_sync(self, story_id: int, updates: Dict[str, Any]) -> Optional[Story]:
        with closing(self._get_connection()) as conn:
            row = conn.execute('SELECT * FROM stories WHERE id = ?', (story_id,)).fetchone()
            if not row:
                return None
            updated = self.apply_story_update(self._row_to_story(row), updates)
            conn.execute('''
                UPDATE stories
                SET genre = ?, voice_id = ?, title = ?, current_chapter_index = ?, state_blob = ?
                WHERE id = ?
            ''', (
                updated.genre,
                updated.voice_id,
                updated.title,
                updated.current_chapter_index,
                json.dumps(updated.state_blob),
                story_id
            ))
            conn.commit()
        return updated

    async def update_story(self, story_id: int, updates: Dict[str, Any]) -> Optional[Story]:
        started = time.monotonic()
        story = await self._run_async(self._update_story_sync, story_id, updates)
        self._log("update", f"stories/{story_id}", ", ".join(updates), started)
        return story

    # ===== Chapter Operations =====

    def _create_chapter_sync(self, chapter: ChapterCreate) -> Chapter:
        created_at = datetime.now().isoformat()
        choices_json = json.dumps([choice.model_dump() for choice in chapter.choices])
        with closing(self._get_connection()) as conn:
            cursor = conn.execute('''
                INSERT INTO chapters (story_id, chapter_index, text, audio_ref, choices, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (
                chapter.story_id,
                chapter.chapter_index,
                chapter.text,
                chapter.audio_ref,
                choices_json,
                created_at
            ))
            conn.commit()
            chapter_id = cursor.lastrowid
        return Chapter(id=chapter_id, created_at=created_at, **chapter.model_dump())

    async def create_chapter(self, chapter: ChapterCreate) -> Chapter:
        started = time.monotonic()
        created = await self._run_async(self._create_chapter_sync, chapter)
        self._log("create", f"chapters/{created.id}", f"story {created.story_id} #{created.chapter_index}", started)
        return created

    def _get_chapter_sync(self, chapter_id: int) -> Optional[Chapter]:
        with closing(self._get_connection()) as conn:
            row = conn.execute('SELECT * FROM chapters WHERE id = ?', (chapter_id,)).fetchone()
        return self._row_to_chapter(row) if row else None

    async def get_chapter(self, chapter_id: int) -> Optional[Chapter]:
        return await self._run_async(self._get_chapter_sync, chapter_id)

    def _list_chapters_sync(self, story_id: int) -> List[Chapter]:
        with closing(self._get_connection()) as conn:
            rows = conn.execute(
                'SELECT * FROM chapters WHERE story_id = ? ORDER BY chapter_index, id',
                (story_id,)
            ).fetchall()
        return [self._row_to_chapter(row) for row in rows]

    async def list_chapters_by_story(self, story_id: int) -> List[Chapter]:
        return await self._run_async(self._list_chapters_sync, story_id)

    def _update_chapter_sync(self, chapter_id: int, updates: Dict[str, Any]) -> Optional[Chapter]:
        with closing(self._get_connection()) as conn:
            row = conn.execute('SELECT * FROM chapters WHERE id = ?', (chapter_id,)).fetchone()
            if not row:
                return None
            updated = self.apply_chapter_update(self._row_to_chapter(row), updates)
            conn.execute(
                'UPDATE chapters SET resolved_choice_text = ? WHERE id = ?',
                (updated.resolved_choice_text, chapter_id)
            )
            conn.commit()
        return updated

    async def update_chapter(self, chapter_id: int, updates: Dict[str, Any]) -> Optional[Chapter]:
        started = time.monotonic()
        chapter = await self._run_async(self._update_chapter_sync, chapter_id, updates)
        self._log("update", f"chapters/{chapter_id}", ", ".join(updates), started)
        return chapter


def create_storage(settings, storyteller_logger=None) -> StorageService:
    """Build the configured storage backend"""
    if settings.storage_backend == "sqlite":
        storage = SQLiteStorage(path=settings.sqlite_path, storyteller_logger=storyteller_logger)
        storage.initialize()
        return storage
    if settings.storage_backend != "memory":
        raise ValueError(f"Unknown storage backend: {settings.storage_backend}")
    return MemoryStorage(storyteller_logger=storyteller_logger)

"""
Eternal Storyteller Logging System

Clean terminal output for key story events + structured JSONL files for
storage and API call debugging. An instance is created at startup and
injected into services instead of being reached for as global state.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Any, Dict
import json


class StorytellerLogger:
    """
    Two-mode logging system:
    - Terminal: timestamped key events via the standard logging tree
    - Debug files: JSONL entries for storage operations and upstream API calls
    """

    def __init__(self, settings=None, name: str = "eternal_storyteller"):
        self.settings = settings
        self._logger = logging.getLogger(name)

        self.storage_log: Optional[Path] = None
        self.api_calls_log: Optional[Path] = None

        if settings and (settings.debug_storage or settings.debug_api_calls):
            debug_log_dir = Path(settings.debug_log_dir)
            debug_log_dir.mkdir(parents=True, exist_ok=True)

            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            if settings.debug_storage:
                self.storage_log = debug_log_dir / f"storage_{timestamp}.jsonl"
            if settings.debug_api_calls:
                self.api_calls_log = debug_log_dir / f"api_calls_{timestamp}.jsonl"

    # ===== Terminal Output Methods =====

    def story_created(self, story_id: int, genre: str, voice_id: str):
        self._logger.info(f"📚 Story {story_id} created ({genre}, voice: {voice_id})")

    def chapter_requested(self, story_id: int, chapter_index: int, previous_choice: Optional[str] = None):
        msg = f"📝 Chapter {chapter_index} requested for story {story_id}"
        if previous_choice:
            msg += f" (after: \"{previous_choice}\")"
        self._logger.info(msg)

    def chapter_ready(self, story_id: int, chapter_id: int, chars: int, audio_bytes: int,
                      duration: Optional[float] = None):
        msg = f"✅ Chapter {chapter_id} ready for story {story_id}: {chars} chars, {audio_bytes} audio bytes"
        if duration:
            msg += f" in {duration:.1f}s"
        self._logger.info(msg)

    def chapter_failed(self, story_id: int, error: str):
        self._logger.error(f"❌ Chapter generation failed for story {story_id}: {error}")

    def choice_resolved(self, chapter_id: int, choice_text: str, path: str = "manual"):
        self._logger.info(f"🔀 Chapter {chapter_id} resolved via {path}: \"{choice_text}\"")

    def error(self, component: str, message: str, error: Exception = None):
        msg = f"⚠️ Error in {component}: {message}"
        if error:
            msg += f" ({type(error).__name__})"
        self._logger.error(msg)

    def info(self, message: str):
        self._logger.info(message)

    def warning(self, message: str):
        self._logger.warning(message)

    def debug(self, component: str, message: str, data: Optional[dict] = None):
        log_msg = f"{component} | {message}"
        if data:
            log_msg += f" | Data: {data}"
        self._logger.debug(log_msg)

    # ===== Debug Logging Methods =====

    def _write_json_log(self, log_file: Path, data: Dict[str, Any]):
        """Write structured JSON log entry"""
        try:
            with open(log_file, "a") as f:
                json.dump(data, f)
                f.write("\n")
        except OSError as e:
            self.error("LOGGER", f"Failed to write JSON log: {e}")

    def _truncate_data(self, data: Any, max_length: int = 500) -> str:
        """Truncate data for display"""
        data_str = str(data)
        if len(data_str) > max_length:
            return data_str[:max_length] + f"... ({len(data_str)} chars total)"
        return data_str

    def storage_operation(self, operation: str, path: str, data_summary: str = "",
                          duration: Optional[float] = None):
        """Log storage write/read operations"""
        if not self.storage_log:
            return

        duration_str = f" in {duration*1000:.0f}ms" if duration else ""
        self._logger.debug(f"💾 Storage {operation.upper()} → {path}{duration_str}")

        self._write_json_log(self.storage_log, {
            "timestamp": datetime.now().isoformat(),
            "type": "storage_operation",
            "operation": operation,
            "path": path,
            "data_summary": self._truncate_data(data_summary, 200),
            "duration_seconds": duration,
        })

    def api_call(self, provider: str, model: str, latency: Optional[float] = None,
                 status: str = "success", detail: str = ""):
        """Log an upstream API call (narration, TTS, transcription)"""
        if not self.api_calls_log:
            return

        latency_str = f" in {latency:.1f}s" if latency else ""
        emoji = "🤖" if status == "success" else "⚠️"
        self._logger.debug(f"{emoji} API {provider}/{model}: {status}{latency_str}")

        self._write_json_log(self.api_calls_log, {
            "timestamp": datetime.now().isoformat(),
            "type": "api_call",
            "provider": provider,
            "model": model,
            "latency_seconds": latency,
            "status": status,
            "detail": self._truncate_data(detail, 300),
        })


def init_logger(settings=None) -> StorytellerLogger:
    """Create the application logger; the caller owns and injects it"""
    return StorytellerLogger(settings=settings)

"""
Configuration management for Eternal Storyteller

Loads environment variables and provides application settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, Dict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Application
    app_name: str = "Eternal Storyteller"
    port: int = 5000
    log_level: str = "INFO"

    # CORS Configuration
    # Default "*" allows all origins; set a comma-separated list for production
    cors_allowed_origins: str = "*"

    # =========================================================================
    # Narration Engine (OpenAI chat completion, JSON mode)
    # =========================================================================
    openai_api_key: Optional[str] = None
    narration_model: str = "gpt-4o"
    narration_temperature: float = 0.8
    narration_max_tokens: int = 2000
    narration_timeout_seconds: float = 60.0
    # A malformed chapter (not exactly two choices, bad JSON) is retried
    # until this many attempts have been made
    narration_max_attempts: int = 2

    # =========================================================================
    # Voice Synthesis (ElevenLabs)
    # =========================================================================
    elevenlabs_api_key: Optional[str] = None
    elevenlabs_model: str = "eleven_multilingual_v2"
    elevenlabs_output_format: str = "mp3_44100_128"
    elevenlabs_voices: Dict[str, str] = {
        "sarah": "EXAVITQu4vr4xnSDxMaL",  # Bella - warm and gentle
        "david": "VR6AewLTigWG4xSOukaG",  # Josh - deep and soothing
        "luna": "pNInz6obpgDQGcFmaJgB",   # Adam - ethereal and dreamy
    }
    default_voice: str = "sarah"
    tts_stability: float = 0.75
    tts_similarity_boost: float = 0.75
    tts_style: float = 0.25
    # TTS timeout scales with text length, capped here
    tts_timeout_cap_seconds: float = 120.0

    # =========================================================================
    # Speech Transcription (OpenAI Whisper)
    # =========================================================================
    transcription_model: str = "whisper-1"
    transcription_language: str = "en"
    transcription_timeout_seconds: float = 30.0
    max_upload_bytes: int = 25 * 1024 * 1024

    # =========================================================================
    # Chapter Store
    # "memory" keeps records for the process lifetime, "sqlite" persists them
    # =========================================================================
    storage_backend: str = "memory"
    sqlite_path: str = "storyteller.db"

    # Background music tracks served under /music
    music_dir: str = "music"

    # =========================================================================
    # Choice Resolution defaults (player side)
    # =========================================================================
    choice_timeout_seconds: int = 45
    voice_window_seconds: float = 5.0
    sleep_timeout_seconds: float = 60.0
    choice_end_delay_seconds: float = 1.0
    speech_rms_threshold: float = 0.02
    speech_peak_threshold: float = 0.1
    speech_peak_ratio: float = 0.01
    speech_min_duration_seconds: float = 0.3

    # Background ambience defaults
    ambience_volume: int = 30
    ambience_coupled: bool = True

    # Debug Configuration
    debug_storage: bool = False
    debug_api_calls: bool = False
    debug_log_dir: str = "logs/debug"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Using lru_cache ensures we only load settings once.
    """
    return Settings()

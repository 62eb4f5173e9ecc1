"""
Voice Processing Service

Handles text-to-speech for chapter narration and speech-to-text for spoken
choices.

Providers:
- ElevenLabs (narration) - eleven_multilingual_v2, MP3 output
- OpenAI Whisper (transcription) - whisper-1, English

Both SDK clients are synchronous; calls run in a thread pool and are
bounded by asyncio timeouts.
"""

import asyncio
import base64
import logging
import os
import re
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, List

from elevenlabs import ElevenLabs, VoiceSettings
from openai import OpenAI

from eternal_storyteller.errors import UpstreamGenerationFailure, TranscriptionFailure
from eternal_storyteller.models import Voice, VOICES

logger = logging.getLogger(__name__)

AUDIO_DATA_URL_PREFIX = "data:audio/mpeg;base64,"


class VoiceService:
    """
    Voice processing service for speech-to-text and text-to-speech.

    Clients are created lazily from settings unless injected, so the
    service can be constructed without API keys.
    """

    def __init__(
        self,
        settings,
        elevenlabs_client: Optional[ElevenLabs] = None,
        openai_client: Optional[OpenAI] = None,
        storyteller_logger=None,
    ):
        self.settings = settings
        self.executor = ThreadPoolExecutor(max_workers=4)
        self._elevenlabs_client = elevenlabs_client
        self._openai_client = openai_client
        self._storyteller_logger = storyteller_logger

    @property
    def elevenlabs_client(self) -> ElevenLabs:
        if self._elevenlabs_client is None:
            if not self.settings.elevenlabs_api_key:
                raise UpstreamGenerationFailure("elevenlabs", "ELEVENLABS_API_KEY not set")
            self._elevenlabs_client = ElevenLabs(api_key=self.settings.elevenlabs_api_key)
        return self._elevenlabs_client

    @property
    def openai_client(self) -> OpenAI:
        if self._openai_client is None:
            if not self.settings.openai_api_key:
                raise TranscriptionFailure("OPENAI_API_KEY not set")
            self._openai_client = OpenAI(api_key=self.settings.openai_api_key)
        return self._openai_client

    # ===== Voice catalogue =====

    def list_voices(self) -> List[Voice]:
        return list(VOICES)

    def resolve_voice_id(self, voice: str) -> str:
        """
        Map a catalogue voice id (sarah/david/luna) to an ElevenLabs voice id.

        Unknown ids fall back to the default voice.
        """
        voices = self.settings.elevenlabs_voices
        voice_id = voices.get((voice or "").lower())
        if voice_id:
            return voice_id
        logger.warning(f"⚠️ Unknown voice '{voice}', using {self.settings.default_voice}")
        return voices[self.settings.default_voice]

    def tts_timeout(self, text: str) -> float:
        """TTS timeout scales with text length: 30s + 15s per 1000 chars, 60s floor, capped"""
        scaled = 30 + len(text) / 1000 * 15
        return min(self.settings.tts_timeout_cap_seconds, max(60.0, scaled))

    # ===== Text-to-speech =====

    async def text_to_speech(self, text: str, voice: str) -> bytes:
        """
        Convert chapter text to MP3 audio.

        Args:
            text: Plain chapter text
            voice: Catalogue voice id (sarah/david/luna)

        Returns:
            MP3 bytes

        Raises:
            UpstreamGenerationFailure: synthesis failed, returned nothing or timed out
        """
        # Control characters break sentence detection in the TTS model
        text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f]', '', text)
        voice_id = self.resolve_voice_id(voice)
        timeout = self.tts_timeout(text)
        logger.info(f"🎵 TTS timeout set to {timeout:.0f}s for {len(text)} chars")

        loop = asyncio.get_running_loop()
        started = time.monotonic()
        try:
            audio_bytes = await asyncio.wait_for(
                loop.run_in_executor(
                    self.executor,
                    self._do_text_to_speech_elevenlabs,
                    text,
                    voice_id
                ),
                timeout=timeout
            )
        except asyncio.TimeoutError as e:
            self._api_call("elevenlabs", self.settings.elevenlabs_model, started, "timeout")
            logger.error(f"❌ ElevenLabs TTS timed out after {timeout:.0f}s")
            raise UpstreamGenerationFailure("elevenlabs", f"timed out after {timeout:.0f}s", timed_out=True) from e
        except UpstreamGenerationFailure:
            raise
        except Exception as e:
            self._api_call("elevenlabs", self.settings.elevenlabs_model, started, "error", str(e))
            logger.error(f"❌ ElevenLabs narration failed: {e}")
            raise UpstreamGenerationFailure("elevenlabs", str(e)) from e

        if not audio_bytes:
            raise UpstreamGenerationFailure("elevenlabs", "empty audio response")

        self._api_call("elevenlabs", self.settings.elevenlabs_model, started, "success")
        return audio_bytes

    def _do_text_to_speech_elevenlabs(self, text: str, voice_id: str) -> bytes:
        """Synchronous ElevenLabs TTS (runs in thread pool)"""
        logger.info(f"🎵 ElevenLabs TTS: {len(text)} chars, voice={voice_id}")

        audio_generator = self.elevenlabs_client.text_to_speech.convert(
            voice_id=voice_id,
            text=text,
            model_id=self.settings.elevenlabs_model,
            output_format=self.settings.elevenlabs_output_format,
            voice_settings=VoiceSettings(
                stability=self.settings.tts_stability,
                similarity_boost=self.settings.tts_similarity_boost,
                style=self.settings.tts_style,
                use_speaker_boost=True,
            ),
        )

        # Convert generator to bytes
        audio_bytes = b"".join(audio_generator)

        logger.info(f"✅ ElevenLabs generated {len(audio_bytes)} bytes of audio")
        return audio_bytes

    # ===== Speech-to-text =====

    async def speech_to_text(self, audio_data: bytes, filename: str = "audio.webm") -> str:
        """
        Transcribe a recorded clip.

        Args:
            audio_data: Encoded audio (webm, wav, mp3...)
            filename: Original name; its extension tells Whisper the format

        Returns:
            Transcribed text (may be empty)

        Raises:
            TranscriptionFailure: transcription failed or timed out
        """
        if not audio_data:
            raise TranscriptionFailure("No audio data provided")

        timeout = self.settings.transcription_timeout_seconds
        loop = asyncio.get_running_loop()
        started = time.monotonic()
        try:
            text = await asyncio.wait_for(
                loop.run_in_executor(
                    self.executor,
                    self._do_speech_recognition_openai,
                    audio_data,
                    filename
                ),
                timeout=timeout
            )
        except asyncio.TimeoutError as e:
            self._api_call("openai", self.settings.transcription_model, started, "timeout")
            logger.error(f"❌ Transcription timed out after {timeout:.0f}s")
            raise TranscriptionFailure(f"Transcription timed out after {timeout:.0f}s") from e
        except TranscriptionFailure:
            raise
        except Exception as e:
            self._api_call("openai", self.settings.transcription_model, started, "error", str(e))
            logger.error(f"❌ Speech-to-text error: {e}")
            raise TranscriptionFailure(f"Failed to transcribe audio: {e}") from e

        self._api_call("openai", self.settings.transcription_model, started, "success", text)
        logger.info(f"🎤 Transcribed: \"{text}\"")
        return text

    def _do_speech_recognition_openai(self, audio_data: bytes, filename: str) -> str:
        """Synchronous OpenAI Whisper speech recognition (runs in thread pool)"""
        suffix = os.path.splitext(filename)[1] or ".webm"

        # Whisper expects a named audio file
        with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as temp_audio:
            temp_audio.write(audio_data)
            temp_audio_path = temp_audio.name

        try:
            with open(temp_audio_path, "rb") as audio_file:
                transcript = self.openai_client.audio.transcriptions.create(
                    model=self.settings.transcription_model,
                    file=audio_file,
                    language=self.settings.transcription_language
                )
                return (transcript.text or "").strip()
        finally:
            if os.path.exists(temp_audio_path):
                os.unlink(temp_audio_path)

    # ===== Encoding helpers =====

    def encode_audio_data_url(self, audio_bytes: bytes) -> str:
        """Encode MP3 bytes as a data URL stored in Chapter.audio_ref"""
        return AUDIO_DATA_URL_PREFIX + base64.b64encode(audio_bytes).decode("utf-8")

    @staticmethod
    def decode_audio_data_url(audio_ref: str) -> bytes:
        """Decode a data URL (or bare base64 string) back to audio bytes"""
        if audio_ref.startswith("data:"):
            audio_ref = audio_ref.split(",", 1)[1]
        return base64.b64decode(audio_ref)

    def _api_call(self, provider: str, model: str, started: float, status: str, detail: str = ""):
        if self._storyteller_logger:
            self._storyteller_logger.api_call(provider, model, time.monotonic() - started, status, detail)

    def close(self):
        self.executor.shutdown(wait=False)

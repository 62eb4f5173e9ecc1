"""
Unit tests for the Voice Service

ElevenLabs and Whisper are replaced with fakes that mimic the SDK calls.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from eternal_storyteller.errors import TranscriptionFailure, UpstreamGenerationFailure
from eternal_storyteller.services.voice import VoiceService

from fakes import FakeElevenLabs, FakeWhisperClient, make_settings


class TestVoiceCatalogue:
    """Voice ids and timeouts"""

    def setup_method(self):
        self.service = VoiceService(make_settings())

    def teardown_method(self):
        self.service.close()

    def test_three_voices(self):
        assert [v.id for v in self.service.list_voices()] == ["sarah", "david", "luna"]

    def test_resolve_known_voice(self):
        assert self.service.resolve_voice_id("david") == "VR6AewLTigWG4xSOukaG"
        assert self.service.resolve_voice_id("LUNA") == "pNInz6obpgDQGcFmaJgB"

    def test_unknown_voice_falls_back_to_default(self):
        assert self.service.resolve_voice_id("bob") == "EXAVITQu4vr4xnSDxMaL"

    def test_tts_timeout_bounds(self):
        assert self.service.tts_timeout("short") == 60.0
        assert self.service.tts_timeout("x" * 4000) == 90.0
        assert self.service.tts_timeout("x" * 100000) == 120.0

    def test_data_url_encoding(self):
        url = self.service.encode_audio_data_url(b"ID3abc")
        assert url.startswith("data:audio/mpeg;base64,")
        assert VoiceService.decode_audio_data_url(url) == b"ID3abc"


class TestTextToSpeech:
    """Narration synthesis through the ElevenLabs fake"""

    def setup_method(self):
        self.elevenlabs = FakeElevenLabs()
        self.service = VoiceService(make_settings(), elevenlabs_client=self.elevenlabs)

    def teardown_method(self):
        self.service.close()

    async def test_returns_joined_audio(self):
        audio = await self.service.text_to_speech("Once upon a time\x07.", "sarah")

        assert audio == b"ID3fake-mp3-frames"
        call = self.elevenlabs.calls[0]
        assert call["voice_id"] == "EXAVITQu4vr4xnSDxMaL"
        assert call["text"] == "Once upon a time."
        assert call["model_id"] == "eleven_multilingual_v2"

    async def test_provider_error(self):
        self.elevenlabs.error = RuntimeError("quota exceeded")
        with pytest.raises(UpstreamGenerationFailure) as exc_info:
            await self.service.text_to_speech("Hush.", "sarah")
        assert exc_info.value.provider == "elevenlabs"
        assert not exc_info.value.timed_out

    async def test_missing_api_key(self):
        service = VoiceService(make_settings(elevenlabs_api_key=None))
        with pytest.raises(UpstreamGenerationFailure):
            await service.text_to_speech("Hush.", "sarah")
        service.close()


class TestSpeechToText:
    """Choice transcription through the Whisper fake"""

    def setup_method(self):
        self.whisper = FakeWhisperClient(texts=["  I choose option one "])
        self.service = VoiceService(make_settings(), openai_client=self.whisper)

    def teardown_method(self):
        self.service.close()

    async def test_transcribes(self):
        text = await self.service.speech_to_text(b"RIFFdata", "choice.wav")

        assert text == "I choose option one"
        call = self.whisper.calls[0]
        assert call["model"] == "whisper-1"
        assert call["language"] == "en"
        assert call["name"].endswith(".wav")
        assert call["data"] == b"RIFFdata"

    async def test_empty_audio(self):
        with pytest.raises(TranscriptionFailure):
            await self.service.speech_to_text(b"")
        assert self.whisper.calls == []

    async def test_provider_error(self):
        self.whisper.error = RuntimeError("bad audio")
        with pytest.raises(TranscriptionFailure):
            await self.service.speech_to_text(b"RIFFdata", "choice.wav")

"""
Unit tests for the Narration Engine

Uses a fake AsyncOpenAI client; checks reply validation, contract retries,
timeouts and the prompts sent for opening and continuing chapters.
"""

import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from eternal_storyteller.errors import ContractViolation, UpstreamGenerationFailure
from eternal_storyteller.models import NarrationRequest
from eternal_storyteller.services.narration import NarrationEngine, build_user_prompt, parse_chapter

from fakes import FakeAsyncOpenAI, chapter_json, make_settings


class TestParseChapter:
    """Reply validation"""

    def test_content_key(self):
        chapter = parse_chapter(chapter_json("Stars hummed above the meadow."))
        assert chapter.text == "Stars hummed above the meadow."
        assert [c.id for c in chapter.choices] == ["choice_1", "choice_2"]

    def test_text_key_accepted(self):
        raw = json.dumps({"text": "Hush.", "choices": [{"id": "a", "text": "x"}, {"id": "b", "text": "y"}]})
        assert parse_chapter(raw).text == "Hush."

    @pytest.mark.parametrize("raw", [
        None,
        "",
        "not json",
        "[1, 2]",
        json.dumps({"content": "", "choices": [{"id": "a", "text": "x"}, {"id": "b", "text": "y"}]}),
        json.dumps({"content": "Hush.", "choices": [{"id": "a", "text": "only one"}]}),
        json.dumps({"content": "Hush."}),
    ])
    def test_contract_violations(self, raw):
        with pytest.raises(ContractViolation) as exc_info:
            parse_chapter(raw)
        assert exc_info.value.status_code == 502


class TestPrompts:
    """User prompt for opening and continuing chapters"""

    def test_opening_chapter(self):
        prompt = build_user_prompt(NarrationRequest(genre="fantasy", chapter_index=1))
        assert "chapter 1 of a fantasy bedtime story" in prompt
        assert "opening chapter" in prompt

    def test_continuation_includes_choice_and_state(self):
        prompt = build_user_prompt(NarrationRequest(
            genre="mystery",
            chapter_index=3,
            previous_choice_text="Open the blue door",
            prior_state={"history": ["Follow the owl"]},
        ))
        assert "chapter 3" in prompt
        assert "\"Open the blue door\"" in prompt
        assert "Follow the owl" in prompt
        assert "opening chapter" not in prompt


class TestNarrationEngine:
    """Calls through a fake OpenAI client"""

    def setup_method(self):
        self.settings = make_settings(narration_timeout_seconds=0.2, narration_max_attempts=2)

    async def test_generate_uses_json_mode(self):
        client = FakeAsyncOpenAI()
        engine = NarrationEngine(self.settings, client=client)

        chapter = await engine.generate(NarrationRequest(genre="fantasy", chapter_index=1))

        assert chapter.text.startswith("Once upon a time")
        call = client.calls[0]
        assert call["model"] == "gpt-4o"
        assert call["response_format"] == {"type": "json_object"}
        assert call["messages"][0]["role"] == "system"
        assert "exactly 2" in call["messages"][0]["content"]

    async def test_retries_contract_violation(self):
        client = FakeAsyncOpenAI(replies=["{broken", chapter_json("Second try.")])
        engine = NarrationEngine(self.settings, client=client)

        chapter = await engine.generate(NarrationRequest(genre="fantasy", chapter_index=1))

        assert chapter.text == "Second try."
        assert len(client.calls) == 2

    async def test_gives_up_after_max_attempts(self):
        client = FakeAsyncOpenAI(replies=[json.dumps({"content": "x", "choices": []})])
        engine = NarrationEngine(self.settings, client=client)

        with pytest.raises(ContractViolation):
            await engine.generate(NarrationRequest(genre="fantasy", chapter_index=1))
        assert len(client.calls) == 2

    async def test_timeout_is_reported(self):
        engine = NarrationEngine(self.settings, client=FakeAsyncOpenAI(delay=1.0))

        with pytest.raises(UpstreamGenerationFailure) as exc_info:
            await engine.generate(NarrationRequest(genre="fantasy", chapter_index=1))
        assert exc_info.value.timed_out
        assert exc_info.value.status_code == 504

    async def test_client_error_not_retried(self):
        client = FakeAsyncOpenAI(error=RuntimeError("rate limited"))
        engine = NarrationEngine(self.settings, client=client)

        with pytest.raises(UpstreamGenerationFailure) as exc_info:
            await engine.generate(NarrationRequest(genre="fantasy", chapter_index=1))
        assert not exc_info.value.timed_out
        assert "rate limited" in str(exc_info.value)
        assert len(client.calls) == 1

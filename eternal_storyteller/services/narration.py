"""
Narration Engine - chapter text and choices from an LLM

Calls OpenAI chat completion in JSON mode with the bedtime storyteller
prompt and validates the reply into a GeneratedChapter. Replies that break
the output contract (bad JSON, wrong number of choices, empty text) are
retried up to ``narration_max_attempts`` times.

Usage:
    engine = NarrationEngine(settings)
    chapter = await engine.generate(NarrationRequest(genre="fantasy", chapter_index=1))
"""

import asyncio
import json
import logging
import time
from typing import Optional, Dict, Any, List

from openai import AsyncOpenAI
from pydantic import ValidationError

from eternal_storyteller.errors import ContractViolation, UpstreamGenerationFailure
from eternal_storyteller.models import GeneratedChapter, NarrationRequest

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are a master storyteller specializing in bedtime stories. Create soothing, immersive narratives that help listeners drift off to sleep.

Guidelines:
- Write in a gentle, calming tone perfect for bedtime
- Create vivid but peaceful imagery
- Use approximately 2000-2500 characters for the chapter content
- Always end with exactly 2 meaningful choices that advance the story
- Make choices feel consequential but not stressful
- Focus on wonder, exploration, and gentle adventure
- Avoid any scary, violent, or overly exciting content

Respond with JSON in this exact format:
{
  "content": "The story chapter text here...",
  "choices": [
    {
      "id": "choice_1",
      "text": "Short choice description",
      "description": "Longer description of what this choice leads to"
    },
    {
      "id": "choice_2",
      "text": "Short choice description",
      "description": "Longer description of what this choice leads to"
    }
  ]
}"""


def build_user_prompt(request: NarrationRequest) -> str:
    """Build the per-chapter user message"""
    prompt = f"Generate chapter {request.chapter_index} of a {request.genre} bedtime story."

    if request.chapter_index == 1 or not request.previous_choice_text:
        prompt += (
            f" This is the opening chapter. Set a peaceful, dreamy scene that draws "
            f"the listener into a magical {request.genre} world."
        )
    else:
        prompt += (
            f" Continue the story based on the previous choice: \"{request.previous_choice_text}\"."
            f" Story context: {json.dumps(request.prior_state)}"
        )

    return prompt


def parse_chapter(raw: Optional[str]) -> GeneratedChapter:
    """
    Validate a raw JSON reply into a GeneratedChapter.

    The model writes the chapter under ``content``; ``text`` is accepted too.

    Raises:
        ContractViolation: if the reply is not a valid chapter
    """
    if not raw:
        raise ContractViolation("Empty response from narration model", raw=raw)

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ContractViolation(f"Response is not valid JSON: {e}", raw=raw) from e

    if not isinstance(payload, dict):
        raise ContractViolation("Response JSON is not an object", raw=raw)

    text = payload.get("content") or payload.get("text")
    choices: List[Dict[str, Any]] = payload.get("choices") or []

    try:
        return GeneratedChapter(text=(text or "").strip(), choices=choices)
    except ValidationError as e:
        raise ContractViolation(f"Chapter failed validation: {e.errors()[0]['msg']}", raw=raw) from e


class NarrationEngine:
    """
    Generates chapters with OpenAI chat completion (JSON mode).

    Attributes:
        model: Chat model name (default gpt-4o)
        timeout: Seconds before a call is abandoned
        max_attempts: Attempts made when the reply breaks the chapter contract
    """

    def __init__(self, settings, client: Optional[AsyncOpenAI] = None, storyteller_logger=None):
        self.settings = settings
        self.model = settings.narration_model
        self.temperature = settings.narration_temperature
        self.max_tokens = settings.narration_max_tokens
        self.timeout = settings.narration_timeout_seconds
        self.max_attempts = max(1, settings.narration_max_attempts)
        self._client = client
        self._storyteller_logger = storyteller_logger

    @property
    def client(self) -> AsyncOpenAI:
        # Created on first use so the app can start without an API key
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.settings.openai_api_key)
        return self._client

    async def chat_completion(self, messages: List[Dict[str, str]]) -> str:
        """Send one JSON-mode chat completion and return the message content"""
        system_msg = next((m["content"] for m in messages if m.get("role") == "system"), "")
        user_msg = next((m["content"] for m in messages if m.get("role") == "user"), "")
        logger.info(f"🔷 Narration request: model={self.model}, temp={self.temperature}, max_tokens={self.max_tokens}")
        logger.debug(f"   📝 System: {system_msg[:100]}...")
        logger.info(f"   💬 Context: {user_msg[:150]}...")

        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    response_format={"type": "json_object"},
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                ),
                timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            self._api_call(time.monotonic() - started, "timeout")
            logger.error(f"❌ Narration timed out after {self.timeout}s")
            raise UpstreamGenerationFailure("narration", f"timed out after {self.timeout}s", timed_out=True) from e
        except Exception as e:
            self._api_call(time.monotonic() - started, "error", str(e))
            logger.error(f"❌ Narration call failed: {e}")
            raise UpstreamGenerationFailure("narration", str(e)) from e

        latency = time.monotonic() - started
        self._api_call(latency, "success")
        if response.usage:
            logger.info(f"🤖 Narration tokens: {response.usage.total_tokens} in {latency:.1f}s")

        return response.choices[0].message.content

    async def generate(self, request: NarrationRequest) -> GeneratedChapter:
        """
        Generate one chapter.

        Raises:
            UpstreamGenerationFailure: call failed or timed out (not retried)
            ContractViolation: every attempt returned a malformed chapter
        """
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_user_prompt(request)},
        ]

        last_error: Optional[ContractViolation] = None
        for attempt in range(1, self.max_attempts + 1):
            raw = await self.chat_completion(messages)
            try:
                chapter = parse_chapter(raw)
            except ContractViolation as e:
                last_error = e
                logger.warning(f"⚠️ Narration attempt {attempt}/{self.max_attempts} broke contract: {e}")
                continue

            logger.info(f"📖 Chapter {request.chapter_index} ({request.genre}): {len(chapter.text)} chars")
            return chapter

        raise last_error

    def _api_call(self, latency: float, status: str, detail: str = ""):
        if self._storyteller_logger:
            self._storyteller_logger.api_call("openai", self.model, latency, status, detail)

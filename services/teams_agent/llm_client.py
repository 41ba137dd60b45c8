"""
Generative AI client.

Talks to Gemini through its OpenAI-compatible endpoint with the OpenAI SDK.
Callers treat every failure here as a signal to fall back to heuristics.
"""
import json
import logging
import re
from typing import Any, Dict, Optional

import openai
from openai import AsyncOpenAI

from shared.config import get_settings
from shared.errors import ServiceUnavailableError, UpstreamError

logger = logging.getLogger(__name__)
settings = get_settings()

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


def parse_json_response(text: str) -> Dict[str, Any]:
    """Parse a model reply that should be a JSON object, tolerating code fences."""
    cleaned = _FENCE_RE.sub("", text or "").strip()
    if not cleaned.startswith("{"):
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise ValueError("No JSON object in model response")
        cleaned = cleaned[start:end + 1]
    data = json.loads(cleaned)
    if not isinstance(data, dict):
        raise ValueError("Model response is not a JSON object")
    return data


class LLMClient:
    """Chat-completion wrapper used for message analysis and summaries."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.model = model or settings.gemini_model
        self.base_url = base_url or settings.gemini_base_url
        self.client: Optional[AsyncOpenAI] = None

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> AsyncOpenAI:
        if not self.is_available():
            raise ServiceUnavailableError("GEMINI_API_KEY is not configured")
        if self.client is None:
            self.client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
            logger.info(f"LLM client ready (model: {self.model})")
        return self.client

    async def complete(self, prompt: str, system: Optional[str] = None) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        try:
            response = await self._get_client().chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=settings.llm_temperature,
                max_tokens=settings.llm_max_tokens,
            )
        except openai.OpenAIError as e:
            logger.warning(f"LLM request failed: {e}")
            raise UpstreamError(f"AI request failed: {e}")

        if not response.choices:
            raise UpstreamError("AI response contained no choices")
        return response.choices[0].message.content or ""

    async def complete_json(self, prompt: str, system: Optional[str] = None) -> Dict[str, Any]:
        """Ask for a JSON object. Raises ValueError when the reply is not one."""
        text = await self.complete(prompt, system=system)
        return parse_json_response(text)

    async def cleanup(self) -> None:
        if self.client is not None:
            await self.client.close()
            self.client = None


def create_llm_client() -> LLMClient:
    """Factory function to create the LLM client."""
    return LLMClient()

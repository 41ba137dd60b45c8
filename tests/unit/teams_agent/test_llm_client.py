"""Unit tests for the generative AI client."""

import pytest
from unittest.mock import AsyncMock, MagicMock

import openai

from services.teams_agent.llm_client import LLMClient, parse_json_response
from shared.errors import ServiceUnavailableError, UpstreamError


def _completion(text):
    return MagicMock(choices=[MagicMock(message=MagicMock(content=text))])


@pytest.fixture
def client():
    llm = LLMClient(api_key="test-key", model="gemini-1.5-flash")
    llm.client = MagicMock()
    llm.client.chat.completions.create = AsyncMock()
    llm.client.close = AsyncMock()
    return llm


class TestParseJsonResponse:
    def test_plain_json(self):
        assert parse_json_response('{"a": 1}') == {"a": 1}

    def test_fenced_json(self):
        assert parse_json_response('```json\n{"a": 1}\n```') == {"a": 1}

    def test_json_inside_prose(self):
        assert parse_json_response('Here you go: {"a": {"b": 2}} Thanks!') == {"a": {"b": 2}}

    @pytest.mark.parametrize("text", ["no json here", "[1, 2]", ""])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            parse_json_response(text)


class TestLLMClient:
    """Test completion calls."""

    def test_availability(self):
        assert LLMClient(api_key="").is_available() is False
        assert LLMClient(api_key="key").is_available() is True

    @pytest.mark.asyncio
    async def test_unconfigured_client_raises(self):
        with pytest.raises(ServiceUnavailableError):
            await LLMClient(api_key="").complete("hello")

    @pytest.mark.asyncio
    async def test_complete_json(self, client):
        client.client.chat.completions.create.return_value = _completion('```json\n{"ok": true}\n```')

        assert await client.complete_json("prompt", system="Be brief") == {"ok": True}

        kwargs = client.client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gemini-1.5-flash"
        assert kwargs["messages"] == [
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "prompt"},
        ]

    @pytest.mark.asyncio
    async def test_api_error_becomes_upstream_error(self, client):
        client.client.chat.completions.create.side_effect = openai.OpenAIError("quota exceeded")
        with pytest.raises(UpstreamError, match="quota exceeded"):
            await client.complete("prompt")

    @pytest.mark.asyncio
    async def test_empty_choices(self, client):
        client.client.chat.completions.create.return_value = MagicMock(choices=[])
        with pytest.raises(UpstreamError):
            await client.complete("prompt")

    @pytest.mark.asyncio
    async def test_cleanup_closes_client(self, client):
        sdk = client.client
        await client.cleanup()
        sdk.close.assert_awaited_once()
        assert client.client is None

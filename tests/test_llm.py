"""Tests for the shared LLM client (smarthealth/services/llm.py)."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import openai
import pytest

from smarthealth.services import llm


def _anthropic_client(text="Hello", stop_reason="end_turn"):
    block = MagicMock()
    block.text = text
    response = MagicMock()
    response.content = [block]
    response.stop_reason = stop_reason

    client = AsyncMock()
    client.messages.create = AsyncMock(return_value=response)
    return client


def _openai_client(content="Hello", refusal=None, finish_reason="stop"):
    choice = MagicMock()
    choice.message.content = content
    choice.message.refusal = refusal
    choice.finish_reason = finish_reason
    response = MagicMock()
    response.choices = [choice]

    client = AsyncMock()
    client.chat.completions.create = AsyncMock(return_value=response)
    return client


def _client(provider, backend) -> llm.LLMClient:
    client = llm.LLMClient()
    client.provider = provider
    if provider == "anthropic":
        client._anthropic = backend
    else:
        client._openai = backend
    return client


class TestBackendDetection:
    """No keys are configured in tests."""

    def test_provider_is_dummy(self):
        assert llm.LLMClient().provider == "dummy"

    def test_not_available(self):
        assert llm.LLMClient().available() is False

    def test_unknown_tier_maps_to_standard(self):
        client = _client("openai", _openai_client())
        assert client.model_for_tier("bogus") == client.model_for_tier("standard")


class TestUnavailable:
    async def test_complete_raises(self):
        with pytest.raises(llm.LLMUnavailableError):
            await llm.LLMClient().complete(system="s", user="u")


class TestStripJson:
    def test_strips_json_fence(self):
        assert llm.strip_json('```json\n{"key": "value"}\n```') == '{"key": "value"}'

    def test_strips_plain_fence(self):
        assert llm.strip_json('```\n[1, 2]\n```') == "[1, 2]"

    def test_strips_surrounding_prose(self):
        assert llm.strip_json('Here you go: [{"a": 1}] Hope that helps.') == '[{"a": 1}]'

    def test_no_json_unchanged(self):
        assert llm.strip_json("plain text") == "plain text"


class TestAnthropicPath:
    async def test_complete(self):
        backend = _anthropic_client(text="  Summary text.  ")
        client = _client("anthropic", backend)

        reply = await client.complete(system="You are helpful.", user="test", tier="fast", max_tokens=300)

        assert reply.text == "Summary text."
        assert reply.declined is False
        assert reply.model == client.model_for_tier("fast")
        kwargs = backend.messages.create.call_args.kwargs
        assert kwargs["system"] == "You are helpful."
        assert kwargs["messages"] == [{"role": "user", "content": "test"}]
        assert kwargs["max_tokens"] == 300

    async def test_refusal_is_declined(self):
        client = _client("anthropic", _anthropic_client(text="", stop_reason="refusal"))
        reply = await client.complete(system="s", user="u")
        assert reply.declined is True

    async def test_api_error_becomes_call_error(self):
        backend = _anthropic_client()
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        backend.messages.create.side_effect = anthropic.APIConnectionError(request=request)
        client = _client("anthropic", backend)

        with pytest.raises(llm.LLMCallError):
            await client.complete(system="s", user="u")

    async def test_timeout(self):
        async def slow(**kwargs):
            await asyncio.sleep(1)

        backend = _anthropic_client()
        backend.messages.create = AsyncMock(side_effect=slow)
        client = _client("anthropic", backend)
        client.timeout = 0.01

        with pytest.raises(llm.LLMTimeoutError):
            await client.complete(system="s", user="u")

    async def test_waiting_for_a_slot_counts_against_timeout(self):
        backend = _anthropic_client()
        client = _client("anthropic", backend)
        client._semaphore = asyncio.Semaphore(1)
        client.timeout = 0.05

        async with client._semaphore:
            with pytest.raises(llm.LLMTimeoutError):
                await client.complete(system="s", user="u")

        backend.messages.create.assert_not_awaited()
        assert (await client.complete(system="s", user="u")).text == "Hello"


class TestOpenAIPath:
    async def test_complete(self):
        backend = _openai_client(content="From GPT.")
        client = _client("openai", backend)

        reply = await client.complete(system="sys", user="usr")

        assert reply.text == "From GPT."
        messages = backend.chat.completions.create.call_args.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": "sys"}
        assert messages[1] == {"role": "user", "content": "usr"}

    async def test_refusal_is_declined(self):
        client = _client("openai", _openai_client(content=None, refusal="I can't help with that."))
        reply = await client.complete(system="s", user="u")
        assert reply.declined is True
        assert reply.text == ""

    async def test_content_filter_is_declined(self):
        client = _client("openai", _openai_client(finish_reason="content_filter"))
        assert (await client.complete(system="s", user="u")).declined is True

    async def test_api_error_becomes_call_error(self):
        backend = _openai_client()
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        backend.chat.completions.create.side_effect = openai.APIConnectionError(request=request)
        client = _client("openai", backend)

        with pytest.raises(llm.LLMCallError):
            await client.complete(system="s", user="u")


class TestSingleton:
    def test_get_llm_client_is_cached(self):
        assert llm.get_llm_client() is llm.get_llm_client()

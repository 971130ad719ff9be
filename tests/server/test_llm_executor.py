"""Tests for the OpenAI/Anthropic prompt executor."""

from __future__ import annotations

import json

import httpx
import pytest

from server.services.llm_executor import LLMExecutionError, LLMExecutor, ProviderExecutor


def _executor(provider, key, handler) -> ProviderExecutor:
    return ProviderExecutor(provider, key, transport=httpx.MockTransport(handler))


class TestValidation:
    def test_provider_required(self):
        with pytest.raises(ValueError, match="Provider is required"):
            ProviderExecutor("", "sk-x")

    def test_invalid_provider(self):
        with pytest.raises(ValueError, match="Invalid provider"):
            ProviderExecutor("gemini", "sk-x")

    def test_key_required(self):
        with pytest.raises(ValueError, match="API key is required"):
            ProviderExecutor("openai", "  ")

    def test_key_prefix(self):
        with pytest.raises(ValueError, match="Invalid OpenAI API key format"):
            ProviderExecutor("openai", "pk-123")
        with pytest.raises(ValueError, match="Invalid Anthropic API key format"):
            ProviderExecutor("anthropic", "sk-123")

    def test_satisfies_protocol(self):
        assert isinstance(ProviderExecutor("openai", "sk-x"), LLMExecutor)


@pytest.mark.asyncio
async def test_openai_request_and_response():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "choices": [{"message": {"content": "Bonjour"}}],
            "usage": {"total_tokens": 12},
        })

    result = await _executor("openai", "sk-test", handler).execute(
        "Say hi", system_message="Be brief", temperature=0.2, max_tokens=50,
    )

    assert result.response == "Bonjour"
    assert result.token_count == 12
    assert result.model == "gpt-4o"
    assert result.provider == "openai"
    assert result.execution_time >= 0
    assert seen["url"] == "https://api.openai.com/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["messages"] == [
        {"role": "system", "content": "Be brief"},
        {"role": "user", "content": "Say hi"},
    ]
    assert seen["body"]["temperature"] == 0.2
    assert seen["body"]["max_tokens"] == 50


@pytest.mark.asyncio
async def test_anthropic_request_and_response():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers["x-api-key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "content": [{"type": "text", "text": "Hei"}],
            "usage": {"input_tokens": 4, "output_tokens": 2},
        })

    result = await _executor("anthropic", "sk-ant-test", handler).execute(
        "Say hi", system_message="Be brief", model="gpt-4o",
    )

    assert result.response == "Hei"
    assert result.token_count == 6
    # A model from the other provider falls back to the default.
    assert result.model == "claude-3-5-sonnet-20241022"
    assert seen["url"] == "https://api.anthropic.com/v1/messages"
    assert seen["key"] == "sk-ant-test"
    assert seen["body"]["system"] == "Be brief"
    assert seen["body"]["max_tokens"] == 1024


@pytest.mark.asyncio
@pytest.mark.parametrize("status,message", [
    (401, "Invalid API key. Please check your OpenAI API key."),
    (429, "Rate limit exceeded. Please try again later."),
    (404, "Model not available. Please try a different model."),
    (500, "An error occurred: openai returned HTTP 500"),
])
async def test_http_errors(status, message):
    executor = _executor("openai", "sk-test", lambda r: httpx.Response(status, json={}))
    with pytest.raises(LLMExecutionError) as exc:
        await executor.execute("hi")
    assert str(exc.value) == message


@pytest.mark.asyncio
async def test_network_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(LLMExecutionError, match="Network error"):
        await _executor("openai", "sk-test", handler).execute("hi")


@pytest.mark.asyncio
async def test_unexpected_shape():
    executor = _executor("openai", "sk-test", lambda r: httpx.Response(200, json={"choices": []}))
    with pytest.raises(LLMExecutionError, match="unexpected openai response shape"):
        await executor.execute("hi")

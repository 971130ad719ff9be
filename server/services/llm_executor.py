"""LLM execution: send a fully rendered prompt to OpenAI or Anthropic."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)

MODELS = {
    "openai": "gpt-4o",
    "anthropic": "claude-3-5-sonnet-20241022",
}

_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com/v1",
}

_DISPLAY_NAMES = {"openai": "OpenAI", "anthropic": "Anthropic"}

_KEY_PREFIXES = {
    "openai": ("sk-", "Invalid OpenAI API key format. Expected format: sk-..."),
    "anthropic": ("sk-ant-", "Invalid Anthropic API key format. Expected format: sk-ant-..."),
}


class LLMExecutionError(Exception):
    """Provider call failed; the message is safe to show to a user."""


@dataclass
class LLMResponse:
    response: str
    token_count: int = 0
    execution_time: float = 0.0
    model: str | None = None
    provider: str | None = None


@runtime_checkable
class LLMExecutor(Protocol):
    """Anything that turns rendered prompt text into a model response."""

    async def execute(
        self,
        prompt_text: str,
        *,
        system_message: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse: ...


class ProviderExecutor:
    """HTTP executor for the OpenAI chat completions and Anthropic messages APIs."""

    def __init__(
        self,
        provider: str,
        api_key: str | None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not provider:
            raise ValueError("Provider is required")
        if provider not in MODELS:
            raise ValueError("Invalid provider")
        if not api_key or not api_key.strip():
            raise ValueError("API key is required")
        prefix, message = _KEY_PREFIXES[provider]
        if not api_key.strip().startswith(prefix):
            raise ValueError(message)

        self.provider = provider
        self._api_key = api_key.strip()
        self._timeout = timeout
        self._transport = transport

    async def execute(
        self,
        prompt_text: str,
        *,
        system_message: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        model = self._model_for(model)
        start_time = time.monotonic()

        if self.provider == "openai":
            path, headers, payload = self._openai_request(prompt_text, system_message, model, temperature, max_tokens)
        else:
            path, headers, payload = self._anthropic_request(prompt_text, system_message, model, temperature, max_tokens)

        try:
            async with httpx.AsyncClient(
                base_url=_BASE_URLS[self.provider],
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                resp = await client.post(path, json=payload, headers=headers)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            raise LLMExecutionError(self._status_message(e.response)) from e
        except httpx.RequestError as e:
            logger.warning("%s request failed: %s", self.provider, e)
            raise LLMExecutionError("Network error. Please check your connection and try again.") from e
        except ValueError as e:
            raise LLMExecutionError(f"An error occurred: invalid response from {self.provider}") from e

        content, tokens = self._parse(data)
        return LLMResponse(
            response=content,
            token_count=tokens,
            execution_time=round(time.monotonic() - start_time, 3),
            model=model,
            provider=self.provider,
        )

    def _model_for(self, model: str | None) -> str:
        # A prompt saved for one provider may be run on the other.
        if model and (self.provider == "anthropic") == model.lower().startswith("claude"):
            return model
        return MODELS[self.provider]

    def _openai_request(self, prompt_text, system_message, model, temperature, max_tokens):
        messages = []
        if system_message:
            messages.append({"role": "system", "content": system_message})
        messages.append({"role": "user", "content": prompt_text})
        payload: dict = {"model": model, "messages": messages}
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        return "/chat/completions", {"Authorization": f"Bearer {self._api_key}"}, payload

    def _anthropic_request(self, prompt_text, system_message, model, temperature, max_tokens):
        payload: dict = {
            "model": model,
            "max_tokens": max_tokens or 1024,
            "messages": [{"role": "user", "content": prompt_text}],
        }
        if system_message:
            payload["system"] = system_message
        if temperature is not None:
            payload["temperature"] = temperature
        headers = {"x-api-key": self._api_key, "anthropic-version": "2023-06-01"}
        return "/messages", headers, payload

    def _parse(self, data: dict) -> tuple[str, int]:
        try:
            if self.provider == "openai":
                content = data["choices"][0]["message"]["content"] or ""
                usage = data.get("usage") or {}
                tokens = usage.get("total_tokens") or (
                    (usage.get("prompt_tokens") or 0) + (usage.get("completion_tokens") or 0)
                )
            else:
                content = "".join(
                    block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
                )
                usage = data.get("usage") or {}
                tokens = (usage.get("input_tokens") or 0) + (usage.get("output_tokens") or 0)
        except (KeyError, IndexError, TypeError) as e:
            raise LLMExecutionError(f"An error occurred: unexpected {self.provider} response shape") from e
        return content, tokens

    def _status_message(self, resp: httpx.Response) -> str:
        if resp.status_code == 401:
            return f"Invalid API key. Please check your {_DISPLAY_NAMES[self.provider]} API key."
        if resp.status_code == 429:
            return "Rate limit exceeded. Please try again later."
        if resp.status_code == 404:
            return "Model not available. Please try a different model."
        return f"An error occurred: {self.provider} returned HTTP {resp.status_code}"

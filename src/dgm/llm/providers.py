"""
LLM Provider Implementations

HTTP clients for the two supported provider families. Only what the agent
loop needs is implemented: a single non-streaming completion with optional
tool definitions.
"""

from __future__ import annotations

import time
from typing import Any

import httpx
import structlog

from dgm.core.errors import ProviderError, TransientServiceError
from dgm.llm.base import (
    LLMMessage,
    LLMProvider,
    LLMResponse,
    MessageRole,
    ToolCall,
    ToolDefinition,
)

logger = structlog.get_logger(__name__)

# Status codes worth retrying
_TRANSIENT_STATUS = {408, 409, 429, 500, 502, 503, 504, 529}


def _raise_for_status(response: httpx.Response, provider: str) -> None:
    if response.status_code < 400:
        return

    detail = response.text[:500]
    if response.status_code in _TRANSIENT_STATUS:
        retry_after = response.headers.get("retry-after")
        try:
            delay = float(retry_after) if retry_after else None
        except ValueError:
            delay = None
        raise TransientServiceError(
            f"{provider} returned {response.status_code}: {detail}",
            retry_after=delay,
        )
    raise ProviderError(f"{provider} returned {response.status_code}: {detail}")


class _HTTPProvider(LLMProvider):
    """Shared httpx plumbing."""

    default_base_url = ""

    def __init__(
        self,
        model: str,
        api_key: str,
        base_url: str | None = None,
        timeout: float = 600.0,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        **kwargs: Any,
    ):
        super().__init__(model, temperature=temperature, max_tokens=max_tokens, **kwargs)
        self.api_key = api_key
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def _post(self, path: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload, headers=headers)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise TransientServiceError(f"{self.provider_name} request failed: {e}") from e

        _raise_for_status(response, self.provider_name)
        return response.json()

    async def close(self) -> None:
        await self._client.aclose()


class AnthropicProvider(_HTTPProvider):
    """Anthropic Messages API."""

    default_base_url = "https://api.anthropic.com"
    api_version = "2023-06-01"

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def format_messages(self, messages: list[LLMMessage]) -> tuple[str, list[dict[str, Any]]]:
        """
        Convert to Anthropic's format.

        System messages are lifted into the top-level system prompt and
        consecutive tool results are merged into one user turn, as the API
        requires strictly alternating roles.
        """
        system_parts: list[str] = []
        formatted: list[dict[str, Any]] = []

        for msg in messages:
            if msg.role == MessageRole.SYSTEM:
                system_parts.append(msg.content)
                continue

            if msg.role == MessageRole.TOOL:
                block = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.content,
                }
                if (
                    formatted
                    and formatted[-1]["role"] == "user"
                    and isinstance(formatted[-1]["content"], list)
                    and formatted[-1]["content"]
                    and formatted[-1]["content"][0].get("type") == "tool_result"
                ):
                    formatted[-1]["content"].append(block)
                else:
                    formatted.append({"role": "user", "content": [block]})
                continue

            if msg.role == MessageRole.ASSISTANT and msg.tool_calls:
                blocks: list[dict[str, Any]] = []
                if msg.content:
                    blocks.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls:
                    blocks.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": tc.arguments,
                    })
                formatted.append({"role": "assistant", "content": blocks})
                continue

            formatted.append({"role": msg.role.value, "content": msg.content})

        return "\n\n".join(system_parts), formatted

    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        **kwargs: Any,
    ) -> LLMResponse:
        system, formatted = self.format_messages(messages)
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": kwargs.get("max_tokens", self.max_tokens),
            "temperature": kwargs.get("temperature", self.temperature),
            "messages": formatted,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = [t.to_anthropic_format() for t in tools]

        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
        }

        start = time.monotonic()
        data = await self._post("/v1/messages", payload, headers)
        latency_ms = (time.monotonic() - start) * 1000

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in data.get("content", []):
            if block.get("type") == "text":
                text_parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                tool_calls.append(ToolCall(
                    id=block["id"],
                    name=block["name"],
                    arguments=block.get("input") or {},
                ))

        usage = data.get("usage", {})
        return LLMResponse(
            id=data.get("id", ""),
            content="".join(text_parts),
            tool_calls=tool_calls,
            finish_reason="tool_calls" if tool_calls else data.get("stop_reason", "stop"),
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0),
            model=data.get("model", self.model),
            provider=self.provider_name,
            latency_ms=latency_ms,
        )


class OpenAIProvider(_HTTPProvider):
    """OpenAI Chat Completions API (and compatible servers via `base_url`)."""

    default_base_url = "https://api.openai.com/v1"

    @property
    def provider_name(self) -> str:
        return "openai"

    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        **kwargs: Any,
    ) -> LLMResponse:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_openai_format() for m in messages],
            "max_tokens": kwargs.get("max_tokens", self.max_tokens),
            "temperature": kwargs.get("temperature", self.temperature),
        }
        if tools:
            payload["tools"] = [t.to_openai_format() for t in tools]

        headers = {"Authorization": f"Bearer {self.api_key}"}

        start = time.monotonic()
        data = await self._post("/chat/completions", payload, headers)
        latency_ms = (time.monotonic() - start) * 1000

        choices = data.get("choices") or []
        if not choices:
            raise ProviderError("openai returned no choices")
        choice = choices[0]
        message = choice.get("message", {})

        usage = data.get("usage", {})
        return LLMResponse(
            id=data.get("id", ""),
            content=message.get("content") or "",
            tool_calls=[
                ToolCall.from_openai_format(tc) for tc in message.get("tool_calls") or []
            ],
            finish_reason=choice.get("finish_reason", "stop"),
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            model=data.get("model", self.model),
            provider=self.provider_name,
            latency_ms=latency_ms,
        )

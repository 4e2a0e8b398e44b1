"""
Base LLM Provider Interface

Defines the single capability the agent needs from a model: complete a
conversation, optionally requesting tool calls. Providers are a closed set
(see `dgm.llm.factory`) chosen at configuration time.
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

import structlog

logger = structlog.get_logger(__name__)

_TOOL_USE_PATTERN = re.compile(r"<tool_use>(.*?)</tool_use>", re.DOTALL)


class MessageRole(str, Enum):
    """Role of a message in the conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class ToolCall:
    """
    A tool call requested by the LLM.
    """
    id: str
    name: str
    arguments: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    def to_openai_format(self) -> dict[str, Any]:
        """Convert to OpenAI tool call format."""
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.arguments),
            },
        }

    @classmethod
    def from_openai_format(cls, data: dict[str, Any]) -> ToolCall:
        """Create from OpenAI tool call format."""
        func = data.get("function", {})
        args_str = func.get("arguments") or "{}"
        try:
            args = json.loads(args_str)
        except json.JSONDecodeError:
            # Keep the raw text so the tool layer can report it back
            args = {"__raw__": args_str}
        if not isinstance(args, dict):
            args = {"__raw__": args_str}

        return cls(
            id=data.get("id") or str(uuid4()),
            name=func.get("name", ""),
            arguments=args,
        )


@dataclass
class LLMMessage:
    """
    A message in the conversation.

    Unified format that works across all providers.
    """
    role: MessageRole
    content: str

    # For tool messages
    name: str | None = None
    tool_call_id: str | None = None

    # For assistant messages with tool calls
    tool_calls: list[ToolCall] | None = None

    def to_openai_format(self) -> dict[str, Any]:
        """Convert to OpenAI message format."""
        msg: dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
        }

        if self.name and self.role == MessageRole.TOOL:
            msg["name"] = self.name

        if self.tool_call_id:
            msg["tool_call_id"] = self.tool_call_id

        if self.tool_calls:
            msg["tool_calls"] = [tc.to_openai_format() for tc in self.tool_calls]

        return msg

    @classmethod
    def system(cls, content: str) -> LLMMessage:
        """Create a system message."""
        return cls(role=MessageRole.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> LLMMessage:
        """Create a user message."""
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: list[ToolCall] | None = None) -> LLMMessage:
        """Create an assistant message."""
        return cls(role=MessageRole.ASSISTANT, content=content, tool_calls=tool_calls)

    @classmethod
    def tool(cls, content: str, name: str, tool_call_id: str) -> LLMMessage:
        """Create a tool result message."""
        return cls(
            role=MessageRole.TOOL,
            content=content,
            name=name,
            tool_call_id=tool_call_id,
        )


@dataclass
class ToolDefinition:
    """
    Definition of a tool that can be called by the LLM.
    """
    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema

    def to_openai_format(self) -> dict[str, Any]:
        """Convert to OpenAI function format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def to_anthropic_format(self) -> dict[str, Any]:
        """Convert to Anthropic tool format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


@dataclass
class LLMResponse:
    """
    Response from an LLM.

    Unified format across all providers.
    """
    id: str = field(default_factory=lambda: str(uuid4()))

    # Content
    content: str = ""

    # Tool calls (if any)
    tool_calls: list[ToolCall] = field(default_factory=list)

    # Finish reason
    finish_reason: str = "stop"  # stop, tool_calls, length

    # Usage
    prompt_tokens: int = 0
    completion_tokens: int = 0

    # Model info
    model: str = ""
    provider: str = ""

    # Timing
    latency_ms: float = 0.0
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def has_tool_calls(self) -> bool:
        """Check if response contains tool calls."""
        return len(self.tool_calls) > 0

    def to_message(self) -> LLMMessage:
        """Convert to an LLMMessage for conversation history."""
        return LLMMessage.assistant(
            content=self.content,
            tool_calls=self.tool_calls if self.tool_calls else None,
        )


def parse_tool_use_blocks(text: str) -> list[ToolCall]:
    """
    Extract tool calls written inline as `<tool_use>` blocks.

    Used for models without native tool calling. Each block holds
    `{"tool_name": ..., "tool_input": {...}}` as JSON or as a Python-style
    dict literal. Blocks that cannot be parsed become calls to the
    pseudo-tool `__malformed__` so the caller can report them back.
    """
    calls: list[ToolCall] = []

    for match in _TOOL_USE_PATTERN.finditer(text):
        raw = match.group(1).strip()
        parsed = _loads_lenient(raw)

        if (
            isinstance(parsed, dict)
            and isinstance(parsed.get("tool_name"), str)
            and isinstance(parsed.get("tool_input"), dict)
        ):
            calls.append(ToolCall(
                id=f"text_{uuid4().hex[:12]}",
                name=parsed["tool_name"],
                arguments=parsed["tool_input"],
            ))
        else:
            calls.append(ToolCall(
                id=f"text_{uuid4().hex[:12]}",
                name="__malformed__",
                arguments={"__raw__": raw},
            ))

    return calls


def _loads_lenient(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass

    converted = (
        raw.replace("'", '"')
        .replace("True", "true")
        .replace("False", "false")
        .replace("None", "null")
    )
    try:
        return json.loads(converted)
    except json.JSONDecodeError:
        return None


class LLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    All providers must implement this interface to drive the agent loop.

    Example implementation:
        ```python
        class MyProvider(LLMProvider):
            provider_name = "mine"

            async def generate(self, messages, tools=None, **kwargs):
                response = await my_api.chat(messages)
                return LLMResponse(content=response.text)
        ```
    """

    def __init__(
        self,
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        **kwargs: Any,
    ):
        """
        Initialize the provider.

        Args:
            model: Model identifier
            temperature: Sampling temperature
            max_tokens: Maximum tokens in response
            **kwargs: Provider-specific options
        """
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.options = kwargs

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name."""
        ...

    @property
    def supports_tools(self) -> bool:
        """Check if provider supports native tool/function calling."""
        return True

    @abstractmethod
    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        **kwargs: Any,
    ) -> LLMResponse:
        """
        Generate a response from the LLM.

        Args:
            messages: Conversation history
            tools: Available tools
            **kwargs: Additional provider-specific options

        Returns:
            LLM response

        Raises:
            TransientServiceError: Rate limits, overload, timeouts, 5xx
            ProviderError: Any other rejection
        """
        ...

    async def close(self) -> None:
        """Close any open connections."""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(model={self.model!r})"

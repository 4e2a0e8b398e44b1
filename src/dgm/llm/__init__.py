"""
LLM Provider Abstraction Layer

A single "complete this conversation, optionally calling tools" capability
with two implementations:
- Anthropic Messages API
- OpenAI Chat Completions API (and OpenAI-compatible servers)
"""

from dgm.llm.base import (
    LLMMessage,
    LLMProvider,
    LLMResponse,
    MessageRole,
    ToolCall,
    ToolDefinition,
    parse_tool_use_blocks,
)
from dgm.llm.factory import create_llm, create_llm_from_config, detect_provider
from dgm.llm.providers import AnthropicProvider, OpenAIProvider
from dgm.llm.retry import RetryPolicy

__all__ = [
    # Base
    "LLMMessage",
    "LLMProvider",
    "LLMResponse",
    "MessageRole",
    "ToolCall",
    "ToolDefinition",
    "parse_tool_use_blocks",
    # Factory
    "create_llm",
    "create_llm_from_config",
    "detect_provider",
    # Providers
    "AnthropicProvider",
    "OpenAIProvider",
    # Retry
    "RetryPolicy",
]

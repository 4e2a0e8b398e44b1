"""
LLM Factory

Maps a model identifier to one of the supported providers.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from dgm.core.errors import ConfigurationError
from dgm.llm.base import LLMProvider
from dgm.llm.providers import AnthropicProvider, OpenAIProvider

if TYPE_CHECKING:
    from dgm.core.config import AgentConfig, ApiCredentials

logger = structlog.get_logger(__name__)

_OPENAI_PREFIXES = ("gpt-", "o1", "o3", "o4")


def detect_provider(model: str) -> str:
    """
    Work out which provider serves a model.

    Accepts bare model names (`claude-3-5-sonnet-20241022`, `gpt-4o`) and
    explicit prefixes (`anthropic/...`, `openai/...`).
    """
    if "/" in model:
        prefix = model.split("/", 1)[0]
        if prefix in ("anthropic", "openai"):
            return prefix
    if model.startswith("claude"):
        return "anthropic"
    if model.startswith(_OPENAI_PREFIXES):
        return "openai"
    raise ConfigurationError(f"Cannot determine provider for model {model!r}")


def _strip_prefix(model: str) -> str:
    if model.startswith(("anthropic/", "openai/")):
        return model.split("/", 1)[1]
    return model


def create_llm(
    model: str,
    credentials: ApiCredentials,
    temperature: float = 0.7,
    max_tokens: int = 4096,
) -> LLMProvider:
    """
    Create a provider for a model.

    Raises:
        ConfigurationError: Unknown model family or missing API key
    """
    provider = detect_provider(model)
    api_key = credentials.require_for(model)
    name = _strip_prefix(model)

    if provider == "anthropic":
        llm: LLMProvider = AnthropicProvider(
            name, api_key=api_key, temperature=temperature, max_tokens=max_tokens
        )
    else:
        llm = OpenAIProvider(
            name,
            api_key=api_key,
            base_url=credentials.openai_base_url,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    logger.debug("Created LLM provider", provider=provider, model=name)
    return llm


def create_llm_from_config(config: AgentConfig, credentials: ApiCredentials) -> LLMProvider:
    """Create the agent's provider from its config."""
    return create_llm(
        config.model,
        credentials,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
    )

"""LLM provider adapters and factory."""

import os

import httpx

from pprog.llm.anthropic import ANTHROPIC_BASE_URL, AnthropicProvider
from pprog.llm.base import (
    CHARS_PER_TOKEN,
    LLMProvider,
    LLMResponse,
    ProviderCapabilities,
    estimate_tokens,
)
from pprog.llm.openai import DEEPSEEK_BASE_URL, OPENAI_BASE_URL, OpenAIProvider

__all__ = [
    "CHARS_PER_TOKEN",
    "LLMProvider",
    "LLMResponse",
    "ProviderCapabilities",
    "AnthropicProvider",
    "OpenAIProvider",
    "create_provider",
    "estimate_tokens",
    "normalize_provider_name",
]

_PROVIDER_ALIASES = {
    "claude": "anthropic",
    "chatgpt": "openai",
}

_API_KEY_ENV = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
}

DEEPSEEK_MAX_CONTEXT = 64000


def normalize_provider_name(provider: str) -> str:
    """Lower-case provider name with vendor aliases resolved."""
    key = str(provider or "").strip().lower()
    return _PROVIDER_ALIASES.get(key, key)


def create_provider(
    provider: str = "anthropic",
    model: str = "",
    api_key: str | None = None,
    base_url: str | None = None,
    max_output_tokens: int = 8096,
    temperature: float | None = None,
    client: httpx.AsyncClient | None = None,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (anthropic, openai, deepseek or an alias)
        model: Model name
        api_key: Optional API key; falls back to the vendor's env variable
        base_url: Optional base URL
        max_output_tokens: Max tokens to generate per turn
        temperature: Optional sampling temperature
        client: Optional preconfigured HTTP client

    Returns:
        Configured LLMProvider instance
    """
    name = normalize_provider_name(provider)
    if name not in _API_KEY_ENV:
        raise ValueError(f"Provider '{provider}' not supported. Use 'anthropic', 'openai' or 'deepseek'.")

    key = api_key or os.getenv(_API_KEY_ENV[name], "")
    common = {
        "api_key": key,
        "max_output_tokens": max_output_tokens,
        "temperature": temperature,
        "client": client,
    }

    if name == "anthropic":
        return AnthropicProvider(
            model=model or "claude-3-5-haiku-latest",
            base_url=base_url or ANTHROPIC_BASE_URL,
            **common,
        )
    if name == "deepseek":
        return OpenAIProvider(
            model=model or "deepseek-chat",
            base_url=base_url or DEEPSEEK_BASE_URL,
            max_context_tokens=DEEPSEEK_MAX_CONTEXT,
            **common,
        )
    return OpenAIProvider(
        model=model or "gpt-4o-mini",
        base_url=base_url or OPENAI_BASE_URL,
        **common,
    )

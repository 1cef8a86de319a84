"""Provider factory: builds chat and embedding providers from config."""

import os

from .base import EmbeddingProvider, LLMError, LLMProvider

_PROVIDER_ENV_KEYS = {
    "openai": "OPENAI_API_KEY",
}


def _resolve(provider: str | None, api_key: str | None, client) -> tuple[str, str | None]:
    resolved = provider or "openai"
    if resolved == "auto":
        resolved = "openai"
    if resolved not in _PROVIDER_ENV_KEYS:
        raise LLMError(f"Unknown provider: {resolved}. Use: openai")
    if not api_key and not client:
        api_key = os.getenv(_PROVIDER_ENV_KEYS[resolved])
        if not api_key:
            raise LLMError(f"No API key found. Set {_PROVIDER_ENV_KEYS[resolved]}")
    return resolved, api_key


def create_llm_provider(
    provider: str | None = None,
    api_key: str | None = None,
    model: str | None = None,
    client=None,
) -> LLMProvider:
    """Create a chat provider instance.

    Args:
        provider: "openai", "auto", or None
        api_key: Explicit API key (overrides env var)
        model: Model name (None = provider default)
        client: Pre-built SDK client for testing/DI
    """
    _, api_key = _resolve(provider, api_key, client)
    from .providers.openai import OpenAIProvider

    return OpenAIProvider(api_key=api_key, model=model, client=client)


def create_embedding_provider(
    provider: str | None = None,
    api_key: str | None = None,
    model: str | None = None,
    client=None,
) -> EmbeddingProvider:
    """Create an embedding provider instance."""
    _, api_key = _resolve(provider, api_key, client)
    from .providers.openai import OpenAIEmbeddingProvider

    return OpenAIEmbeddingProvider(api_key=api_key, model=model, client=client)

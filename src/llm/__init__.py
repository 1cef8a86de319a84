"""Provider abstraction for insight extraction and embeddings."""

from .base import EmbeddingProvider, LLMAuthError, LLMError, LLMProvider, LLMRateLimitError
from .factory import create_embedding_provider, create_llm_provider

__all__ = [
    "EmbeddingProvider",
    "LLMProvider",
    "create_embedding_provider",
    "create_llm_provider",
    "LLMError",
    "LLMRateLimitError",
    "LLMAuthError",
]

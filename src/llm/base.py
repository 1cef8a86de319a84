"""Base provider abstractions for text generation and embeddings."""

from abc import ABC, abstractmethod


class LLMError(Exception):
    """Base LLM error."""


class LLMRateLimitError(LLMError):
    """Rate limit hit."""


class LLMAuthError(LLMError):
    """Authentication failure."""


class LLMProvider(ABC):
    """Abstract chat-completion provider."""

    provider_name: str = "base"

    @abstractmethod
    def generate(
        self, messages: list[dict], system: str | None = None, max_tokens: int = 2000
    ) -> str:
        """Generate a response from messages.

        Args:
            messages: List of {"role": ..., "content": ...} dicts
            system: Optional system prompt
            max_tokens: Max response tokens

        Returns:
            Generated text
        """
        ...


class EmbeddingProvider(ABC):
    """Abstract text embedding provider."""

    provider_name: str = "base"
    model: str = ""

    @abstractmethod
    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts, returning one vector per input in the same order."""
        ...

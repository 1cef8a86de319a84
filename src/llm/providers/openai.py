"""OpenAI chat and embedding providers."""

from ..base import EmbeddingProvider, LLMAuthError, LLMError, LLMProvider, LLMRateLimitError

DEFAULT_CHAT_MODEL = "gpt-4o-mini"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"

# Lazy exception references, set on first use
_openai_exceptions = None


def _get_openai_exceptions():
    global _openai_exceptions
    if _openai_exceptions is None:
        try:
            from openai import APIError, AuthenticationError, RateLimitError

            _openai_exceptions = (AuthenticationError, RateLimitError, APIError)
        except ImportError:
            _openai_exceptions = ()
    return _openai_exceptions


def _handle_openai_error(e: Exception):
    exc = _get_openai_exceptions()
    if exc and len(exc) == 3:
        AuthErr, RateErr, ApiErr = exc
        if isinstance(e, AuthErr):
            raise LLMAuthError(f"OpenAI auth failed: {e}") from e
        if isinstance(e, RateErr):
            raise LLMRateLimitError(f"OpenAI rate limit: {e}") from e
        if isinstance(e, ApiErr):
            raise LLMError(f"OpenAI API error: {e}") from e
    raise LLMError(f"OpenAI error: {e}") from e


def _build_client(api_key: str | None):
    try:
        from openai import OpenAI
    except ImportError:
        raise LLMError("openai package not installed. Run: pip install openai")
    return OpenAI(api_key=api_key)


class OpenAIProvider(LLMProvider):
    """OpenAI chat-completion provider used for insight extraction."""

    provider_name = "openai"

    def __init__(self, api_key: str | None = None, model: str | None = None, client=None):
        self.model = model or DEFAULT_CHAT_MODEL
        self.client = client or _build_client(api_key)

    def generate(
        self, messages: list[dict], system: str | None = None, max_tokens: int = 2000
    ) -> str:
        full_messages = []
        if system:
            full_messages.append({"role": "system", "content": system})
        full_messages.extend(messages)

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                max_tokens=max_tokens,
                messages=full_messages,
            )
            return response.choices[0].message.content or ""
        except Exception as e:
            _handle_openai_error(e)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embeddings endpoint."""

    provider_name = "openai"

    def __init__(self, api_key: str | None = None, model: str | None = None, client=None):
        self.model = model or DEFAULT_EMBEDDING_MODEL
        self.client = client or _build_client(api_key)

    def embed(self, texts: list[str]) -> list[list[float]]:
        try:
            response = self.client.embeddings.create(model=self.model, input=texts)
        except Exception as e:
            _handle_openai_error(e)
        vectors = [item.embedding for item in response.data]
        if len(vectors) != len(texts) or any(not v for v in vectors):
            raise LLMError("Empty embedding returned from OpenAI")
        return vectors

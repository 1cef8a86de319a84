"""Semantic similarity via embeddings, with a process-local LRU cache."""

from collections import OrderedDict

import numpy as np
import structlog

from cli.retry import llm_retry
from llm.base import EmbeddingProvider

logger = structlog.get_logger()

DEFAULT_SEMANTIC_THRESHOLD = 0.9
DEFAULT_CACHE_SIZE = 1000
DEFAULT_BATCH_SIZE = 100
MAX_EMBED_CHARS = 8000


class EmbeddingDimensionError(ValueError):
    """Vectors of different lengths cannot be compared."""


class EmbeddingCache:
    """Bounded LRU of text -> vector, keyed by lowercased trimmed text."""

    def __init__(self, max_size: int = DEFAULT_CACHE_SIZE):
        self.max_size = max_size
        self._cache: OrderedDict[str, list[float]] = OrderedDict()

    @staticmethod
    def _key(text: str) -> str:
        return text.lower().strip()

    def get(self, text: str) -> list[float] | None:
        key = self._key(text)
        vector = self._cache.get(key)
        if vector is not None:
            self._cache.move_to_end(key)
        return vector

    def set(self, text: str, vector: list[float]) -> None:
        key = self._key(text)
        if key in self._cache:
            self._cache.move_to_end(key)
        elif len(self._cache) >= self.max_size:
            self._cache.popitem(last=False)
        self._cache[key] = vector

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    def stats(self) -> dict:
        return {"size": len(self._cache), "max_size": self.max_size}


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine of the angle between two vectors; 0.0 for empty or zero vectors."""
    if len(a) != len(b):
        raise EmbeddingDimensionError(f"Embedding dimension mismatch: {len(a)} vs {len(b)}")
    if not a:
        return 0.0
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def _truncate(text: str) -> str:
    return text[:MAX_EMBED_CHARS] + "..." if len(text) > MAX_EMBED_CHARS else text


class EmbeddingClient:
    """Batches, caches and retries calls to an EmbeddingProvider."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: EmbeddingCache | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        threshold: float = DEFAULT_SEMANTIC_THRESHOLD,
        max_attempts: int = 3,
        min_wait: float = 1.0,
        max_wait: float = 10.0,
    ):
        self.provider = provider
        self.cache = cache if cache is not None else EmbeddingCache()
        self.batch_size = batch_size
        self.threshold = threshold
        self._embed = llm_retry(
            max_attempts=max_attempts, min_wait=min_wait, max_wait=max_wait
        )(self.provider.embed)

    @property
    def model(self) -> str:
        return getattr(self.provider, "model", "") or "unknown"

    def generate_embedding(self, text: str) -> list[float]:
        """Embed one text. Raises ValueError for blank text, provider errors after retries."""
        if not text or not text.strip():
            raise ValueError("Cannot generate embedding for empty text")
        cached = self.cache.get(text)
        if cached is not None:
            return cached
        vector = self._embed([_truncate(text)])[0]
        self.cache.set(text, vector)
        return vector

    def generate_embeddings_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed many texts in provider-sized batches, serving cache hits locally.

        Blank texts are dropped before embedding, as the provider rejects them.
        """
        if not texts:
            return []
        valid = [t for t in texts if t and t.strip()]
        if not valid:
            raise ValueError("No valid texts provided for embedding generation")

        results: list[list[float] | None] = [self.cache.get(t) for t in valid]
        missing = [i for i, vector in enumerate(results) if vector is None]

        for start in range(0, len(missing), self.batch_size):
            chunk = missing[start : start + self.batch_size]
            vectors = self._embed([_truncate(valid[i]) for i in chunk])
            for i, vector in zip(chunk, vectors):
                self.cache.set(valid[i], vector)
                results[i] = vector

        logger.debug(
            "embeddings_generated",
            requested=len(valid),
            cache_hits=len(valid) - len(missing),
        )
        return results

    def are_semantically_similar(self, a: str, b: str, threshold: float | None = None) -> bool:
        """Compare two texts by embedding; any failure counts as not similar."""
        if not a or not b or not a.strip() or not b.strip():
            return False
        try:
            va, vb = self.generate_embeddings_batch([a, b])
            return cosine_similarity(va, vb) >= (threshold if threshold is not None else self.threshold)
        except Exception as e:
            logger.warning("semantic_similarity_failed", error=str(e))
            return False

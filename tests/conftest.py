"""Shared test fixtures for the learning engine."""

import hashlib
import sys
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from knowledge.store import KnowledgeBaseStore  # noqa: E402
from learning.background import BestEffort  # noqa: E402
from learning.models import LearningEvent  # noqa: E402
from learning.store import EventStore  # noqa: E402


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "kblearn.db"


@pytest.fixture
def kb_store(db_path):
    return KnowledgeBaseStore(db_path, lease_attempts=2, lease_wait=0.01)


@pytest.fixture
def event_store(db_path):
    return EventStore(db_path)


@pytest.fixture
def kb(kb_store):
    """An empty knowledge base."""
    return kb_store.create(id="kb1", business_name="Acme Plumbing", industry="trades")


@pytest.fixture
def inline():
    return BestEffort(inline=True)


@pytest.fixture
def make_event():
    """Factory for LearningEvent with sensible defaults."""
    counter = {"n": 0}

    def _make(
        insight: str = "Invoices are assembled by hand every month",
        category: str = "business_context",
        confidence: int = 85,
        kb_id: str = "kb1",
        metadata: dict | None = None,
        event_type: str = "INSIGHT_GENERATED",
        age_days: float = 0,
        source_type: str | None = "JOB_DESCRIPTION",
        **kwargs,
    ) -> LearningEvent:
        counter["n"] += 1
        return LearningEvent(
            id=kwargs.pop("id", f"evt{counter['n']:04d}"),
            knowledge_base_id=kb_id,
            category=category,
            event_type=event_type,
            insight=insight,
            confidence=confidence,
            created_at=datetime.now() - timedelta(days=age_days, microseconds=counter["n"]),
            source_ids=["src1"],
            source_type=source_type,
            metadata=metadata or {},
            **kwargs,
        )

    return _make


def fake_vector(text: str, dims: int = 32) -> list[float]:
    """Deterministic pseudo-embedding; identical text gives identical vectors."""
    digest = hashlib.sha256(text.lower().strip().encode()).digest()
    return [b / 255 - 0.5 for b in digest[:dims]]


@pytest.fixture
def mock_embedding_provider():
    """EmbeddingProvider double returning deterministic vectors."""
    provider = MagicMock()
    provider.model = "test-embed"
    provider.embed.side_effect = lambda texts: [fake_vector(t) for t in texts]
    return provider


@pytest.fixture
def vector_for():
    return fake_vector

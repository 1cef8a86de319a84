"""Extraction, application and quality metrics stored in the knowledge bag."""

import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Iterator

import structlog

from knowledge.models import METRICS_KEY, KnowledgeBag
from knowledge.store import KnowledgeBaseStore

logger = structlog.get_logger()

MAX_METRIC_ENTRIES = 100


@dataclass
class ExtractionMetrics:
    source_type: str
    insights_extracted: int
    insights_created: int
    insights_by_category: dict[str, int] = field(default_factory=dict)
    average_confidence: float = 0.0
    duplicate_count: int = 0
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class ApplicationMetrics:
    knowledge_base_id: str
    events_processed: int
    events_applied: int
    events_skipped: int
    events_decayed: int = 0
    fields_updated: list[str] = field(default_factory=list)
    average_confidence: float = 0.0
    processing_time_ms: int = 0
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class QualityMetrics:
    knowledge_base_id: str
    conflict_resolution_outcomes: dict[str, int] = field(
        default_factory=lambda: {"replaced": 0, "merged": 0, "kept": 0, "appended": 0}
    )
    confidence_distribution: dict[str, int] = field(
        default_factory=lambda: {"high": 0, "medium": 0, "low": 0}
    )
    timestamp: datetime = field(default_factory=datetime.now)


def confidence_distribution(confidences: list[int]) -> dict[str, int]:
    """Bucket confidences: high >= 90, medium 80-89, low < 80."""
    return {
        "high": sum(1 for c in confidences if c >= 90),
        "medium": sum(1 for c in confidences if 80 <= c < 90),
        "low": sum(1 for c in confidences if c < 80),
    }


def _serialize(metrics) -> dict:
    d = asdict(metrics)
    d["timestamp"] = metrics.timestamp.isoformat()
    return d


@contextmanager
def timer() -> Iterator[dict]:
    """Yields a dict whose "ms" key holds elapsed milliseconds on exit."""
    elapsed = {"ms": 0}
    start = time.perf_counter()
    try:
        yield elapsed
    finally:
        elapsed["ms"] = int((time.perf_counter() - start) * 1000)


class MetricsRecorder:
    """Appends bounded metric histories under knowledge["metrics"]."""

    def __init__(self, kb_store: KnowledgeBaseStore, max_entries: int = MAX_METRIC_ENTRIES):
        self.kb_store = kb_store
        self.max_entries = max_entries

    def _metrics(self, bag: KnowledgeBag) -> dict:
        current = bag.get_record(METRICS_KEY)
        return {
            "extraction": list(current.get("extraction") or []),
            "application": list(current.get("application") or []),
            "quality": current.get("quality"),
        }

    def _append(self, kb_id: str, kind: str, entry: dict) -> bool:
        def mutate(bag: KnowledgeBag) -> None:
            metrics = self._metrics(bag)
            metrics[kind] = (metrics[kind] + [entry])[-self.max_entries :]
            bag[METRICS_KEY] = metrics

        return self.kb_store.update_bag(kb_id, mutate)

    def record_extraction(self, kb_id: str, metrics: ExtractionMetrics) -> bool:
        return self._append(kb_id, "extraction", _serialize(metrics))

    def record_application(self, kb_id: str, metrics: ApplicationMetrics) -> bool:
        logger.info(
            "learning_applied",
            knowledge_base_id=kb_id,
            applied=metrics.events_applied,
            skipped=metrics.events_skipped,
            ms=metrics.processing_time_ms,
        )
        return self._append(kb_id, "application", _serialize(metrics))

    def update_quality(self, kb_id: str, metrics: QualityMetrics) -> bool:
        """Replace the quality snapshot."""

        def mutate(bag: KnowledgeBag) -> None:
            current = self._metrics(bag)
            current["quality"] = _serialize(metrics)
            bag[METRICS_KEY] = current

        return self.kb_store.update_bag(kb_id, mutate)

    def get_metrics(self, kb_id: str) -> dict | None:
        kb = self.kb_store.get(kb_id)
        if kb is None:
            return None
        return self._metrics(kb.knowledge)

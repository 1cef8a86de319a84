"""Turns extracted insights into persisted, deduplicated learning events."""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from knowledge.store import KnowledgeBaseStore

from .audit import AuditTrail
from .background import BestEffort
from .confidence import clamp_confidence
from .embeddings import EmbeddingClient, cosine_similarity
from .metrics import ExtractionMetrics, MetricsRecorder
from .models import (
    DEFAULT_CONFIDENCE,
    AuditAction,
    AuditEntry,
    CreateEventsResult,
    ExtractedInsight,
    InsightValidationError,
    LearningEvent,
    SourceType,
)
from .similarity import DEFAULT_SIMILARITY_THRESHOLD, is_similar, normalize_text
from .store import EventStore

logger = structlog.get_logger()

DUPLICATE_CHECK_DAYS = 30
VALID_SOURCE_TYPES = {s.value for s in SourceType}


@dataclass
class _Candidate:
    """Existing text an incoming insight is checked against."""

    text: str
    event_id: str
    vector: list[float] | None = None
    backfill: bool = False


class LearningEventRecorder:
    """Validates, deduplicates and stores insights for one knowledge base at a time."""

    def __init__(
        self,
        event_store: EventStore,
        kb_store: KnowledgeBaseStore,
        audit: AuditTrail | None = None,
        metrics: MetricsRecorder | None = None,
        embeddings: EmbeddingClient | None = None,
        side_channel: BestEffort | None = None,
        duplicate_window_days: int = DUPLICATE_CHECK_DAYS,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        semantic_threshold: float | None = None,
    ):
        self.event_store = event_store
        self.kb_store = kb_store
        self.audit = audit
        self.metrics = metrics
        self.embeddings = embeddings
        self.side_channel = side_channel or BestEffort(inline=True)
        self.duplicate_window = timedelta(days=duplicate_window_days)
        self.similarity_threshold = similarity_threshold
        self.semantic_threshold = semantic_threshold

    def create_learning_events(
        self,
        knowledge_base_id: str,
        source_type: str,
        source_id: str,
        insights: list[ExtractedInsight | dict],
        triggered_by: str | None = None,
    ) -> CreateEventsResult:
        """Validate, dedup and bulk-persist insights as unapplied events.

        Invalid and duplicate insights are skipped with a reason in errors;
        the call succeeds when at least one event was stored.
        """
        if not knowledge_base_id or not source_id or not insights:
            return CreateEventsResult(
                success=False,
                events_created=0,
                errors=["Missing required parameters: knowledge_base_id, source_id, or insights"],
            )
        if source_type not in VALID_SOURCE_TYPES:
            return CreateEventsResult(
                success=False, events_created=0, errors=[f"Unknown source type: {source_type}"]
            )
        if not self.kb_store.exists(knowledge_base_id):
            return CreateEventsResult(
                success=False,
                events_created=0,
                errors=[f"Knowledge base not found: {knowledge_base_id}"],
            )

        errors: list[str] = []
        parsed: list[ExtractedInsight] = []
        for index, raw in enumerate(insights):
            try:
                insight = raw if isinstance(raw, ExtractedInsight) else ExtractedInsight.from_dict(raw)
                insight.validate()
            except (InsightValidationError, AttributeError, TypeError) as e:
                errors.append(f"Skipping invalid insight at index {index}: {e}")
                continue
            parsed.append(insight)

        try:
            candidates = self._load_candidates(knowledge_base_id, parsed)
        except Exception as e:
            logger.error("duplicate_lookup_failed", knowledge_base_id=knowledge_base_id, error=str(e))
            return CreateEventsResult(success=False, events_created=0, errors=errors + [str(e)])

        now = datetime.now()
        events: list[LearningEvent] = []
        for insight in parsed:
            vector = self._embed(insight.insight)
            pool = candidates.setdefault(insight.category, [])
            duplicate = self._find_duplicate(insight.insight, vector, pool)
            if duplicate is not None:
                confidence = clamp_confidence(insight.confidence, DEFAULT_CONFIDENCE)
                errors.append(
                    f'Skipping duplicate insight: "{insight.insight[:50]}..." '
                    f"(similar to existing event {duplicate.event_id}, new confidence {confidence})"
                )
                continue

            event = LearningEvent(
                id=uuid.uuid4().hex[:16],
                knowledge_base_id=knowledge_base_id,
                category=insight.category,
                event_type=insight.event_type,
                insight=insight.insight,
                confidence=clamp_confidence(insight.confidence, DEFAULT_CONFIDENCE),
                created_at=now,
                source_ids=[source_id],
                source_type=source_type,
                triggered_by=triggered_by,
                metadata=dict(insight.metadata),
                embedding=vector,
                embedding_model=self.embeddings.model if vector else None,
            )
            events.append(event)
            pool.append(_Candidate(text=event.insight, event_id=event.id, vector=vector))

        if not events:
            return CreateEventsResult(
                success=False,
                events_created=0,
                errors=errors or ["No valid insights to create"],
            )

        try:
            event_ids = self.event_store.add_many(events)
        except Exception as e:
            logger.error("event_insert_failed", knowledge_base_id=knowledge_base_id, error=str(e))
            return CreateEventsResult(success=False, events_created=0, errors=errors + [str(e)])

        ignored = len(events) - len(event_ids)
        if ignored:
            errors.append(f"Skipped {ignored} insight(s) already stored for this knowledge base")

        logger.info(
            "learning_events_created",
            knowledge_base_id=knowledge_base_id,
            source_type=source_type,
            created=len(event_ids),
            submitted=len(insights),
        )

        inserted = set(event_ids)
        stored = [e for e in events if e.id in inserted]
        self._after_create(knowledge_base_id, source_type, len(insights), stored, candidates)

        return CreateEventsResult(
            success=bool(event_ids),
            events_created=len(event_ids),
            event_ids=event_ids,
            errors=errors or None,
        )

    def _load_candidates(
        self, kb_id: str, insights: list[ExtractedInsight]
    ) -> dict[str, list[_Candidate]]:
        categories = sorted({i.category for i in insights})
        since = datetime.now() - self.duplicate_window
        pools: dict[str, list[_Candidate]] = {c: [] for c in categories}
        model = self.embeddings.model if self.embeddings else None
        for event in self.event_store.recent_by_categories(kb_id, categories, since):
            usable = event.embedding if event.embedding and event.embedding_model == model else None
            pools[event.category].append(
                _Candidate(text=event.insight, event_id=event.id, vector=usable)
            )
        return pools

    def _embed(self, text: str) -> list[float] | None:
        if self.embeddings is None:
            return None
        try:
            return self.embeddings.generate_embedding(text)
        except Exception as e:
            logger.warning("insight_embedding_failed", error=str(e))
            return None

    def _find_duplicate(
        self, text: str, vector: list[float] | None, pool: list[_Candidate]
    ) -> _Candidate | None:
        """Exact text first, then semantic when a vector is available, then textual."""
        normalized = normalize_text(text)
        for candidate in pool:
            if normalize_text(candidate.text) == normalized:
                return candidate

        if vector is not None:
            threshold = self.semantic_threshold or self.embeddings.threshold
            try:
                self._fill_vectors(pool)
                for candidate in pool:
                    if candidate.vector and cosine_similarity(vector, candidate.vector) >= threshold:
                        return candidate
            except Exception as e:
                logger.warning("semantic_duplicate_check_failed", error=str(e))

        for candidate in pool:
            if is_similar(candidate.text, text, self.similarity_threshold):
                return candidate
        return None

    def _fill_vectors(self, pool: list[_Candidate]) -> None:
        missing = [c for c in pool if c.vector is None]
        if not missing:
            return
        vectors = self.embeddings.generate_embeddings_batch([c.text for c in missing])
        for candidate, vector in zip(missing, vectors):
            candidate.vector = vector
            candidate.backfill = True

    def _after_create(
        self,
        kb_id: str,
        source_type: str,
        submitted: int,
        stored: list[LearningEvent],
        candidates: dict[str, list[_Candidate]],
    ) -> None:
        if self.audit is not None:
            entries = [
                AuditEntry(event_id=e.id, action=AuditAction.CREATED, reason=f"Created from {source_type}")
                for e in stored
            ]
            self.side_channel.submit("audit_created", self.audit.record_many, kb_id, entries)

        if self.metrics is not None and stored:
            by_category: dict[str, int] = {}
            for event in stored:
                by_category[event.category] = by_category.get(event.category, 0) + 1
            metrics = ExtractionMetrics(
                source_type=source_type,
                insights_extracted=submitted,
                insights_created=len(stored),
                insights_by_category=by_category,
                average_confidence=sum(e.confidence for e in stored) / len(stored),
                duplicate_count=submitted - len(stored),
            )
            self.side_channel.submit("extraction_metrics", self.metrics.record_extraction, kb_id, metrics)

        if self.embeddings is not None:
            backfill = [
                c for pool in candidates.values() for c in pool if c.backfill and c.vector
            ]
            model = self.embeddings.model
            for candidate in backfill:
                self.side_channel.submit(
                    "embedding_backfill",
                    self.event_store.update_embedding,
                    candidate.event_id,
                    candidate.vector,
                    model,
                )

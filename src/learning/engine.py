"""Applies unapplied learning events to a knowledge base in batches.

One call walks the event log page by page. For each page it decays
confidences, drops events that no longer qualify, orders and groups the rest
by target field, resolves every field independently, and commits the merged
update in one transaction before flipping those events to applied. Later
pages see the state written by earlier ones.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from knowledge.models import (
    BAG_FIELD,
    FIELD_HISTORY_KEY,
    BagValueError,
    KnowledgeBase,
    classify_bag_value,
)
from knowledge.store import KnowledgeBaseLockedError, KnowledgeBaseStore

from .audit import AuditTrail
from .background import BestEffort
from .confidence import DecayConfig, decay_skip_reason, get_decay_info
from .mapper import FieldMapper
from .metrics import (
    ApplicationMetrics,
    MetricsRecorder,
    QualityMetrics,
    confidence_distribution,
    timer,
)
from .models import (
    ApplyResult,
    AuditAction,
    AuditEntry,
    ConflictResolution,
    FieldMapping,
    FieldUpdate,
    LearningEvent,
    ResolutionStrategy,
)
from .priority import ScoredEvent, group_by_field, sort_events_by_priority
from .resolver import (
    apply_resolution,
    merge_array_field,
    merge_unique_strings,
    track_field_history,
)
from .store import EventStore

logger = structlog.get_logger()

DEFAULT_MIN_CONFIDENCE = 80
DEFAULT_BATCH_SIZE = 100

_OUTCOME_NAMES = {
    ResolutionStrategy.REPLACE.value: "replaced",
    ResolutionStrategy.MERGE.value: "merged",
    ResolutionStrategy.KEEP.value: "kept",
    ResolutionStrategy.APPEND.value: "appended",
}


@dataclass
class _Run:
    """Accumulated outcome of one apply call."""

    applied: dict[str, str] = field(default_factory=dict)
    applied_confidence: dict[str, int] = field(default_factory=dict)
    skipped: dict[str, str] = field(default_factory=dict)
    updates: list[FieldUpdate] = field(default_factory=list)
    fields_updated: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    processed: int = 0
    decayed: int = 0

    def skip(self, event_id: str, reason: str) -> None:
        self.skipped.setdefault(event_id, reason)


@dataclass
class _FieldMerge:
    """Staged result of resolving one target within a batch."""

    fields: dict[str, Any] = field(default_factory=dict)
    bag: dict[str, Any] = field(default_factory=dict)
    updates: list[FieldUpdate] = field(default_factory=list)


class LearningEngine:
    """Entry point for merging learning events into knowledge bases."""

    def __init__(
        self,
        event_store: EventStore,
        kb_store: KnowledgeBaseStore,
        mapper: FieldMapper | None = None,
        audit: AuditTrail | None = None,
        metrics: MetricsRecorder | None = None,
        side_channel: BestEffort | None = None,
        decay_config: DecayConfig | None = None,
    ):
        self.event_store = event_store
        self.kb_store = kb_store
        self.mapper = mapper or FieldMapper()
        self.audit = audit
        self.metrics = metrics
        self.side_channel = side_channel or BestEffort(inline=True)
        self.decay_config = decay_config

    def apply_learning_events(
        self,
        knowledge_base_id: str,
        min_confidence: int = DEFAULT_MIN_CONFIDENCE,
        batch_size: int = DEFAULT_BATCH_SIZE,
        decay_config: DecayConfig | None = None,
    ) -> ApplyResult:
        """Run the full merge cycle for one knowledge base.

        Missing id, unknown knowledge base, bad batch size or a held lease fail
        the call before anything is written. Per-field failures are isolated
        and reported in errors; a failure after some batches committed returns
        success=False with the counts accumulated so far.
        """
        if not knowledge_base_id:
            return _failure("Missing required parameter: knowledge_base_id")
        if batch_size < 1:
            return _failure(f"batch_size must be positive, got {batch_size}")
        if not self.kb_store.exists(knowledge_base_id):
            return _failure(f"Knowledge base not found: {knowledge_base_id}")

        decay = decay_config or self.decay_config
        try:
            with self.kb_store.lease(knowledge_base_id) as token:
                return self._apply(knowledge_base_id, token, min_confidence, batch_size, decay)
        except KnowledgeBaseLockedError as e:
            logger.warning("apply_lease_unavailable", knowledge_base_id=knowledge_base_id, error=str(e))
            return _failure(str(e))

    def _apply(
        self,
        kb_id: str,
        token: str,
        min_confidence: int,
        batch_size: int,
        decay: DecayConfig | None,
    ) -> ApplyResult:
        run = _Run()
        fatal: str | None = None
        kb = self.kb_store.get(kb_id)
        if kb is None:
            return _failure(f"Knowledge base not found: {kb_id}")

        with timer() as elapsed:
            try:
                cursor = None
                while True:
                    page = self.event_store.fetch_unapplied(
                        kb_id, min_confidence=min_confidence, limit=batch_size, cursor=cursor
                    )
                    run.processed += len(page.events)
                    if page.events:
                        kb = self._process_batch(kb, page.events, min_confidence, decay, run)
                    if not self.kb_store.renew_lease(kb_id, token):
                        raise KnowledgeBaseLockedError(f"Lease on {kb_id} was lost during apply")
                    if page.next_cursor is None:
                        break
                    cursor = page.next_cursor
            except Exception as e:
                fatal = str(e) or e.__class__.__name__
                logger.error(
                    "apply_learning_events_failed",
                    knowledge_base_id=kb_id,
                    applied_so_far=len(run.applied),
                    error=fatal,
                )

        self._record_side_channels(kb, run, elapsed["ms"])

        logger.info(
            "learning_events_applied",
            knowledge_base_id=kb_id,
            processed=run.processed,
            applied=len(run.applied),
            skipped=len(run.skipped),
            fields=run.fields_updated,
            enrichment_version=kb.enrichment_version,
        )
        errors = ([fatal] if fatal else []) + run.errors
        return ApplyResult(
            success=fatal is None,
            events_applied=len(run.applied),
            events_skipped=len(run.skipped),
            fields_updated=list(run.fields_updated),
            enrichment_version=kb.enrichment_version,
            errors=errors or None,
        )

    def _process_batch(
        self,
        kb: KnowledgeBase,
        events: list[LearningEvent],
        min_confidence: int,
        decay: DecayConfig | None,
        run: _Run,
    ) -> KnowledgeBase:
        now = datetime.now()
        scored: list[ScoredEvent] = []
        for event in events:
            info = get_decay_info(event.confidence, event.created_at, decay, now)
            if info["adjusted_confidence"] < min_confidence:
                run.skip(event.id, decay_skip_reason(info, min_confidence))
                run.decayed += 1
            else:
                scored.append(ScoredEvent(event=event, confidence=info["adjusted_confidence"]))
        if not scored:
            return kb

        grouped = group_by_field(sort_events_by_priority(scored), self.mapper, kb)
        run.errors.extend(grouped.errors)
        for event, reason in grouped.skipped:
            run.skip(event.id, reason)

        fields: dict[str, Any] = {}
        bag: dict[str, Any] = {}
        history = kb.knowledge.get_record(FIELD_HISTORY_KEY)
        batch_applied: dict[str, str] = {}
        batch_updates: list[FieldUpdate] = []

        for target, members in grouped.groups.items():
            try:
                merge, history = self._merge_target(kb, target, members, history, now)
            except Exception as e:
                run.errors.append(f"Error processing field {target}: {e}")
                for member, _ in members:
                    run.skip(member.event.id, f"field {target} failed: {e}")
                logger.warning("field_merge_failed", knowledge_base_id=kb.id, field=target, error=str(e))
                continue
            fields.update(merge.fields)
            bag.update(merge.bag)
            batch_updates.extend(merge.updates)
            for member, _ in members:
                batch_applied[member.event.id] = target

        if not batch_applied:
            return kb

        if history:
            bag[FIELD_HISTORY_KEY] = history
        updated = self.kb_store.update(kb.id, fields=fields, bag_updates=bag)
        self.event_store.mark_applied({eid: [t] for eid, t in batch_applied.items()}, applied_at=now)

        confidences = {s.event.id: s.event.confidence for s in scored}
        for event_id, target in batch_applied.items():
            run.applied[event_id] = target
            run.applied_confidence[event_id] = confidences[event_id]
            if target not in run.fields_updated:
                run.fields_updated.append(target)
        run.updates.extend(batch_updates)
        logger.debug(
            "learning_batch_committed",
            knowledge_base_id=kb.id,
            events=len(batch_applied),
            version=updated.version,
        )
        return updated

    def _merge_target(
        self,
        kb: KnowledgeBase,
        target: str,
        members: list[tuple[ScoredEvent, FieldMapping]],
        history: dict,
        now: datetime,
    ) -> tuple[_FieldMerge, dict]:
        """Resolve every event aimed at one target into a single staged value."""
        first = members[0][1]
        if first.field == BAG_FIELD:
            return self._merge_bag(kb, target, first.bag_key, members), history
        if first.field == "tool_stack":
            return self._merge_tools(kb, members), history
        return self._merge_scalar(kb, first.field, members, history, now)

    def _merge_tools(self, kb, members) -> _FieldMerge:
        current = list(kb.tool_stack)
        merged = list(current)
        merge = _FieldMerge()
        for scored, mapping in members:
            resolution = self.mapper.resolver.resolve(merged, list(mapping.value), scored.confidence)
            merged = merge_unique_strings(merged, list(mapping.value))
            merge.updates.append(
                FieldUpdate("tool_stack", current, merged, scored.event.id, resolution)
            )
        merge.fields["tool_stack"] = merged
        return merge

    @staticmethod
    def _merge_bag(kb, target: str, key: str, members) -> _FieldMerge:
        current = kb.knowledge.get(key)
        if current is not None and not isinstance(current, list):
            raise BagValueError(f"knowledge.{key} holds {kb.knowledge.kind(key)}, cannot merge a list into it")
        merged = list(current or [])
        merge = _FieldMerge()
        for scored, mapping in members:
            merged = merge_array_field(merged, list(mapping.value))
            merge.updates.append(
                FieldUpdate(
                    target,
                    list(current or []),
                    merged,
                    scored.event.id,
                    ConflictResolution(
                        should_apply=True,
                        strategy=ResolutionStrategy.APPEND,
                        reason=f"Appended to {target}",
                    ),
                )
            )
        classify_bag_value(merged)
        merge.bag[key] = merged
        return merge

    @staticmethod
    def _merge_scalar(kb, field_name: str, members, history: dict, now: datetime):
        """Highest confidence wins; every event in the group counts as absorbed."""
        current = kb.get_field(field_name)
        best_scored, best = members[0]
        for scored, mapping in members[1:]:
            if scored.confidence > best_scored.confidence:
                best_scored, best = scored, mapping

        resolution = best.resolution or ConflictResolution(
            should_apply=True, strategy=ResolutionStrategy.REPLACE, reason="No resolution recorded"
        )
        value = apply_resolution(current, best.value, resolution)
        if resolution.track_history and current:
            history = track_field_history(
                history, field_name, current, value, best_scored.event.id, changed_at=now
            )

        merge = _FieldMerge(fields={field_name: value})
        for scored, mapping in members:
            merge.updates.append(
                FieldUpdate(field_name, current, mapping.value, scored.event.id, mapping.resolution)
            )
        return merge, history

    def _record_side_channels(self, kb: KnowledgeBase, run: _Run, elapsed_ms: int) -> None:
        applied_ids = list(run.applied)
        if self.audit is not None and (run.applied or run.skipped):
            by_event = {u.event_id: u for u in run.updates}
            entries = []
            for event_id, target in run.applied.items():
                update = by_event.get(event_id)
                entries.append(
                    AuditEntry(
                        event_id=event_id,
                        action=AuditAction.APPLIED,
                        reason=(
                            update.resolution.reason
                            if update and update.resolution
                            else "Applied to knowledge base"
                        ),
                        resulting_version=kb.enrichment_version,
                        fields_affected=[target],
                        previous_value=update.old_value if update else None,
                        new_value=update.new_value if update else None,
                    )
                )
            for event_id, reason in run.skipped.items():
                entries.append(AuditEntry(event_id=event_id, action=AuditAction.SKIPPED, reason=reason))
            self.side_channel.submit("audit_apply", self.audit.record_many, kb.id, entries)
            if applied_ids:
                self.side_channel.submit("snapshot", self.audit.create_snapshot, kb.id, applied_ids)

        if self.metrics is not None:
            confidences = list(run.applied_confidence.values())
            application = ApplicationMetrics(
                knowledge_base_id=kb.id,
                events_processed=run.processed,
                events_applied=len(run.applied),
                events_skipped=len(run.skipped),
                events_decayed=run.decayed,
                fields_updated=list(run.fields_updated),
                average_confidence=sum(confidences) / len(confidences) if confidences else 0.0,
                processing_time_ms=elapsed_ms,
            )
            self.side_channel.submit(
                "application_metrics", self.metrics.record_application, kb.id, application
            )

            quality = QualityMetrics(
                knowledge_base_id=kb.id,
                confidence_distribution=confidence_distribution(confidences),
            )
            for update in run.updates:
                if update.resolution is not None:
                    name = _OUTCOME_NAMES[str(update.resolution.strategy)]
                    quality.conflict_resolution_outcomes[name] += 1
            self.side_channel.submit("quality_metrics", self.metrics.update_quality, kb.id, quality)


def _failure(message: str) -> ApplyResult:
    return ApplyResult(
        success=False,
        events_applied=0,
        events_skipped=0,
        fields_updated=[],
        enrichment_version=0,
        errors=[message],
    )

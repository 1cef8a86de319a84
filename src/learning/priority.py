"""Ordering and grouping of learning events within an application batch."""

from collections import OrderedDict
from dataclasses import dataclass, field
from enum import IntEnum

from knowledge.models import KnowledgeBase

from .mapper import FieldMapper
from .models import FieldMapping, InsightCategory, LearningEvent, LearningEventType, SourceType


class EventPriority(IntEnum):
    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4


_HIGH_VALUE_SOURCES = {SourceType.JOB_DESCRIPTION.value, SourceType.CHAT_CONVERSATION.value}
_IMPORTANT_CATEGORIES = {
    InsightCategory.BUSINESS_CONTEXT.value,
    InsightCategory.PROCESS_OPTIMIZATION.value,
    InsightCategory.RISK_MANAGEMENT.value,
}
_IMPORTANT_TYPES = {LearningEventType.INSIGHT_GENERATED.value, LearningEventType.OPTIMIZATION_FOUND.value}


def calculate_event_priority(
    confidence: int,
    category: str,
    event_type: str,
    source_type: str | None = None,
    metadata: dict | None = None,
) -> EventPriority:
    """Priority from confidence, category, event type and source."""
    metadata = metadata or {}
    if confidence >= 90:
        if (
            category == InsightCategory.RISK_MANAGEMENT
            or (category == InsightCategory.BUSINESS_CONTEXT and metadata.get("bottleneck"))
            or event_type == LearningEventType.INCONSISTENCY_FIXED
        ):
            return EventPriority.CRITICAL
        if source_type in _HIGH_VALUE_SOURCES:
            return EventPriority.HIGH
    if confidence >= 85 and (category in _IMPORTANT_CATEGORIES or event_type in _IMPORTANT_TYPES):
        return EventPriority.HIGH
    if confidence >= 80:
        return EventPriority.MEDIUM
    return EventPriority.LOW


@dataclass
class ScoredEvent:
    """An event paired with its decayed confidence for this run."""

    event: LearningEvent
    confidence: int

    @property
    def priority(self) -> EventPriority:
        return calculate_event_priority(
            self.confidence,
            self.event.category,
            self.event.event_type,
            self.event.source_type,
            self.event.metadata,
        )


def is_critical_event(scored: ScoredEvent) -> bool:
    return scored.priority == EventPriority.CRITICAL


def sort_events_by_priority(events: list[ScoredEvent]) -> list[ScoredEvent]:
    """Critical first, then decayed confidence descending. Stable for ties."""
    return sorted(events, key=lambda s: (s.priority, -s.confidence))


def group_events_by_priority(events: list[ScoredEvent]) -> dict[EventPriority, list[ScoredEvent]]:
    grouped: dict[EventPriority, list[ScoredEvent]] = {}
    for scored in events:
        grouped.setdefault(scored.priority, []).append(scored)
    return grouped


@dataclass
class FieldGroups:
    """Events of one batch bucketed by target, plus those that map nowhere.

    groups preserves the order in which targets were first seen, so with a
    priority-sorted input the most important field is processed first.
    """

    groups: "OrderedDict[str, list[tuple[ScoredEvent, FieldMapping]]]" = field(
        default_factory=OrderedDict
    )
    skipped: list[tuple[LearningEvent, str]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def group_by_field(
    events: list[ScoredEvent], mapper: FieldMapper, kb: KnowledgeBase
) -> FieldGroups:
    """Map every event and bucket it by FieldMapping.target.

    Unmapped events and mappings the resolver declined land in skipped with
    a reason. A mapping exception only skips that one event.
    """
    result = FieldGroups()
    for scored in events:
        event = scored.event
        try:
            mapping = mapper.map_event(event, kb, confidence=scored.confidence)
        except Exception as e:
            result.errors.append(f"Error mapping event {event.id}: {e}")
            result.skipped.append((event, f"mapping failed: {e}"))
            continue
        if mapping is None:
            result.skipped.append((event, f"no field mapping for category {event.category!r}"))
            continue
        if not mapping.should_apply:
            reason = mapping.resolution.reason if mapping.resolution else "mapping declined"
            result.skipped.append((event, reason))
            continue
        result.groups.setdefault(mapping.target, []).append((scored, mapping))
    return result

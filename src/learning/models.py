"""Data models for learning events and their application results."""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

DEFAULT_CONFIDENCE = 70
MIN_INSIGHT_LENGTH = 10
MAX_INSIGHT_LENGTH = 1000


class InsightCategory(StrEnum):
    BUSINESS_CONTEXT = "business_context"
    WORKFLOW_PATTERNS = "workflow_patterns"
    PROCESS_OPTIMIZATION = "process_optimization"
    SERVICE_PATTERNS = "service_patterns"
    RISK_MANAGEMENT = "risk_management"
    HIRING_PATTERNS = "hiring_patterns"
    SERVICE_PREFERENCES = "service_preferences"
    SKILL_REQUIREMENTS = "skill_requirements"
    WORKFLOW_NEEDS = "workflow_needs"


class LearningEventType(StrEnum):
    INSIGHT_GENERATED = "INSIGHT_GENERATED"
    PATTERN_DETECTED = "PATTERN_DETECTED"
    OPTIMIZATION_FOUND = "OPTIMIZATION_FOUND"
    INCONSISTENCY_FIXED = "INCONSISTENCY_FIXED"
    KNOWLEDGE_EXPANDED = "KNOWLEDGE_EXPANDED"


class SourceType(StrEnum):
    JOB_DESCRIPTION = "JOB_DESCRIPTION"
    SOP_GENERATION = "SOP_GENERATION"
    CHAT_CONVERSATION = "CHAT_CONVERSATION"
    INITIAL_ONBOARDING = "INITIAL_ONBOARDING"
    MANUAL_UPDATE = "MANUAL_UPDATE"
    FILE_UPLOAD = "FILE_UPLOAD"
    AI_ENRICHMENT = "AI_ENRICHMENT"


class AuditAction(StrEnum):
    CREATED = "created"
    APPLIED = "applied"
    SKIPPED = "skipped"
    REVERTED = "reverted"


class ResolutionStrategy(StrEnum):
    REPLACE = "replace"
    MERGE = "merge"
    KEEP = "keep"
    APPEND = "append"


VALID_CATEGORIES = {c.value for c in InsightCategory}
VALID_EVENT_TYPES = {t.value for t in LearningEventType}


class InsightValidationError(ValueError):
    """Extracted insight violates the text/category/event type constraints."""


@dataclass
class ExtractedInsight:
    """Candidate fact produced by an extractor, before deduplication."""

    insight: str
    category: str
    event_type: str
    confidence: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        """Raise InsightValidationError unless the insight can become an event."""
        text = (self.insight or "").strip()
        if not text or not self.category or not self.event_type:
            raise InsightValidationError(
                "missing required fields "
                f"(insight: {bool(text)}, category: {bool(self.category)}, "
                f"event_type: {bool(self.event_type)})"
            )
        if not MIN_INSIGHT_LENGTH <= len(text) <= MAX_INSIGHT_LENGTH:
            raise InsightValidationError(
                f"insight length {len(text)} outside {MIN_INSIGHT_LENGTH}-{MAX_INSIGHT_LENGTH}"
            )
        if self.category not in VALID_CATEGORIES:
            raise InsightValidationError(f"unknown category: {self.category}")
        if self.event_type not in VALID_EVENT_TYPES:
            raise InsightValidationError(f"unknown event type: {self.event_type}")
        if self.confidence is not None and not isinstance(self.confidence, (int, float)):
            raise InsightValidationError(f"confidence is not numeric: {self.confidence!r}")
        if self.confidence is not None and not math.isfinite(self.confidence):
            raise InsightValidationError(f"confidence is not finite: {self.confidence!r}")
        if not isinstance(self.metadata, dict):
            raise InsightValidationError("metadata must be a mapping")

    @classmethod
    def from_dict(cls, data: dict) -> "ExtractedInsight":
        """Build from extractor JSON; accepts camelCase eventType."""
        return cls(
            insight=(data.get("insight") or data.get("text") or "").strip(),
            category=(data.get("category") or "").strip(),
            event_type=(data.get("event_type") or data.get("eventType") or "").strip(),
            confidence=data.get("confidence"),
            metadata=data.get("metadata") or {},
        )


@dataclass
class LearningEvent:
    """Persisted, confidence-scored candidate fact."""

    id: str
    knowledge_base_id: str
    category: str
    event_type: str
    insight: str
    confidence: int
    created_at: datetime = field(default_factory=datetime.now)
    source_ids: list[str] = field(default_factory=list)
    source_type: str | None = None
    triggered_by: str | None = None
    applied: bool = False
    applied_at: datetime | None = None
    applied_to_fields: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding: list[float] | None = None
    embedding_model: str | None = None


@dataclass
class ConflictResolution:
    """Decision for merging a new value into an existing field."""

    should_apply: bool
    strategy: ResolutionStrategy
    reason: str
    track_history: bool = False


@dataclass
class FieldMapping:
    """Target of one learning event in the knowledge base.

    For bag targets field is "knowledge", bag_key names the bag entry and
    value holds the items to merge.
    """

    field: str
    value: Any
    should_apply: bool = True
    resolution: ConflictResolution | None = None
    bag_key: str | None = None

    @property
    def target(self) -> str:
        """Grouping key: the field, or knowledge.<key> for bag entries."""
        return f"{self.field}.{self.bag_key}" if self.bag_key else self.field


@dataclass
class FieldUpdate:
    field: str
    old_value: Any
    new_value: Any
    event_id: str
    resolution: ConflictResolution | None = None


@dataclass
class AuditEntry:
    event_id: str
    action: AuditAction
    reason: str
    timestamp: datetime = field(default_factory=datetime.now)
    resulting_version: int | None = None
    fields_affected: list[str] = field(default_factory=list)
    previous_value: Any = None
    new_value: Any = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["action"] = str(self.action)
        d["timestamp"] = self.timestamp.isoformat()
        return d


@dataclass
class CreateEventsResult:
    success: bool
    events_created: int
    event_ids: list[str] = field(default_factory=list)
    errors: list[str] | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ApplyResult:
    success: bool
    events_applied: int
    events_skipped: int
    fields_updated: list[str] = field(default_factory=list)
    enrichment_version: int = 0
    errors: list[str] | None = None

    def to_dict(self) -> dict:
        return asdict(self)

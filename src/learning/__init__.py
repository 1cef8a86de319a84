"""Learning event engine: dedup, decay, scheduling and audit."""

from .audit import AuditTrail
from .background import BestEffort
from .confidence import DecayConfig, adjust_confidence_by_age, clamp_confidence
from .embeddings import EmbeddingCache, EmbeddingClient, EmbeddingDimensionError, cosine_similarity
from .engine import LearningEngine
from .extractor import InsightExtractor
from .mapper import FieldMapper, HeuristicToolExtractor, ToolNameStrategy
from .metrics import MetricsRecorder
from .models import (
    ApplyResult,
    AuditAction,
    AuditEntry,
    ConflictResolution,
    CreateEventsResult,
    ExtractedInsight,
    InsightCategory,
    InsightValidationError,
    LearningEvent,
    LearningEventType,
    ResolutionStrategy,
    SourceType,
)
from .priority import EventPriority, calculate_event_priority
from .recorder import LearningEventRecorder
from .resolver import ConflictResolver
from .similarity import is_similar
from .store import EventPage, EventStore

__all__ = [
    "ApplyResult",
    "AuditAction",
    "AuditEntry",
    "AuditTrail",
    "BestEffort",
    "ConflictResolution",
    "ConflictResolver",
    "CreateEventsResult",
    "DecayConfig",
    "EmbeddingCache",
    "EmbeddingClient",
    "EmbeddingDimensionError",
    "EventPage",
    "EventPriority",
    "EventStore",
    "ExtractedInsight",
    "FieldMapper",
    "HeuristicToolExtractor",
    "InsightCategory",
    "InsightExtractor",
    "InsightValidationError",
    "LearningEngine",
    "LearningEvent",
    "LearningEventRecorder",
    "LearningEventType",
    "MetricsRecorder",
    "ResolutionStrategy",
    "SourceType",
    "ToolNameStrategy",
    "adjust_confidence_by_age",
    "calculate_event_priority",
    "clamp_confidence",
    "cosine_similarity",
    "is_similar",
]

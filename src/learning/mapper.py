"""Maps learning events onto knowledge base fields and bag keys.

Mapping is deterministic: the same event against the same knowledge base
always yields the same FieldMapping. Scalar targets are run through the
ConflictResolver up front so callers know whether the event would change
anything; list and bag targets always merge.
"""

import re
from abc import ABC, abstractmethod
from typing import Any

import structlog

from knowledge.models import BAG_FIELD, KnowledgeBase

from .models import FieldMapping, InsightCategory, LearningEvent
from .resolver import ConflictResolver

logger = structlog.get_logger()

_TLD_SUFFIX = re.compile(r"\.(com|io|co|app|dev|net|org)$", re.IGNORECASE)
_NON_WORD = re.compile(r"[^\w\s]")
_SPACES = re.compile(r"\s+")
_HAS_LETTER = re.compile(r"[a-zA-Z]")
_STARTS_WITH_LETTER = re.compile(r"^[A-Za-z]")
_CAPITALISED_PHRASE = re.compile(
    r"\b([A-Z][a-zA-Z0-9]+(?:\.[a-zA-Z0-9]+)?(?:\s+[A-Z][a-zA-Z0-9]+)*)\b"
)

TOOL_STOP_WORDS = frozenset(
    {
        "the", "this", "that", "these", "those",
        "company", "business", "organization",
        "we", "they", "our", "your", "their",
        "using", "with", "through", "via",
    }
)  # fmt: skip


class ToolNameStrategy(ABC):
    """Pulls tool names out of an event's text and metadata."""

    @abstractmethod
    def extract(self, insight: str, metadata: dict, existing: list[str]) -> list[str]:
        """Return tool names, reusing casing from existing where they match."""
        ...


class HeuristicToolExtractor(ToolNameStrategy):
    """Metadata first (new_tool, then tools), capitalised-phrase regex as fallback."""

    def __init__(self, stop_words: frozenset[str] = TOOL_STOP_WORDS, min_len: int = 2, max_len: int = 50):
        self.stop_words = stop_words
        self.min_len = min_len
        self.max_len = max_len

    @staticmethod
    def normalize(name: str) -> str:
        name = _TLD_SUFFIX.sub("", name.lower().strip())
        name = _NON_WORD.sub("", name)
        return _SPACES.sub(" ", name).strip()

    def is_valid(self, name: str) -> bool:
        name = name.strip()
        if not self.min_len <= len(name) <= self.max_len:
            return False
        if name.lower() in self.stop_words:
            return False
        return bool(_HAS_LETTER.search(name))

    def match_existing(self, name: str, existing: list[str]) -> str | None:
        normalized = self.normalize(name)
        for tool in existing:
            if self.normalize(tool) == normalized:
                return tool
        return None

    def extract(self, insight: str, metadata: dict, existing: list[str]) -> list[str]:
        found: list[str] = []

        def add(name: str) -> None:
            if name and name not in found:
                found.append(name)

        candidates = []
        if metadata.get("new_tool"):
            candidates.append(metadata["new_tool"])
        tools = metadata.get("tools")
        if tools:
            candidates.extend(tools if isinstance(tools, list) else [tools])

        for candidate in candidates:
            name = str(candidate).strip()
            if self.is_valid(name):
                add(self.match_existing(name, existing) or name)

        if not found and insight:
            for match in _CAPITALISED_PHRASE.findall(insight):
                name = match.strip()
                if not self.is_valid(name):
                    continue
                known = self.match_existing(name, existing)
                if known:
                    add(known)
                elif len(name) >= 3 and _STARTS_WITH_LETTER.match(name):
                    add(name)

        return found


# metadata key -> scalar field, checked in order
_BUSINESS_SCALARS = (
    ("bottleneck", "biggest_bottleneck"),
    ("objection", "top_objection"),
    ("core_offer", "core_offer"),
    ("ideal_customer", "ideal_customer"),
    ("primary_goal", "primary_goal"),
)

# category -> ((metadata key, bag key), ...), checked in order
_TEXT_BAG_KEYS = {
    InsightCategory.BUSINESS_CONTEXT.value: (
        ("company_stage", "company_stages"),
        ("growth_indicators", "growth_indicators"),
        ("hidden_complexity", "hidden_complexities"),
    ),
    InsightCategory.WORKFLOW_PATTERNS.value: (("implicit_need", "implicit_needs"),),
    InsightCategory.PROCESS_OPTIMIZATION.value: (
        ("pain_point", "pain_points"),
        ("documentation_gap", "documentation_gaps"),
        ("process_complexity", "process_complexities"),
    ),
}

# category -> bag key for plain insight records when no metadata key matched
_FALLBACK_BAG_KEYS = {
    InsightCategory.BUSINESS_CONTEXT.value: "business_context_insights",
    InsightCategory.WORKFLOW_PATTERNS.value: "workflow_patterns",
    InsightCategory.PROCESS_OPTIMIZATION.value: "process_optimizations",
    InsightCategory.SERVICE_PATTERNS.value: "service_patterns",
    InsightCategory.SERVICE_PREFERENCES.value: "service_patterns",
    InsightCategory.RISK_MANAGEMENT.value: "identified_risks",
    InsightCategory.HIRING_PATTERNS.value: "hiring_patterns",
    InsightCategory.SKILL_REQUIREMENTS.value: "skill_requirements",
    InsightCategory.WORKFLOW_NEEDS.value: "workflow_needs",
}


def _compact(record: dict) -> dict:
    return {k: v for k, v in record.items() if v is not None}


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else str(value).strip()


def _texts(value: Any) -> list[str]:
    """One text item per list element; scalars become a single item."""
    if isinstance(value, (list, tuple, set)):
        return [t for t in (_text(v) for v in value if v is not None) if t]
    return [_text(value)]


class FieldMapper:
    """Resolves the knowledge base target of a learning event."""

    def __init__(
        self,
        resolver: ConflictResolver | None = None,
        tool_strategy: ToolNameStrategy | None = None,
    ):
        self.resolver = resolver or ConflictResolver()
        self.tool_strategy = tool_strategy or HeuristicToolExtractor()

    def map_event(
        self, event: LearningEvent, kb: KnowledgeBase, confidence: int | None = None
    ) -> FieldMapping | None:
        """Return the target for event, or None when nothing in it is mappable.

        confidence overrides the event's stored confidence (decayed value).
        """
        category = (event.category or "").strip()
        insight = (event.insight or "").strip()
        if not category:
            return None
        metadata = event.metadata or {}
        confidence = event.confidence if confidence is None else confidence

        if category == InsightCategory.BUSINESS_CONTEXT:
            for meta_key, field_name in _BUSINESS_SCALARS:
                if metadata.get(meta_key):
                    return self._scalar(kb, field_name, _text(metadata[meta_key]), confidence)

        if category == InsightCategory.WORKFLOW_PATTERNS:
            tools = self.tool_strategy.extract(insight, metadata, list(kb.tool_stack))
            if tools:
                return FieldMapping(field="tool_stack", value=tools)

        for meta_key, bag_key in _TEXT_BAG_KEYS.get(category, ()):
            items = _texts(metadata[meta_key]) if metadata.get(meta_key) else []
            if items:
                return self._bag(bag_key, items)

        if category == InsightCategory.WORKFLOW_PATTERNS and metadata.get("cluster_name"):
            return self._bag(
                "task_clusters",
                [
                    _compact(
                        {
                            "name": metadata["cluster_name"],
                            "workflow_type": metadata.get("workflow_type"),
                            "complexity_score": metadata.get("complexity_score"),
                        }
                    )
                ],
            )

        if category in (InsightCategory.SERVICE_PATTERNS, InsightCategory.SERVICE_PREFERENCES):
            service = metadata.get("recommended_service") or metadata.get("service_type")
            if service:
                return self._bag(
                    "service_patterns",
                    [
                        _compact(
                            {
                                "service_type": service,
                                "confidence": metadata.get("confidence"),
                                "decision_logic": metadata.get("decision_logic"),
                            }
                        )
                    ],
                )

        if category == InsightCategory.RISK_MANAGEMENT and metadata.get("risk"):
            return self._bag(
                "identified_risks",
                [
                    _compact(
                        {
                            "risk": metadata["risk"],
                            "category": metadata.get("category"),
                            "severity": metadata.get("severity"),
                        }
                    )
                ],
            )

        if not insight:
            return None
        bag_key = _FALLBACK_BAG_KEYS.get(category, f"{category}_insights")
        return self._bag(bag_key, [self._insight_record(event, insight)])

    def _scalar(self, kb: KnowledgeBase, field_name: str, value: str, confidence: int) -> FieldMapping:
        resolution = self.resolver.resolve(kb.get_field(field_name), value, confidence)
        return FieldMapping(
            field=field_name,
            value=value,
            should_apply=resolution.should_apply,
            resolution=resolution,
        )

    @staticmethod
    def _bag(bag_key: str, items: list) -> FieldMapping:
        return FieldMapping(field=BAG_FIELD, value=items, bag_key=bag_key)

    @staticmethod
    def _insight_record(event: LearningEvent, insight: str) -> dict:
        metadata = event.metadata or {}
        return _compact(
            {
                "insight": insight,
                "evidence": metadata.get("evidence"),
                "source_section": metadata.get("source_section"),
                "confidence": event.confidence,
            }
        )

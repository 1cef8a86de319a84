"""Tests for event priority and per-field grouping."""

from unittest.mock import MagicMock

import pytest

from knowledge.models import KnowledgeBase
from learning.mapper import FieldMapper
from learning.priority import (
    EventPriority,
    ScoredEvent,
    calculate_event_priority,
    group_by_field,
    group_events_by_priority,
    is_critical_event,
    sort_events_by_priority,
)


class TestCalculatePriority:
    @pytest.mark.parametrize(
        "confidence,category,event_type,source,metadata,expected",
        [
            (95, "risk_management", "PATTERN_DETECTED", None, None, EventPriority.CRITICAL),
            (90, "business_context", "PATTERN_DETECTED", None, {"bottleneck": "x"}, EventPriority.CRITICAL),
            (92, "workflow_patterns", "INCONSISTENCY_FIXED", None, None, EventPriority.CRITICAL),
            (92, "workflow_patterns", "PATTERN_DETECTED", "JOB_DESCRIPTION", None, EventPriority.HIGH),
            (86, "process_optimization", "PATTERN_DETECTED", None, None, EventPriority.HIGH),
            (86, "workflow_patterns", "OPTIMIZATION_FOUND", None, None, EventPriority.HIGH),
            (86, "workflow_patterns", "PATTERN_DETECTED", None, None, EventPriority.MEDIUM),
            (80, "hiring_patterns", "KNOWLEDGE_EXPANDED", None, None, EventPriority.MEDIUM),
            (79, "risk_management", "INSIGHT_GENERATED", None, None, EventPriority.LOW),
        ],
    )
    def test_rules(self, confidence, category, event_type, source, metadata, expected):
        assert calculate_event_priority(confidence, category, event_type, source, metadata) == expected


class TestSorting:
    def test_critical_first_then_confidence(self, make_event):
        low = ScoredEvent(make_event(category="hiring_patterns", event_type="KNOWLEDGE_EXPANDED"), 81)
        high_conf = ScoredEvent(make_event(category="hiring_patterns", event_type="KNOWLEDGE_EXPANDED"), 84)
        critical = ScoredEvent(make_event(category="risk_management"), 90)
        ordered = sort_events_by_priority([low, high_conf, critical])
        assert ordered == [critical, high_conf, low]
        assert is_critical_event(critical)

    def test_stable_for_ties(self, make_event):
        a = ScoredEvent(make_event(category="hiring_patterns"), 80)
        b = ScoredEvent(make_event(category="hiring_patterns"), 80)
        assert sort_events_by_priority([a, b]) == [a, b]
        assert sort_events_by_priority([b, a]) == [b, a]

    def test_uses_decayed_confidence(self, make_event):
        event = make_event(category="risk_management", confidence=95)
        assert ScoredEvent(event, 95).priority == EventPriority.CRITICAL
        assert ScoredEvent(event, 70).priority == EventPriority.LOW

    def test_group_by_priority(self, make_event):
        a = ScoredEvent(make_event(category="risk_management"), 95)
        b = ScoredEvent(make_event(category="hiring_patterns"), 70)
        grouped = group_events_by_priority([a, b])
        assert grouped[EventPriority.CRITICAL] == [a]
        assert grouped[EventPriority.LOW] == [b]


class TestGroupByField:
    def test_groups_by_target_in_first_seen_order(self, make_event):
        kb = KnowledgeBase(id="kb1")
        stage = ScoredEvent(make_event(metadata={"company_stage": "growth"}), 90)
        bottleneck = ScoredEvent(make_event(metadata={"bottleneck": "invoicing"}), 88)
        stage2 = ScoredEvent(make_event(metadata={"company_stage": "scale"}), 85)
        groups = group_by_field([stage, bottleneck, stage2], FieldMapper(), kb)
        assert list(groups.groups) == ["knowledge.company_stages", "biggest_bottleneck"]
        assert [s for s, _ in groups.groups["knowledge.company_stages"]] == [stage, stage2]

    def test_declined_and_unmapped_are_skipped(self, make_event):
        kb = KnowledgeBase(id="kb1", biggest_bottleneck="Hiring")
        declined = ScoredEvent(make_event(metadata={"bottleneck": "invoicing"}), 85)
        unmapped = ScoredEvent(make_event(category=""), 85)
        groups = group_by_field([declined, unmapped], FieldMapper(), kb)
        assert groups.groups == {}
        reasons = dict((e.id, r) for e, r in groups.skipped)
        assert "below threshold" in reasons[declined.event.id]
        assert "no field mapping" in reasons[unmapped.event.id]

    def test_mapping_error_isolated(self, make_event):
        mapper = MagicMock()
        good = make_event(metadata={"company_stage": "growth"})
        bad = make_event()
        real = FieldMapper()

        def map_event(event, kb, confidence=None):
            if event is bad:
                raise RuntimeError("boom")
            return real.map_event(event, kb, confidence)

        mapper.map_event.side_effect = map_event
        groups = group_by_field([ScoredEvent(bad, 85), ScoredEvent(good, 85)], mapper, KnowledgeBase(id="kb1"))
        assert list(groups.groups) == ["knowledge.company_stages"]
        assert groups.errors == [f"Error mapping event {bad.id}: boom"]
        assert groups.skipped[0][1] == "mapping failed: boom"

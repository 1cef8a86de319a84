"""Tests for LearningEngine.apply_learning_events."""

from unittest.mock import MagicMock

import pytest

from knowledge.models import AUDIT_LOG_KEY, FIELD_HISTORY_KEY, SNAPSHOTS_KEY
from learning.audit import AuditTrail
from learning.engine import LearningEngine
from learning.metrics import MetricsRecorder


@pytest.fixture
def engine(event_store, kb_store, inline):
    return LearningEngine(
        event_store,
        kb_store,
        audit=AuditTrail(kb_store, event_store),
        metrics=MetricsRecorder(kb_store),
        side_channel=inline,
    )


def _audit_actions(kb_store, kb_id):
    return [e["action"] for e in kb_store.get(kb_id).knowledge.get_list(AUDIT_LOG_KEY)]


class TestEndToEnd:
    def test_bottleneck_applied(self, engine, event_store, kb_store, kb, make_event):
        event = make_event(metadata={"bottleneck": "manual invoicing"}, confidence=85)
        event_store.add_many([event])

        result = engine.apply_learning_events(kb.id)

        assert result.success is True
        assert result.events_applied == 1
        assert result.events_skipped == 0
        assert result.fields_updated == ["biggest_bottleneck"]
        assert result.enrichment_version == kb.enrichment_version + 1
        assert result.errors is None

        updated = kb_store.get(kb.id)
        assert updated.biggest_bottleneck == "manual invoicing"
        assert updated.version == kb.version + 1
        assert updated.last_enriched_at is not None
        assert _audit_actions(kb_store, kb.id) == ["applied"]

        stored = event_store.get(event.id)
        assert stored.applied is True
        assert stored.applied_to_fields == ["biggest_bottleneck"]

    def test_tool_stack_merges_same_batch(self, engine, event_store, kb_store, kb, make_event):
        slack = make_event(
            insight="The team chats in Slack all day",
            category="workflow_patterns",
            metadata={"new_tool": "Slack"},
            confidence=70,
        )
        notion = make_event(
            insight="Procedures are documented in Notion",
            category="workflow_patterns",
            metadata={"new_tool": "Notion"},
            confidence=60,
        )
        event_store.add_many([slack, notion])

        result = engine.apply_learning_events(kb.id, min_confidence=50)

        assert result.events_applied == 2
        assert sorted(kb_store.get(kb.id).tool_stack) == ["Notion", "Slack"]
        assert event_store.get(slack.id).applied
        assert event_store.get(notion.id).applied
        assert result.enrichment_version == 1

    def test_tool_stack_keeps_existing_casing(self, engine, event_store, kb_store, kb, make_event):
        kb_store.update(kb.id, fields={"tool_stack": ["Slack"]}, bump_version=False)
        event_store.add_many(
            [
                make_event(
                    insight="Everyone uses slack and zoom",
                    category="workflow_patterns",
                    metadata={"tools": ["slack", "Zoom"]},
                )
            ]
        )
        engine.apply_learning_events(kb.id)
        assert kb_store.get(kb.id).tool_stack == ["Slack", "Zoom"]


class TestIdempotence:
    def test_second_run_selects_nothing(self, engine, event_store, kb_store, kb, make_event):
        event_store.add_many(
            [
                make_event(metadata={"bottleneck": "manual invoicing"}),
                make_event(insight="Company is in a growth phase", metadata={"company_stage": "growth"}),
            ]
        )
        first = engine.apply_learning_events(kb.id)
        assert first.events_applied == 2

        second = engine.apply_learning_events(kb.id)
        assert second.success is True
        assert second.events_applied == 0
        assert second.events_skipped == 0
        assert second.enrichment_version == first.enrichment_version
        assert kb_store.get(kb.id).enrichment_version == first.enrichment_version


class TestConflicts:
    def test_low_confidence_conflict_kept(self, engine, event_store, kb_store, kb, make_event):
        kb_store.update(kb.id, fields={"biggest_bottleneck": "hiring"}, bump_version=False)
        event = make_event(metadata={"bottleneck": "manual invoicing"}, confidence=85)
        event_store.add_many([event])

        result = engine.apply_learning_events(kb.id)

        assert result.events_applied == 0
        assert result.events_skipped == 1
        assert result.enrichment_version == 0
        assert kb_store.get(kb.id).biggest_bottleneck == "hiring"
        assert event_store.get(event.id).applied is False
        assert _audit_actions(kb_store, kb.id) == ["skipped"]

    def test_high_confidence_replaces_with_history(self, engine, event_store, kb_store, kb, make_event):
        kb_store.update(kb.id, fields={"biggest_bottleneck": "hiring"}, bump_version=False)
        event = make_event(metadata={"bottleneck": "manual invoicing"}, confidence=95)
        event_store.add_many([event])

        result = engine.apply_learning_events(kb.id)

        assert result.events_applied == 1
        updated = kb_store.get(kb.id)
        assert updated.biggest_bottleneck == "manual invoicing"
        history = updated.knowledge[FIELD_HISTORY_KEY]["biggest_bottleneck"]
        assert history[-1]["previous_value"] == "hiring"
        assert history[-1]["new_value"] == "manual invoicing"
        assert history[-1]["event_id"] == event.id

    def test_highest_confidence_wins_within_batch(self, engine, event_store, kb_store, kb, make_event):
        low = make_event(insight="Quoting is the main bottleneck", metadata={"bottleneck": "quoting"}, confidence=82)
        high = make_event(metadata={"bottleneck": "manual invoicing"}, confidence=88)
        event_store.add_many([low, high])

        result = engine.apply_learning_events(kb.id)

        assert result.events_applied == 2
        assert kb_store.get(kb.id).biggest_bottleneck == "manual invoicing"

    def test_later_batches_see_earlier_writes(self, engine, event_store, kb_store, kb, make_event):
        first = make_event(insight="Quoting is the main bottleneck", metadata={"bottleneck": "quoting"}, age_days=1)
        second = make_event(metadata={"bottleneck": "manual invoicing"})
        event_store.add_many([first, second])

        result = engine.apply_learning_events(kb.id, batch_size=1)

        assert result.events_applied == 1
        assert result.events_skipped == 1
        assert kb_store.get(kb.id).biggest_bottleneck == "quoting"
        assert event_store.get(second.id).applied is False


class TestDecay:
    def test_stale_event_skipped_with_reason(self, engine, event_store, kb_store, kb, make_event):
        event = make_event(metadata={"bottleneck": "manual invoicing"}, confidence=85, age_days=90)
        event_store.add_many([event])

        result = engine.apply_learning_events(kb.id)

        assert result.events_applied == 0
        assert result.events_skipped == 1
        assert kb_store.get(kb.id).biggest_bottleneck is None
        entry = kb_store.get(kb.id).knowledge[AUDIT_LOG_KEY][0]
        assert entry["action"] == "skipped"
        assert entry["reason"].startswith("confidence below threshold after decay")

    def test_grace_period_keeps_confidence(self, engine, event_store, kb_store, kb, make_event):
        event_store.add_many([make_event(metadata={"bottleneck": "manual invoicing"}, confidence=85, age_days=5)])
        assert engine.apply_learning_events(kb.id).events_applied == 1


class TestBagTargets:
    def test_bag_items_merged(self, engine, event_store, kb_store, kb, make_event):
        kb_store.update(kb.id, bag_updates={"company_stages": ["Growth"]}, bump_version=False)
        event_store.add_many(
            [
                make_event(insight="Company is in a growth phase", metadata={"company_stage": "growth"}),
                make_event(insight="Company is preparing to scale", metadata={"company_stage": "scale"}),
            ]
        )
        result = engine.apply_learning_events(kb.id)
        assert result.fields_updated == ["knowledge.company_stages"]
        assert kb_store.get(kb.id).knowledge["company_stages"] == ["Growth", "scale"]

    def test_field_error_isolated(self, engine, event_store, kb_store, kb, make_event):
        kb_store.update(kb.id, bag_updates={"company_stages": "seed"}, bump_version=False)
        stage = make_event(insight="Company is in a growth phase", metadata={"company_stage": "growth"})
        bottleneck = make_event(metadata={"bottleneck": "manual invoicing"})
        event_store.add_many([stage, bottleneck])

        result = engine.apply_learning_events(kb.id)

        assert result.success is True
        assert result.events_applied == 1
        assert result.events_skipped == 1
        assert result.fields_updated == ["biggest_bottleneck"]
        assert any(e.startswith("Error processing field knowledge.company_stages") for e in result.errors)
        updated = kb_store.get(kb.id)
        assert updated.biggest_bottleneck == "manual invoicing"
        assert updated.knowledge["company_stages"] == "seed"
        assert event_store.get(stage.id).applied is False

    def test_unmappable_event_skipped(self, engine, event_store, kb, make_event):
        event = make_event(insight="   ", category="business_context")
        event_store.add_many([event])
        result = engine.apply_learning_events(kb.id)
        assert result.events_skipped == 1
        assert event_store.get(event.id).applied is False


class TestBatching:
    def test_single_fetch_when_under_batch_size(self, event_store, kb_store, kb, make_event, inline):
        event_store.add_many([make_event(insight=f"Company stage note {i}", metadata={"company_stage": f"s{i}"}) for i in range(3)])
        spy = MagicMock(wraps=event_store)
        result = LearningEngine(spy, kb_store, side_channel=inline).apply_learning_events(kb.id, batch_size=10)
        assert result.events_applied == 3
        assert spy.fetch_unapplied.call_count == 1

    def test_one_version_bump_per_batch(self, event_store, kb_store, kb, make_event, inline):
        event_store.add_many([make_event(insight=f"Company stage note {i}", metadata={"company_stage": f"s{i}"}) for i in range(5)])
        spy = MagicMock(wraps=event_store)
        result = LearningEngine(spy, kb_store, side_channel=inline).apply_learning_events(kb.id, batch_size=2)
        assert result.events_applied == 5
        assert spy.fetch_unapplied.call_count == 3
        assert result.enrichment_version == 3
        assert len(kb_store.get(kb.id).knowledge["company_stages"]) == 5

    def test_failure_mid_run_keeps_committed_batches(self, event_store, kb_store, kb, make_event, inline):
        event_store.add_many([make_event(insight=f"Company stage note {i}", metadata={"company_stage": f"s{i}"}) for i in range(3)])
        spy = MagicMock(wraps=event_store)
        calls = {"n": 0}

        def fetch(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("database went away")
            return event_store.fetch_unapplied(*args, **kwargs)

        spy.fetch_unapplied.side_effect = fetch
        result = LearningEngine(spy, kb_store, side_channel=inline).apply_learning_events(kb.id, batch_size=2)

        assert result.success is False
        assert result.events_applied == 2
        assert result.errors[0] == "database went away"
        assert event_store.count_unapplied(kb.id) == 1

    def test_lease_renewed_after_each_batch(self, event_store, kb_store, kb, make_event, inline, monkeypatch):
        event_store.add_many([make_event(insight=f"Company stage note {i}", metadata={"company_stage": f"s{i}"}) for i in range(3)])
        renew = MagicMock(wraps=kb_store.renew_lease)
        monkeypatch.setattr(kb_store, "renew_lease", renew)
        LearningEngine(event_store, kb_store, side_channel=inline).apply_learning_events(kb.id, batch_size=2)
        assert renew.call_count == 2

    def test_lost_lease_stops_after_committed_batch(
        self, event_store, kb_store, kb, make_event, inline, db_path, monkeypatch
    ):
        from db import wal_connect

        event_store.add_many([make_event(insight=f"Company stage note {i}", metadata={"company_stage": f"s{i}"}) for i in range(3)])
        real_renew = kb_store.renew_lease

        def taken_over(kb_id, token):
            with wal_connect(db_path) as conn:
                conn.execute("UPDATE kb_leases SET holder = 'other-worker' WHERE knowledge_base_id = ?", (kb_id,))
            return real_renew(kb_id, token)

        monkeypatch.setattr(kb_store, "renew_lease", taken_over)
        result = LearningEngine(event_store, kb_store, side_channel=inline).apply_learning_events(kb.id, batch_size=2)

        assert result.success is False
        assert result.events_applied == 2
        assert "lost" in result.errors[0]
        assert event_store.count_unapplied(kb.id) == 1


class TestPreconditions:
    def test_missing_id(self, engine):
        result = engine.apply_learning_events("")
        assert result.success is False
        assert result.errors == ["Missing required parameter: knowledge_base_id"]

    def test_unknown_kb(self, engine):
        result = engine.apply_learning_events("nope")
        assert result.success is False
        assert "Knowledge base not found" in result.errors[0]

    def test_bad_batch_size(self, engine, kb):
        assert engine.apply_learning_events(kb.id, batch_size=0).success is False

    def test_locked_kb_fails_without_writing(self, engine, event_store, kb_store, kb, make_event):
        event = make_event(metadata={"bottleneck": "manual invoicing"})
        event_store.add_many([event])
        with kb_store.lease(kb.id):
            result = engine.apply_learning_events(kb.id)
        assert result.success is False
        assert "locked" in result.errors[0]
        assert event_store.get(event.id).applied is False
        assert kb_store.get(kb.id).enrichment_version == 0


class TestSideChannels:
    def test_snapshot_and_metrics(self, engine, event_store, kb_store, kb, make_event):
        event = make_event(metadata={"bottleneck": "manual invoicing"}, confidence=92)
        event_store.add_many([event])
        engine.apply_learning_events(kb.id)

        bag = kb_store.get(kb.id).knowledge
        snapshots = bag[SNAPSHOTS_KEY]
        assert len(snapshots) == 1
        assert snapshots[0]["event_ids"] == [event.id]
        assert snapshots[0]["snapshot"]["biggest_bottleneck"] == "manual invoicing"

        metrics = bag["metrics"]
        application = metrics["application"][0]
        assert application["events_applied"] == 1
        assert application["events_processed"] == 1
        quality = metrics["quality"]
        assert quality["conflict_resolution_outcomes"]["replaced"] == 1
        assert quality["confidence_distribution"]["high"] == 1

    def test_no_snapshot_when_nothing_applied(self, engine, kb_store, kb):
        engine.apply_learning_events(kb.id)
        assert SNAPSHOTS_KEY not in kb_store.get(kb.id).knowledge

    def test_side_channel_failure_is_not_surfaced(self, event_store, kb_store, kb, make_event, inline):
        audit = MagicMock()
        audit.record_many.side_effect = RuntimeError("audit down")
        audit.create_snapshot.side_effect = RuntimeError("audit down")
        engine = LearningEngine(event_store, kb_store, audit=audit, side_channel=inline)
        event_store.add_many([make_event(metadata={"bottleneck": "manual invoicing"})])
        result = engine.apply_learning_events(kb.id)
        assert result.success is True
        assert result.events_applied == 1

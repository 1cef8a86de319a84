"""Tests for LearningEventRecorder: validation, dedup and persistence."""

from unittest.mock import MagicMock

import pytest

from knowledge.models import AUDIT_LOG_KEY
from learning.audit import AuditTrail
from learning.embeddings import EmbeddingClient
from learning.metrics import MetricsRecorder
from learning.models import ExtractedInsight
from learning.recorder import LearningEventRecorder
from llm.base import LLMError


def _insight(text="Invoices are assembled by hand every month", category="business_context", **kwargs):
    data = {"insight": text, "category": category, "event_type": "INSIGHT_GENERATED"}
    data.update(kwargs)
    return data


@pytest.fixture
def recorder(event_store, kb_store, inline):
    return LearningEventRecorder(event_store, kb_store, side_channel=inline)


class TestValidation:
    def test_missing_parameters(self, recorder, kb):
        result = recorder.create_learning_events("", "JOB_DESCRIPTION", "src", [_insight()])
        assert result.success is False
        assert result.events_created == 0
        assert "Missing required parameters" in result.errors[0]
        assert recorder.create_learning_events(kb.id, "JOB_DESCRIPTION", "src", []).success is False

    def test_unknown_source_type(self, recorder, kb, event_store):
        result = recorder.create_learning_events(kb.id, "EMAIL", "src", [_insight()])
        assert result.success is False
        assert result.errors == ["Unknown source type: EMAIL"]
        assert event_store.count_unapplied(kb.id) == 0

    def test_unknown_kb(self, recorder):
        result = recorder.create_learning_events("nope", "JOB_DESCRIPTION", "src", [_insight()])
        assert result.success is False
        assert "Knowledge base not found" in result.errors[0]

    def test_invalid_insights_skipped_with_reason(self, recorder, kb):
        insights = [
            _insight(text="short"),
            _insight(category="astrology"),
            _insight(event_type="GUESSED"),
            _insight(),
        ]
        result = recorder.create_learning_events(kb.id, "JOB_DESCRIPTION", "src", insights)
        assert result.success is True
        assert result.events_created == 1
        assert len(result.errors) == 3
        assert result.errors[0].startswith("Skipping invalid insight at index 0")
        assert "index 2" in result.errors[2]

    @pytest.mark.parametrize("confidence", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_confidence_skipped(self, recorder, kb, event_store, confidence):
        insights = [
            _insight(),
            _insight(text="The owner handles every sales call", confidence=confidence),
        ]
        result = recorder.create_learning_events(kb.id, "MANUAL_UPDATE", "s1", insights)
        assert result.success is True
        assert result.events_created == 1
        assert "Skipping invalid insight at index 1" in result.errors[0]
        assert "not finite" in result.errors[0]
        assert event_store.get(result.event_ids[0]).confidence == 70

    def test_all_invalid_fails(self, recorder, kb):
        result = recorder.create_learning_events(kb.id, "JOB_DESCRIPTION", "src", [_insight(text="")])
        assert result.success is False
        assert result.events_created == 0

    def test_accepts_dataclass_and_camel_case(self, recorder, kb):
        insights = [
            ExtractedInsight("Quotes take three days to send out", "process_optimization", "OPTIMIZATION_FOUND"),
            {"insight": "The owner handles every sales call", "category": "business_context", "eventType": "PATTERN_DETECTED"},
        ]
        result = recorder.create_learning_events(kb.id, "CHAT_CONVERSATION", "src", insights)
        assert result.events_created == 2


class TestPersistence:
    def test_event_fields(self, recorder, kb, event_store):
        result = recorder.create_learning_events(
            kb.id,
            "JOB_DESCRIPTION",
            "job-42",
            [_insight(confidence=150, metadata={"bottleneck": "invoicing"})],
            triggered_by="user-1",
        )
        event = event_store.get(result.event_ids[0])
        assert event.confidence == 100
        assert event.source_ids == ["job-42"]
        assert event.source_type == "JOB_DESCRIPTION"
        assert event.triggered_by == "user-1"
        assert event.metadata == {"bottleneck": "invoicing"}
        assert event.applied is False

    def test_default_confidence(self, recorder, kb, event_store):
        result = recorder.create_learning_events(kb.id, "JOB_DESCRIPTION", "src", [_insight()])
        assert event_store.get(result.event_ids[0]).confidence == 70

    def test_confidence_clamped_low(self, recorder, kb, event_store):
        result = recorder.create_learning_events(kb.id, "JOB_DESCRIPTION", "src", [_insight(confidence=-3)])
        assert event_store.get(result.event_ids[0]).confidence == 1

    def test_insert_failure_reported(self, kb_store, kb, inline):
        store = MagicMock()
        store.recent_by_categories.return_value = []
        store.add_many.side_effect = RuntimeError("disk full")
        recorder = LearningEventRecorder(store, kb_store, side_channel=inline)
        result = recorder.create_learning_events(kb.id, "JOB_DESCRIPTION", "src", [_insight()])
        assert result.success is False
        assert result.events_created == 0
        assert "disk full" in result.errors[-1]


class TestTextualDedup:
    def test_duplicate_of_existing_event(self, recorder, kb):
        recorder.create_learning_events(kb.id, "JOB_DESCRIPTION", "a", [_insight()])
        result = recorder.create_learning_events(
            kb.id, "JOB_DESCRIPTION", "b", [_insight(text="Invoices are assembled by hand every month!")]
        )
        assert result.success is False
        assert result.events_created == 0
        assert result.errors[0].startswith('Skipping duplicate insight: "')
        assert "similar to existing event" in result.errors[0]

    def test_duplicate_within_same_call(self, recorder, kb):
        result = recorder.create_learning_events(
            kb.id,
            "JOB_DESCRIPTION",
            "a",
            [_insight(), _insight(text="invoices are assembled by hand every month")],
        )
        assert result.events_created == 1
        assert len(result.errors) == 1

    def test_other_category_not_duplicate(self, recorder, kb):
        recorder.create_learning_events(kb.id, "JOB_DESCRIPTION", "a", [_insight()])
        result = recorder.create_learning_events(
            kb.id, "JOB_DESCRIPTION", "b", [_insight(category="process_optimization")]
        )
        assert result.events_created == 1

    def test_old_events_outside_window(self, recorder, kb, event_store, make_event):
        event_store.add_many([make_event(insight="Invoices are assembled by hand each month", age_days=45)])
        result = recorder.create_learning_events(kb.id, "JOB_DESCRIPTION", "b", [_insight()])
        assert result.events_created == 1

    def test_distinct_insights_pass(self, recorder, kb):
        result = recorder.create_learning_events(
            kb.id,
            "JOB_DESCRIPTION",
            "a",
            [_insight(), _insight(text="The team coordinates daily work in Slack")],
        )
        assert result.events_created == 2
        assert result.errors is None


class TestSemanticDedup:
    def _recorder(self, event_store, kb_store, inline, provider):
        client = EmbeddingClient(provider, min_wait=0, max_wait=0, max_attempts=1)
        return LearningEventRecorder(event_store, kb_store, embeddings=client, side_channel=inline)

    def test_stores_embedding_with_event(self, event_store, kb_store, kb, inline, mock_embedding_provider, vector_for):
        recorder = self._recorder(event_store, kb_store, inline, mock_embedding_provider)
        text = "Invoices are assembled by hand every month"
        result = recorder.create_learning_events(kb.id, "JOB_DESCRIPTION", "a", [_insight(text)])
        event = event_store.get(result.event_ids[0])
        assert event.embedding == pytest.approx(vector_for(text))
        assert event.embedding_model == "test-embed"

    def test_semantic_match_rejects_paraphrase(self, event_store, kb_store, kb, inline):
        provider = MagicMock()
        provider.model = "m"
        # Every text maps to the same direction: everything is a paraphrase
        provider.embed.side_effect = lambda texts: [[1.0, 0.0, 0.0] for _ in texts]
        recorder = self._recorder(event_store, kb_store, inline, provider)
        recorder.create_learning_events(kb.id, "JOB_DESCRIPTION", "a", [_insight()])
        result = recorder.create_learning_events(
            kb.id, "JOB_DESCRIPTION", "b", [_insight(text="Billing is put together manually at month end")]
        )
        assert result.events_created == 0
        assert "Skipping duplicate insight" in result.errors[0]

    def test_backfills_missing_vectors(self, event_store, kb_store, kb, inline, make_event, mock_embedding_provider):
        legacy = make_event(insight="The team coordinates daily work in Slack")
        event_store.add_many([legacy])
        recorder = self._recorder(event_store, kb_store, inline, mock_embedding_provider)
        recorder.create_learning_events(kb.id, "JOB_DESCRIPTION", "a", [_insight()])
        assert event_store.get(legacy.id).embedding_model == "test-embed"

    def test_embedding_failure_falls_back_to_textual(self, event_store, kb_store, kb, inline):
        provider = MagicMock()
        provider.embed.side_effect = LLMError("down")
        recorder = self._recorder(event_store, kb_store, inline, provider)
        first = recorder.create_learning_events(kb.id, "JOB_DESCRIPTION", "a", [_insight()])
        assert first.events_created == 1
        second = recorder.create_learning_events(
            kb.id, "JOB_DESCRIPTION", "b", [_insight(text="Invoices are assembled by hand every month.")]
        )
        assert second.events_created == 0


class TestSideChannels:
    def test_audit_and_metrics_recorded(self, event_store, kb_store, kb, inline):
        recorder = LearningEventRecorder(
            event_store,
            kb_store,
            audit=AuditTrail(kb_store, event_store),
            metrics=MetricsRecorder(kb_store),
            side_channel=inline,
        )
        recorder.create_learning_events(kb.id, "SOP_GENERATION", "sop-1", [_insight(), _insight(text="x")])
        stored = kb_store.get(kb.id)
        log = stored.knowledge[AUDIT_LOG_KEY]
        assert len(log) == 1
        assert log[0]["action"] == "created"
        assert log[0]["reason"] == "Created from SOP_GENERATION"
        extraction = stored.knowledge["metrics"]["extraction"][0]
        assert extraction["insights_extracted"] == 2
        assert extraction["insights_created"] == 1
        assert stored.version == 1

    def test_side_channel_failure_does_not_fail_call(self, event_store, kb_store, kb, inline):
        audit = MagicMock()
        audit.record_many.side_effect = RuntimeError("audit down")
        recorder = LearningEventRecorder(event_store, kb_store, audit=audit, side_channel=inline)
        result = recorder.create_learning_events(kb.id, "JOB_DESCRIPTION", "a", [_insight()])
        assert result.success is True

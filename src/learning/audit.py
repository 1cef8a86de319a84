"""Provenance log and point-in-time snapshots kept inside the knowledge bag."""

import copy
import json
from datetime import datetime

import structlog

from knowledge.models import AUDIT_LOG_KEY, SNAPSHOTS_KEY, KnowledgeBag, KnowledgeBase
from knowledge.store import KnowledgeBaseStore

from .models import AuditEntry
from .resolver import merge_unique_strings
from .store import EventStore

logger = structlog.get_logger()

MAX_AUDIT_ENTRIES = 1000
MAX_SNAPSHOTS = 50

SNAPSHOT_FIELDS = (
    "business_name",
    "industry",
    "biggest_bottleneck",
    "top_objection",
    "core_offer",
    "tool_stack",
    "ideal_customer",
    "primary_goal",
)


def _clone_bag(bag: KnowledgeBag) -> dict:
    """Deep copy of the bag minus audit log and snapshots.

    Falls back to a shallow copy when the contents do not survive a JSON
    round trip.
    """
    content = {k: v for k, v in bag.items() if k not in (AUDIT_LOG_KEY, SNAPSHOTS_KEY)}
    try:
        return json.loads(json.dumps(content))
    except (TypeError, ValueError) as e:
        logger.warning("snapshot_clone_failed", error=str(e))
        return copy.copy(content)


def build_snapshot(kb: KnowledgeBase, event_ids: list[str]) -> dict:
    state = {name: copy.copy(getattr(kb, name)) for name in SNAPSHOT_FIELDS}
    state["knowledge"] = _clone_bag(kb.knowledge)
    return {
        "knowledge_base_id": kb.id,
        "version": kb.version,
        "enrichment_version": kb.enrichment_version,
        "snapshot": state,
        "created_at": datetime.now().isoformat(),
        "event_ids": list(event_ids),
    }


class AuditTrail:
    """Bounded audit log and snapshot history for knowledge bases.

    Writers go through KnowledgeBaseStore.update_bag, so each append is an
    atomic read-modify-write and never bumps the record's version.
    """

    def __init__(
        self,
        kb_store: KnowledgeBaseStore,
        event_store: EventStore | None = None,
        max_entries: int = MAX_AUDIT_ENTRIES,
        max_snapshots: int = MAX_SNAPSHOTS,
    ):
        self.kb_store = kb_store
        self.event_store = event_store
        self.max_entries = max_entries
        self.max_snapshots = max_snapshots

    def record(self, kb_id: str, entry: AuditEntry) -> bool:
        return self.record_many(kb_id, [entry])

    def record_many(self, kb_id: str, entries: list[AuditEntry]) -> bool:
        """Append entries in one write, evicting the oldest beyond the cap."""
        if not entries:
            return True
        rows = [e.to_dict() for e in entries]

        def append(bag: KnowledgeBag) -> None:
            log = bag.get_list(AUDIT_LOG_KEY) + rows
            bag[AUDIT_LOG_KEY] = log[-self.max_entries :]

        written = self.kb_store.update_bag(kb_id, append)
        if written:
            logger.debug("audit_recorded", knowledge_base_id=kb_id, entries=len(rows))
        return written

    def get_audit_log(self, kb_id: str, limit: int = 100) -> list[dict]:
        """Most recent entries first."""
        kb = self.kb_store.get(kb_id)
        if kb is None:
            return []
        log = kb.knowledge.get_list(AUDIT_LOG_KEY)
        return list(reversed(log[-limit:])) if limit > 0 else []

    def create_snapshot(self, kb_id: str, event_ids: list[str]) -> dict | None:
        """Capture the current state, or None when the knowledge base is gone."""
        captured: dict = {}

        def append(bag: KnowledgeBag) -> None:
            kb = self.kb_store.get(kb_id)
            if kb is None:
                return
            # bag is the freshest copy, use it rather than the one read above
            kb.knowledge = bag
            captured.update(build_snapshot(kb, event_ids))
            snapshots = bag.get_list(SNAPSHOTS_KEY) + [dict(captured)]
            bag[SNAPSHOTS_KEY] = snapshots[-self.max_snapshots :]

        if not self.kb_store.update_bag(kb_id, append) or not captured:
            return None
        logger.info(
            "snapshot_created",
            knowledge_base_id=kb_id,
            version=captured["version"],
            events=len(event_ids),
        )
        return captured

    def get_snapshots(self, kb_id: str) -> list[dict]:
        kb = self.kb_store.get(kb_id)
        return kb.knowledge.get_list(SNAPSHOTS_KEY) if kb else []

    def rebuild_state(self, kb_id: str, up_to: datetime | None = None) -> dict | None:
        """Approximate state from replaying applied events in creation order.

        Diagnostic only. Replay uses a reduced rule set (first bottleneck wins,
        new_tool entries, company_stage entries) rather than the field mapper
        and conflict resolver, so the result can differ from the live record.
        """
        if self.event_store is None:
            raise RuntimeError("rebuild_state needs an EventStore")
        kb = self.kb_store.get(kb_id)
        if kb is None:
            return None

        state = {
            "business_name": kb.business_name,
            "industry": kb.industry,
            "biggest_bottleneck": None,
            "top_objection": None,
            "core_offer": None,
            "tool_stack": [],
            "knowledge": {},
        }
        events = self.event_store.list_applied(kb_id, up_to=up_to)
        for event in events:
            metadata = event.metadata or {}
            if metadata.get("bottleneck") and not state["biggest_bottleneck"]:
                state["biggest_bottleneck"] = metadata["bottleneck"]
            if metadata.get("new_tool"):
                state["tool_stack"] = merge_unique_strings(
                    state["tool_stack"], [str(metadata["new_tool"])]
                )
            if metadata.get("company_stage"):
                stages = state["knowledge"].setdefault("company_stages", [])
                if metadata["company_stage"] not in stages:
                    stages.append(metadata["company_stage"])

        logger.info("state_rebuilt", knowledge_base_id=kb_id, events_replayed=len(events))
        return state

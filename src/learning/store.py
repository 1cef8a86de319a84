"""Append-only SQLite log of learning events with keyset pagination."""

import json
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import structlog

from db import immediate_transaction, wal_connect

from .models import LearningEvent

logger = structlog.get_logger()


def _ts(value: datetime) -> str:
    # Fixed width so lexical order matches chronological order
    return value.isoformat(timespec="microseconds")


@dataclass
class EventPage:
    """One page of unapplied events; next_cursor is None on the last page."""

    events: list[LearningEvent] = field(default_factory=list)
    next_cursor: str | None = None


class EventStore:
    """Persists learning events. Events are never deleted or rewritten.

    The only mutation is the one-time applied transition, plus an optional
    back-fill of the cached embedding vector.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with wal_connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS learning_events (
                    id TEXT PRIMARY KEY,
                    knowledge_base_id TEXT NOT NULL,
                    category TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    insight TEXT NOT NULL,
                    confidence INTEGER NOT NULL,
                    source_ids TEXT NOT NULL DEFAULT '[]',
                    source_type TEXT,
                    triggered_by TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    applied INTEGER NOT NULL DEFAULT 0,
                    applied_at TIMESTAMP,
                    applied_to_fields TEXT NOT NULL DEFAULT '[]',
                    embedding TEXT,
                    embedding_model TEXT,
                    created_at TIMESTAMP NOT NULL
                )
            """)
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_events_unique_insight
                ON learning_events(knowledge_base_id, category, insight)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_events_unapplied
                ON learning_events(knowledge_base_id, applied, created_at, id)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_events_category
                ON learning_events(knowledge_base_id, category, created_at)
            """)

    def add_many(self, events: list[LearningEvent]) -> list[str]:
        """Bulk insert. Rows colliding on (kb, category, insight) are skipped.

        Returns the ids actually inserted, in input order.
        """
        inserted = []
        with immediate_transaction(self.db_path) as conn:
            for event in events:
                if not event.id:
                    event.id = uuid.uuid4().hex[:16]
                cur = conn.execute(
                    """INSERT OR IGNORE INTO learning_events
                       (id, knowledge_base_id, category, event_type, insight, confidence,
                        source_ids, source_type, triggered_by, metadata, embedding,
                        embedding_model, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        event.id,
                        event.knowledge_base_id,
                        event.category,
                        event.event_type,
                        event.insight,
                        event.confidence,
                        json.dumps(event.source_ids),
                        event.source_type,
                        event.triggered_by,
                        json.dumps(event.metadata, default=str),
                        json.dumps(event.embedding) if event.embedding else None,
                        event.embedding_model,
                        _ts(event.created_at),
                    ),
                )
                if cur.rowcount:
                    inserted.append(event.id)
                else:
                    logger.debug(
                        "event_insert_ignored",
                        knowledge_base_id=event.knowledge_base_id,
                        category=event.category,
                    )
        return inserted

    def get(self, event_id: str) -> LearningEvent | None:
        with wal_connect(self.db_path, row_factory=True) as conn:
            row = conn.execute("SELECT * FROM learning_events WHERE id = ?", (event_id,)).fetchone()
        return self._row_to_event(row) if row else None

    def recent_by_categories(
        self, kb_id: str, categories: list[str], since: datetime
    ) -> list[LearningEvent]:
        """Events of the knowledge base in any of the categories created at or after since."""
        if not categories:
            return []
        placeholders = ", ".join("?" for _ in categories)
        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(
                f"""SELECT * FROM learning_events
                    WHERE knowledge_base_id = ? AND category IN ({placeholders})
                    AND created_at >= ?
                    ORDER BY created_at DESC""",
                [kb_id, *categories, _ts(since)],
            ).fetchall()
        return [self._row_to_event(r) for r in rows]

    def fetch_unapplied(
        self,
        kb_id: str,
        min_confidence: int = 0,
        limit: int = 100,
        cursor: str | None = None,
    ) -> EventPage:
        """Next page of unapplied events with raw confidence >= min_confidence.

        Ordered ascending by (created_at, id). The cursor is opaque to callers.
        """
        query = """SELECT * FROM learning_events
                   WHERE knowledge_base_id = ? AND applied = 0 AND confidence >= ?"""
        params: list = [kb_id, min_confidence]
        if cursor:
            created_at, event_id = cursor.split("|", 1)
            query += " AND (created_at > ? OR (created_at = ? AND id > ?))"
            params.extend([created_at, created_at, event_id])
        query += " ORDER BY created_at ASC, id ASC LIMIT ?"
        params.append(limit)

        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(query, params).fetchall()

        events = [self._row_to_event(r) for r in rows]
        next_cursor = None
        if len(rows) == limit and rows:
            last = rows[-1]
            next_cursor = f"{last['created_at']}|{last['id']}"
        return EventPage(events=events, next_cursor=next_cursor)

    def mark_applied(
        self, applied_fields: dict[str, list[str]], applied_at: datetime | None = None
    ) -> int:
        """Flip events to applied in one transaction. Already-applied rows are untouched."""
        if not applied_fields:
            return 0
        stamp = _ts(applied_at or datetime.now())
        count = 0
        with immediate_transaction(self.db_path) as conn:
            for event_id, fields in applied_fields.items():
                cur = conn.execute(
                    """UPDATE learning_events
                       SET applied = 1, applied_at = ?, applied_to_fields = ?
                       WHERE id = ? AND applied = 0""",
                    (stamp, json.dumps(sorted(set(fields))), event_id),
                )
                count += cur.rowcount
        return count

    def update_embedding(self, event_id: str, vector: list[float], model: str) -> None:
        with wal_connect(self.db_path) as conn:
            conn.execute(
                "UPDATE learning_events SET embedding = ?, embedding_model = ? WHERE id = ?",
                (json.dumps(vector), model, event_id),
            )

    def list_applied(self, kb_id: str, up_to: datetime | None = None) -> list[LearningEvent]:
        """Applied events in creation order, optionally only those created up to a time."""
        query = "SELECT * FROM learning_events WHERE knowledge_base_id = ? AND applied = 1"
        params: list = [kb_id]
        if up_to:
            query += " AND created_at <= ?"
            params.append(_ts(up_to))
        query += " ORDER BY created_at ASC, id ASC"
        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_event(r) for r in rows]

    def count_unapplied(self, kb_id: str) -> int:
        with wal_connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM learning_events WHERE knowledge_base_id = ? AND applied = 0",
                (kb_id,),
            ).fetchone()
        return row[0]

    def get_stats(self, kb_id: str) -> dict:
        """Totals plus per-category counts for one knowledge base."""
        with wal_connect(self.db_path) as conn:
            total, applied, avg_conf = conn.execute(
                """SELECT COUNT(*), COALESCE(SUM(applied), 0), AVG(confidence)
                   FROM learning_events WHERE knowledge_base_id = ?""",
                (kb_id,),
            ).fetchone()
            by_category = dict(
                conn.execute(
                    """SELECT category, COUNT(*) FROM learning_events
                       WHERE knowledge_base_id = ? GROUP BY category""",
                    (kb_id,),
                ).fetchall()
            )
        return {
            "total": total,
            "applied": applied,
            "unapplied": total - applied,
            "average_confidence": round(avg_conf, 1) if avg_conf is not None else 0.0,
            "by_category": by_category,
        }

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> LearningEvent:
        d = dict(row)
        applied_at = d.get("applied_at")
        embedding = d.get("embedding")
        return LearningEvent(
            id=d["id"],
            knowledge_base_id=d["knowledge_base_id"],
            category=d["category"],
            event_type=d["event_type"],
            insight=d["insight"],
            confidence=d["confidence"],
            created_at=datetime.fromisoformat(d["created_at"]),
            source_ids=json.loads(d.get("source_ids") or "[]"),
            source_type=d.get("source_type"),
            triggered_by=d.get("triggered_by"),
            applied=bool(d.get("applied")),
            applied_at=datetime.fromisoformat(applied_at) if applied_at else None,
            applied_to_fields=json.loads(d.get("applied_to_fields") or "[]"),
            metadata=json.loads(d.get("metadata") or "{}"),
            embedding=json.loads(embedding) if embedding else None,
            embedding_model=d.get("embedding_model"),
        )

"""SQLite persistence for knowledge base records, with per-record leases."""

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterator

import structlog

from cli.retry import with_retry
from db import immediate_transaction, wal_connect

from .models import LIST_FIELDS, SCALAR_FIELDS, KnowledgeBag, KnowledgeBase

logger = structlog.get_logger()

WRITABLE_FIELDS = frozenset(SCALAR_FIELDS) | frozenset(LIST_FIELDS) | {"business_name", "industry"}


class KnowledgeBaseNotFoundError(LookupError):
    """No knowledge base with the requested id."""


class KnowledgeBaseLockedError(RuntimeError):
    """Another caller holds the lease for this knowledge base."""


class KnowledgeBaseStore:
    """Reads whole knowledge base records and writes partial updates."""

    def __init__(
        self,
        db_path: str | Path,
        lease_ttl_seconds: int = 300,
        lease_attempts: int = 5,
        lease_wait: float = 0.5,
    ):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.lease_ttl = timedelta(seconds=lease_ttl_seconds)
        self.lease_attempts = lease_attempts
        self.lease_wait = lease_wait
        self._init_db()

    def _init_db(self):
        with wal_connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS knowledge_bases (
                    id TEXT PRIMARY KEY,
                    business_name TEXT,
                    industry TEXT,
                    biggest_bottleneck TEXT,
                    top_objection TEXT,
                    core_offer TEXT,
                    ideal_customer TEXT,
                    primary_goal TEXT,
                    tool_stack TEXT NOT NULL DEFAULT '[]',
                    knowledge TEXT NOT NULL DEFAULT '{}',
                    version INTEGER NOT NULL DEFAULT 1,
                    enrichment_version INTEGER NOT NULL DEFAULT 0,
                    last_enriched_at TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kb_leases (
                    knowledge_base_id TEXT PRIMARY KEY,
                    holder TEXT NOT NULL,
                    expires_at TIMESTAMP NOT NULL
                )
            """)

    def create(self, kb: KnowledgeBase | None = None, **fields) -> KnowledgeBase:
        """Insert a knowledge base record. Generates an id when missing."""
        if kb is None:
            kb = KnowledgeBase(id=fields.pop("id", "") or "", **fields)
        if not kb.id:
            kb.id = uuid.uuid4().hex[:16]

        with wal_connect(self.db_path) as conn:
            conn.execute(
                """INSERT INTO knowledge_bases
                   (id, business_name, industry, biggest_bottleneck, top_objection,
                    core_offer, ideal_customer, primary_goal, tool_stack, knowledge,
                    version, enrichment_version, last_enriched_at, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    kb.id,
                    kb.business_name,
                    kb.industry,
                    kb.biggest_bottleneck,
                    kb.top_objection,
                    kb.core_offer,
                    kb.ideal_customer,
                    kb.primary_goal,
                    json.dumps(kb.tool_stack),
                    kb.knowledge.to_json(),
                    kb.version,
                    kb.enrichment_version,
                    kb.last_enriched_at.isoformat() if kb.last_enriched_at else None,
                    kb.created_at.isoformat(),
                ),
            )
        return kb

    def get(self, kb_id: str) -> KnowledgeBase | None:
        """Read the full record by id."""
        with wal_connect(self.db_path, row_factory=True) as conn:
            row = conn.execute("SELECT * FROM knowledge_bases WHERE id = ?", (kb_id,)).fetchone()
        return self._row_to_kb(row) if row else None

    def exists(self, kb_id: str) -> bool:
        with wal_connect(self.db_path) as conn:
            row = conn.execute("SELECT 1 FROM knowledge_bases WHERE id = ?", (kb_id,)).fetchone()
        return row is not None

    def list_ids(self) -> list[str]:
        with wal_connect(self.db_path) as conn:
            rows = conn.execute("SELECT id FROM knowledge_bases ORDER BY created_at").fetchall()
        return [r[0] for r in rows]

    def update(
        self,
        kb_id: str,
        fields: dict[str, Any] | None = None,
        bag_updates: dict[str, Any] | None = None,
        bump_version: bool = True,
    ) -> KnowledgeBase:
        """Write a partial update in one transaction.

        Bag updates are merged key by key into the bag as it is at write time,
        so keys written concurrently by side channels survive. A None value
        removes the key. With bump_version, version and enrichment_version are
        incremented and last_enriched_at set to now.
        """
        fields = dict(fields or {})
        unknown = set(fields) - WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown knowledge base fields: {sorted(unknown)}")

        with immediate_transaction(self.db_path) as conn:
            row = conn.execute("SELECT * FROM knowledge_bases WHERE id = ?", (kb_id,)).fetchone()
            if row is None:
                raise KnowledgeBaseNotFoundError(f"Knowledge base not found: {kb_id}")

            current = self._row_to_kb(row)
            bag = current.knowledge
            for key, value in (bag_updates or {}).items():
                if value is None:
                    bag.pop(key, None)
                else:
                    bag[key] = value

            assignments = []
            params: list = []
            for name, value in fields.items():
                assignments.append(f"{name} = ?")
                params.append(json.dumps(value) if name in LIST_FIELDS else value)
            assignments.append("knowledge = ?")
            params.append(bag.to_json())

            if bump_version:
                assignments.append("version = version + 1")
                assignments.append("enrichment_version = enrichment_version + 1")
                assignments.append("last_enriched_at = ?")
                params.append(datetime.now().isoformat())

            params.append(kb_id)
            conn.execute(
                f"UPDATE knowledge_bases SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
            updated = conn.execute(
                "SELECT * FROM knowledge_bases WHERE id = ?", (kb_id,)
            ).fetchone()

        return self._row_to_kb(updated)

    def update_bag(self, kb_id: str, mutate: Callable[[KnowledgeBag], None]) -> bool:
        """Atomically read, mutate and write back the knowledge bag.

        Returns False when the knowledge base does not exist.
        """
        with immediate_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT knowledge FROM knowledge_bases WHERE id = ?", (kb_id,)
            ).fetchone()
            if row is None:
                return False
            bag = KnowledgeBag.from_json(row["knowledge"])
            mutate(bag)
            conn.execute(
                "UPDATE knowledge_bases SET knowledge = ? WHERE id = ?",
                (bag.to_json(), kb_id),
            )
        return True

    @contextmanager
    def lease(self, kb_id: str, holder: str | None = None) -> Iterator[str]:
        """Hold exclusive write access to one knowledge base.

        Raises KnowledgeBaseLockedError when the lease stays taken after the
        configured number of attempts. Expired leases are taken over, so long
        holders must call renew_lease() between units of work.
        """
        token = holder or uuid.uuid4().hex
        acquire = with_retry(
            max_attempts=self.lease_attempts,
            min_wait=self.lease_wait,
            max_wait=self.lease_wait * 4,
            exceptions=(KnowledgeBaseLockedError,),
        )(self._try_acquire)
        acquire(kb_id, token)
        logger.debug("kb_lease_acquired", knowledge_base_id=kb_id, holder=token)
        try:
            yield token
        finally:
            self._release(kb_id, token)
            logger.debug("kb_lease_released", knowledge_base_id=kb_id, holder=token)

    def _try_acquire(self, kb_id: str, token: str) -> None:
        now = datetime.now()
        with immediate_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT holder, expires_at FROM kb_leases WHERE knowledge_base_id = ?",
                (kb_id,),
            ).fetchone()
            if row and row["holder"] != token and datetime.fromisoformat(row["expires_at"]) > now:
                raise KnowledgeBaseLockedError(
                    f"Knowledge base {kb_id} is locked by {row['holder'][:8]}"
                )
            conn.execute(
                """INSERT INTO kb_leases (knowledge_base_id, holder, expires_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(knowledge_base_id) DO UPDATE SET
                       holder = excluded.holder, expires_at = excluded.expires_at""",
                (kb_id, token, (now + self.lease_ttl).isoformat()),
            )

    def renew_lease(self, kb_id: str, token: str) -> bool:
        """Push the lease expiry out by one TTL. False when token no longer holds it."""
        with wal_connect(self.db_path) as conn:
            cur = conn.execute(
                "UPDATE kb_leases SET expires_at = ? WHERE knowledge_base_id = ? AND holder = ?",
                ((datetime.now() + self.lease_ttl).isoformat(), kb_id, token),
            )
        return cur.rowcount > 0

    def _release(self, kb_id: str, token: str) -> None:
        with wal_connect(self.db_path) as conn:
            conn.execute(
                "DELETE FROM kb_leases WHERE knowledge_base_id = ? AND holder = ?",
                (kb_id, token),
            )

    @staticmethod
    def _row_to_kb(row: sqlite3.Row) -> KnowledgeBase:
        d = dict(row)
        last_enriched = d.get("last_enriched_at")
        created = d.get("created_at")
        return KnowledgeBase(
            id=d["id"],
            business_name=d.get("business_name"),
            industry=d.get("industry"),
            biggest_bottleneck=d.get("biggest_bottleneck"),
            top_objection=d.get("top_objection"),
            core_offer=d.get("core_offer"),
            ideal_customer=d.get("ideal_customer"),
            primary_goal=d.get("primary_goal"),
            tool_stack=json.loads(d.get("tool_stack") or "[]"),
            knowledge=KnowledgeBag.from_json(d.get("knowledge")),
            version=d.get("version") or 1,
            enrichment_version=d.get("enrichment_version") or 0,
            last_enriched_at=datetime.fromisoformat(last_enriched) if last_enriched else None,
            created_at=datetime.fromisoformat(created) if created else datetime.now(),
        )

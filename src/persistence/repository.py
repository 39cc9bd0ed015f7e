"""
Repository Layer for ServiceHub

Writes and reads engine snapshots and journal entries.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import json
import sqlite3
import structlog

from .database import Database, get_database
from .models import EventRecord, ProviderRecord, SubscriberRecord

logger = structlog.get_logger()


class LedgerRepository:
    """
    Provider and subscriber tables plus engine-level state.

    `save` replaces the stored snapshot inside one transaction, so a reader
    never observes half of an operation. It rewrites every table on each
    call, so a save costs O(providers + subscribers + entitlements).
    """

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def save(self, state: Dict[str, Any], conn: Optional[sqlite3.Connection] = None) -> None:
        if conn is None:
            with self.db.connection() as conn:
                return self.save(state, conn)

        providers = [ProviderRecord.from_snapshot(p) for p in state.get("providers", [])]
        subscribers = [SubscriberRecord.from_snapshot(s) for s in state.get("subscribers", [])]
        now = datetime.now(timezone.utc).isoformat()

        conn.execute("DELETE FROM entitlements")
        conn.execute("DELETE FROM subscribers")
        conn.execute("DELETE FROM providers")

        conn.executemany(
            """INSERT INTO providers
               (provider_id, owner, fee_per_second, balance, is_active, active_subscribers)
               VALUES (?, ?, ?, ?, ?, ?)""",
            [p.to_db_tuple() for p in providers],
        )
        conn.executemany(
            """INSERT INTO subscribers
               (subscriber_id, owner, is_paused, active_providers)
               VALUES (?, ?, ?, ?)""",
            [s.to_db_tuple() for s in subscribers],
        )
        conn.executemany(
            "INSERT INTO entitlements (subscriber_id, provider_id, due_date) VALUES (?, ?, ?)",
            [row for s in subscribers for row in s.entitlement_tuples()],
        )

        for key in ("custody", "upgrades"):
            conn.execute(
                """INSERT INTO engine_state (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                   updated_at = excluded.updated_at""",
                (key, json.dumps(state.get(key, {}), sort_keys=True), now),
            )

        logger.info(
            "ledger_saved",
            providers=len(providers),
            subscribers=len(subscribers),
        )

    def load(self) -> Optional[Dict[str, Any]]:
        """Return the stored snapshot, or None when nothing was ever saved."""
        engine_rows = {
            r["key"]: json.loads(r["value"])
            for r in self.db.execute("SELECT key, value FROM engine_state")
        }
        if not engine_rows:
            return None

        provider_rows = self.db.execute("SELECT * FROM providers ORDER BY provider_id")
        subscriber_rows = self.db.execute("SELECT * FROM subscribers ORDER BY subscriber_id")
        entitlement_rows = self.db.execute(
            "SELECT * FROM entitlements ORDER BY subscriber_id, provider_id"
        )

        by_subscriber: Dict[int, List[Dict[str, Any]]] = {}
        for row in entitlement_rows:
            by_subscriber.setdefault(row["subscriber_id"], []).append(row)

        return {
            "providers": [ProviderRecord.from_row(r).to_snapshot() for r in provider_rows],
            "subscribers": [
                SubscriberRecord.from_row(r, by_subscriber.get(r["subscriber_id"], [])).to_snapshot()
                for r in subscriber_rows
            ],
            "custody": engine_rows.get("custody", {}),
            "upgrades": engine_rows.get("upgrades", {}),
        }

    def get_provider(self, provider_id: int) -> Optional[ProviderRecord]:
        results = self.db.execute(
            "SELECT * FROM providers WHERE provider_id = ?",
            (provider_id,)
        )
        return ProviderRecord.from_row(results[0]) if results else None

    def get_subscriber(self, subscriber_id: int) -> Optional[SubscriberRecord]:
        results = self.db.execute(
            "SELECT * FROM subscribers WHERE subscriber_id = ?",
            (subscriber_id,)
        )
        if not results:
            return None
        entitlements = self.db.execute(
            "SELECT * FROM entitlements WHERE subscriber_id = ?",
            (subscriber_id,)
        )
        return SubscriberRecord.from_row(results[0], entitlements)

    def count_providers(self) -> int:
        results = self.db.execute("SELECT COUNT(*) as cnt FROM providers")
        return results[0]["cnt"] if results else 0


class EventRepository:
    """Repository for journal entries."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def append_many(
        self,
        records: List[EventRecord],
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        if not records:
            return 0
        if conn is None:
            with self.db.connection() as conn:
                return self.append_many(records, conn)

        conn.executemany(
            """INSERT INTO events
               (sequence, event_type, payload, block_time, prev_hash,
                timestamp, event_hash, signature, key_id)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            [r.to_db_tuple() for r in records],
        )
        logger.debug("events_persisted", count=len(records), last=records[-1].sequence)
        return len(records)

    def next_sequence(self) -> int:
        results = self.db.execute("SELECT MAX(sequence) as seq FROM events")
        if results and results[0].get("seq") is not None:
            return results[0]["seq"] + 1
        return 0

    def get_chain(self, limit: int = 100000) -> List[EventRecord]:
        results = self.db.execute(
            "SELECT * FROM events ORDER BY sequence ASC LIMIT ?",
            (limit,)
        )
        return [EventRecord.from_row(r) for r in results]

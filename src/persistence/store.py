"""
Engine Store

Binds a BillingEngine to its repositories: restore on startup, persist after
each operation.
"""

from typing import Optional
import structlog

from billing.engine import BillingEngine
from core.events import BillingEvent
from .database import Database, get_database
from .models import EventRecord
from .repository import EventRepository, LedgerRepository

logger = structlog.get_logger()


class EngineStore:
    """Snapshot and journal persistence for one engine."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self.db.initialize()
        self.ledger = LedgerRepository(self.db)
        self.events = EventRepository(self.db)

    def restore(self, engine: BillingEngine) -> bool:
        """Load the stored snapshot and journal into `engine`. False if empty."""
        state = self.ledger.load()
        records = self.events.get_chain()

        if records:
            engine.journal.load([BillingEvent.from_dict(r.to_dict()) for r in records])

        if state is None:
            return False

        engine.import_state(state)
        logger.info("engine_restored", providers=engine.provider_count, events=len(records))
        return True

    def persist(self, engine: BillingEngine) -> int:
        """
        Save the snapshot and any journal entries not yet stored.

        Call inside `engine.transaction()` so a storage failure rolls the
        engine back as well.
        """
        with engine.lock:
            new_events = engine.journal.since(self.events.next_sequence())
            records = [EventRecord.from_dict(e.to_dict()) for e in new_events]
            with self.db.connection() as conn:
                self.ledger.save(engine.export_state(), conn)
                return self.events.append_many(records, conn)

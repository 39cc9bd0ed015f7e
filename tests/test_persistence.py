"""
Tests for the Persistence Layer

Snapshot save/restore and journal storage on SQLite.
"""

import pytest
from billing.engine import BillingEngine
from core.config import EngineConfig, SECONDS_PER_MONTH
from core.errors import PreconditionError
from core.events import EventJournal
from persistence.database import Database
from persistence.repository import EventRepository, LedgerRepository
from persistence.store import EngineStore


MONTHLY_FEE = SECONDS_PER_MONTH


def build_engine(clock, feed, signer):
    return BillingEngine(
        config=EngineConfig(min_fee_usd=SECONDS_PER_MONTH),
        feed=feed,
        clock=clock,
        journal=EventJournal(signer=signer),
    )


def persist_op(engine, store, operation):
    with engine.transaction():
        result = operation()
        store.persist(engine)
        return result


@pytest.fixture
def db(temp_db):
    database = Database(temp_db)
    yield database
    database.close()


class TestDatabase:
    """Test the connection layer."""

    def test_rejects_non_sqlite_url(self):
        with pytest.raises(ValueError):
            Database("postgresql://localhost/servicehub")

    def test_initialize_creates_schema(self, db):
        db.initialize()

        tables = {r["name"] for r in db.execute("SELECT name FROM sqlite_master WHERE type='table'")}

        assert {"providers", "subscribers", "entitlements", "engine_state", "events"} <= tables

    def test_in_memory_database(self):
        db = Database("sqlite:///:memory:")
        db.initialize()

        assert LedgerRepository(db).load() is None
        assert EventRepository(db).next_sequence() == 0


class TestEngineStore:
    """Test restoring an engine from its stored snapshot and journal."""

    def test_empty_store_restores_nothing(self, db, clock, feed, signer):
        engine = build_engine(clock, feed, signer)

        assert EngineStore(db).restore(engine) is False

    def test_restart_preserves_state(self, db, clock, feed, signer):
        engine = build_engine(clock, feed, signer)
        store = EngineStore(db)
        big = 10**40
        persist_op(engine, store, lambda: engine.fund_account("admin", "bob", big))
        persist_op(engine, store, lambda: engine.register_provider("alice", 1, MONTHLY_FEE))
        due = persist_op(engine, store, lambda: engine.subscribe("bob", 10, 1, 1_000))
        persist_op(engine, store, lambda: engine.upgrade_implementation("admin", "1.1.0"))
        persist_op(engine, store, lambda: engine.disable_upgrades("admin"))

        restarted = build_engine(clock, feed, signer)
        assert EngineStore(db).restore(restarted) is True

        assert restarted.export_state() == engine.export_state()
        assert restarted.get_provider_earnings(1) == 1_000
        assert restarted.get_subscriber_state(10).due_dates == {1: due}
        assert restarted.wallet_balance("bob") == big - 1_000
        assert restarted.upgrades.disabled is True
        assert restarted.upgrade_history() == engine.upgrade_history()
        assert restarted.upgrades.implementation_version == "1.1.0"
        assert restarted.check_subscription_status(10, 1) is True

    def test_restored_journal_verifies_and_continues(self, db, clock, feed, signer):
        engine = build_engine(clock, feed, signer)
        store = EngineStore(db)
        persist_op(engine, store, lambda: engine.register_provider("alice", 1, MONTHLY_FEE))
        persist_op(engine, store, lambda: engine.update_provider_state("admin", 1, False))

        restarted = build_engine(clock, feed, signer)
        restarted_store = EngineStore(db)
        restarted_store.restore(restarted)
        persist_op(restarted, restarted_store, lambda: restarted.update_provider_state("admin", 1, True))

        assert len(restarted.journal.events) == 3
        assert restarted.journal.verify_chain_integrity() == (True, None)
        assert EventRepository(db).next_sequence() == 3

    def test_failed_operation_is_not_persisted(self, db, clock, feed, signer):
        engine = build_engine(clock, feed, signer)
        store = EngineStore(db)
        persist_op(engine, store, lambda: engine.register_provider("alice", 1, MONTHLY_FEE))

        with pytest.raises(PreconditionError):
            persist_op(engine, store, lambda: engine.register_provider("bob", 1, MONTHLY_FEE))

        assert LedgerRepository(db).count_providers() == 1
        assert LedgerRepository(db).get_provider(1).owner == "alice"
        assert EventRepository(db).next_sequence() == 1

    def test_removed_provider_membership_survives_restart(self, db, clock, feed, signer):
        engine = build_engine(clock, feed, signer)
        store = EngineStore(db)
        persist_op(engine, store, lambda: engine.fund_account("admin", "bob", 1_000))
        persist_op(engine, store, lambda: engine.register_provider("alice", 1, MONTHLY_FEE))
        persist_op(engine, store, lambda: engine.subscribe("bob", 10, 1, 100))
        persist_op(engine, store, lambda: engine.remove_provider("alice", 1))

        record = LedgerRepository(db).get_subscriber(10)

        assert record.active_providers == [1]
        assert LedgerRepository(db).get_provider(1) is None

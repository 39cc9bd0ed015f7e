"""
Database Connection Layer

SQLite storage for engine snapshots and the event journal, with automatic
schema creation. Amounts exceed SQLite's 64-bit INTEGER range, so they are
stored as decimal TEXT.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

logger = structlog.get_logger()

SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Providers
CREATE TABLE IF NOT EXISTS providers (
    provider_id INTEGER PRIMARY KEY,
    owner TEXT NOT NULL,
    fee_per_second TEXT NOT NULL,
    balance TEXT NOT NULL DEFAULT '0',
    is_active INTEGER NOT NULL DEFAULT 1,
    active_subscribers TEXT NOT NULL DEFAULT '[]'  -- JSON array
);

-- Subscribers
CREATE TABLE IF NOT EXISTS subscribers (
    subscriber_id INTEGER PRIMARY KEY,
    owner TEXT,
    is_paused INTEGER NOT NULL DEFAULT 0,
    active_providers TEXT NOT NULL DEFAULT '[]'  -- JSON array
);

-- Per-provider due dates; provider_id may reference a removed provider
CREATE TABLE IF NOT EXISTS entitlements (
    subscriber_id INTEGER NOT NULL,
    provider_id INTEGER NOT NULL,
    due_date TEXT NOT NULL,
    PRIMARY KEY (subscriber_id, provider_id),
    FOREIGN KEY (subscriber_id) REFERENCES subscribers(subscriber_id)
);

-- Singleton key/value rows: custody, upgrade latch
CREATE TABLE IF NOT EXISTS engine_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,  -- JSON
    updated_at TEXT NOT NULL
);

-- Signed event journal
CREATE TABLE IF NOT EXISTS events (
    sequence INTEGER PRIMARY KEY,
    event_type TEXT NOT NULL,
    payload TEXT NOT NULL,  -- JSON object
    block_time INTEGER NOT NULL,
    prev_hash TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    event_hash TEXT NOT NULL,
    signature TEXT,
    key_id TEXT
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_entitlements_provider ON entitlements(provider_id);
CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);
"""


class Database:
    """
    SQLite connection manager.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to servicehub.db
        with db.connection() as conn:
            conn.execute("SELECT * FROM providers")
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///servicehub.db"
        )
        if not self.database_url.startswith("sqlite:///"):
            raise ValueError(f"Unsupported database URL: {self.database_url}")
        self._local = threading.local()
        self._shared_conn: Optional[sqlite3.Connection] = None
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    @property
    def path(self) -> str:
        return self.database_url[len("sqlite:///"):]

    @property
    def is_memory(self) -> bool:
        return self.path == ":memory:"

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        if not self.is_memory:
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _get_conn(self) -> sqlite3.Connection:
        # An in-memory database exists per connection, so all threads share one.
        if self.is_memory:
            if self._shared_conn is None:
                self._shared_conn = self._open()
            return self._shared_conn

        if getattr(self._local, "conn", None) is None:
            self._local.conn = self._open()
        return self._local.conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Connection scoped to one transaction: commit on success, rollback on error."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            with self.connection() as conn:
                conn.executescript(SCHEMA_SQL)
                conn.execute(
                    "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, datetime.now(timezone.utc).isoformat())
                )

            self._initialized = True
            logger.info("database_initialized", path=self.path)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        with self.connection() as conn:
            cursor = conn.execute(query, params)
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []

    def close(self) -> None:
        """Close database connections."""
        if getattr(self._local, "conn", None) is not None:
            self._local.conn.close()
            self._local.conn = None
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db

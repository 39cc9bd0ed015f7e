"""
Persistence Layer for ServiceHub

SQLite snapshots of the registries and the signed event journal.
"""

from .database import Database, get_database
from .models import ProviderRecord, SubscriberRecord, EventRecord
from .repository import LedgerRepository, EventRepository
from .store import EngineStore

__all__ = [
    "Database",
    "get_database",
    "ProviderRecord",
    "SubscriberRecord",
    "EventRecord",
    "LedgerRepository",
    "EventRepository",
    "EngineStore",
]

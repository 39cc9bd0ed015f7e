"""
Data Models for Persistence Layer

Row-shaped mirrors of the engine snapshot. Conversion to and from the
engine's snapshot dicts happens here so the repository stays SQL-only.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import json


@dataclass
class ProviderRecord:
    """Persisted provider row."""
    provider_id: int
    owner: str
    fee_per_second: int
    balance: int = 0
    is_active: bool = True
    active_subscribers: List[int] = field(default_factory=list)

    def to_db_tuple(self) -> tuple:
        return (
            self.provider_id,
            self.owner,
            str(self.fee_per_second),
            str(self.balance),
            1 if self.is_active else 0,
            json.dumps(sorted(self.active_subscribers)),
        )

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "owner": self.owner,
            "fee_per_second": self.fee_per_second,
            "balance": self.balance,
            "is_active": self.is_active,
            "active_subscribers": list(self.active_subscribers),
        }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "ProviderRecord":
        return cls(
            provider_id=int(data["provider_id"]),
            owner=data["owner"],
            fee_per_second=int(data["fee_per_second"]),
            balance=int(data.get("balance", 0)),
            is_active=bool(data.get("is_active", True)),
            active_subscribers=[int(s) for s in data.get("active_subscribers", [])],
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ProviderRecord":
        return cls(
            provider_id=row["provider_id"],
            owner=row["owner"],
            fee_per_second=int(row["fee_per_second"]),
            balance=int(row["balance"]),
            is_active=bool(row["is_active"]),
            active_subscribers=json.loads(row["active_subscribers"] or "[]"),
        )


@dataclass
class SubscriberRecord:
    """Persisted subscriber row plus its entitlement rows."""
    subscriber_id: int
    owner: Optional[str] = None
    is_paused: bool = False
    active_providers: List[int] = field(default_factory=list)
    due_dates: Dict[int, int] = field(default_factory=dict)

    def to_db_tuple(self) -> tuple:
        return (
            self.subscriber_id,
            self.owner,
            1 if self.is_paused else 0,
            json.dumps(sorted(self.active_providers)),
        )

    def entitlement_tuples(self) -> List[tuple]:
        return [
            (self.subscriber_id, provider_id, str(due_date))
            for provider_id, due_date in sorted(self.due_dates.items())
        ]

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "subscriber_id": self.subscriber_id,
            "owner": self.owner,
            "is_paused": self.is_paused,
            "active_providers": list(self.active_providers),
            "due_dates": {str(p): d for p, d in self.due_dates.items()},
        }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "SubscriberRecord":
        return cls(
            subscriber_id=int(data["subscriber_id"]),
            owner=data.get("owner"),
            is_paused=bool(data.get("is_paused", False)),
            active_providers=[int(p) for p in data.get("active_providers", [])],
            due_dates={int(p): int(d) for p, d in data.get("due_dates", {}).items()},
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any], entitlements: List[Dict[str, Any]]) -> "SubscriberRecord":
        return cls(
            subscriber_id=row["subscriber_id"],
            owner=row.get("owner"),
            is_paused=bool(row.get("is_paused", 0)),
            active_providers=json.loads(row["active_providers"] or "[]"),
            due_dates={e["provider_id"]: int(e["due_date"]) for e in entitlements},
        )


@dataclass
class EventRecord:
    """Persisted journal entry."""
    sequence: int
    event_type: str
    payload: Dict[str, Any]
    block_time: int
    prev_hash: str
    timestamp: str
    event_hash: str
    signature: Optional[str] = None
    key_id: Optional[str] = None

    def to_db_tuple(self) -> tuple:
        return (
            self.sequence,
            self.event_type,
            json.dumps(self.payload, sort_keys=True),
            self.block_time,
            self.prev_hash,
            self.timestamp,
            self.event_hash,
            self.signature,
            self.key_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "event_type": self.event_type,
            "payload": self.payload,
            "block_time": self.block_time,
            "prev_hash": self.prev_hash,
            "timestamp": self.timestamp,
            "event_hash": self.event_hash,
            "signature": self.signature,
            "key_id": self.key_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventRecord":
        return cls(
            sequence=int(data["sequence"]),
            event_type=data["event_type"],
            payload=data.get("payload") or {},
            block_time=int(data["block_time"]),
            prev_hash=data["prev_hash"],
            timestamp=data["timestamp"],
            event_hash=data["event_hash"],
            signature=data.get("signature"),
            key_id=data.get("key_id"),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "EventRecord":
        payload = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return cls(
            sequence=row["sequence"],
            event_type=row["event_type"],
            payload=payload,
            block_time=row["block_time"],
            prev_hash=row["prev_hash"],
            timestamp=row["timestamp"],
            event_hash=row["event_hash"],
            signature=row.get("signature"),
            key_id=row.get("key_id"),
        )

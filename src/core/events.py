"""
Billing Event Journal

Every successful mutating operation emits one event (ProviderRegistered,
SubscriberRegistered, ...). Events are appended to a hash-chained journal:
each entry carries the SHA3-256 hash of its predecessor and an Ed25519
signature over its own hash, so a truncated or edited export is detectable.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import structlog

from crypto.signer import CryptoSigner, Ed25519Signer

logger = structlog.get_logger()

GENESIS_HASH = "GENESIS"


class EventType(Enum):
    """Observable events of the billing engine."""
    PROVIDER_REGISTERED = "ProviderRegistered"
    PROVIDER_REMOVED = "ProviderRemoved"
    SUBSCRIBER_REGISTERED = "SubscriberRegistered"
    SUBSCRIPTION_INCREASED = "SubscriptionIncreased"
    PROVIDER_FEE_SET = "ProviderFeeSet"
    EARNINGS_WITHDRAWN = "EarningsWithdrawn"
    PROVIDER_STATE_UPDATED = "ProviderStateUpdated"
    UPGRADES_DISABLED = "UpgradesDisabled"
    IMPLEMENTATION_UPGRADED = "ImplementationUpgraded"
    SUBSCRIBER_COMPACTED = "SubscriberCompacted"
    ACCOUNT_FUNDED = "AccountFunded"


def _canonical_value(value: Any) -> Any:
    # Amounts exceed the JSON safe-integer range, so ints travel as strings.
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (list, tuple, set)):
        items = sorted(value) if isinstance(value, set) else value
        return [_canonical_value(v) for v in items]
    if isinstance(value, dict):
        return {str(k): _canonical_value(v) for k, v in value.items()}
    return value


@dataclass
class BillingEvent:
    """A single journal entry."""
    sequence: int
    event_type: EventType
    payload: Dict[str, Any]
    block_time: int
    prev_hash: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_hash: str = ""
    signature: Optional[str] = None
    key_id: Optional[str] = None

    def canonicalize(self) -> str:
        """Deterministic JSON of everything covered by the hash."""
        return json.dumps(
            {
                "sequence": self.sequence,
                "event_type": self.event_type.value,
                "payload": _canonical_value(self.payload),
                "block_time": self.block_time,
                "prev_hash": self.prev_hash,
                "timestamp": self.timestamp,
            },
            sort_keys=True,
            separators=(",", ":"),
        )

    def compute_hash(self) -> str:
        return hashlib.sha3_256(self.canonicalize().encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "event_type": self.event_type.value,
            "payload": _canonical_value(self.payload),
            "block_time": self.block_time,
            "prev_hash": self.prev_hash,
            "timestamp": self.timestamp,
            "event_hash": self.event_hash,
            "signature": self.signature,
            "key_id": self.key_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BillingEvent":
        # Payload values come back as strings; the hash is computed over strings anyway.
        return cls(
            sequence=int(data["sequence"]),
            event_type=EventType(data["event_type"]),
            payload=data.get("payload") or {},
            block_time=int(data["block_time"]),
            prev_hash=data["prev_hash"],
            timestamp=data["timestamp"],
            event_hash=data.get("event_hash", ""),
            signature=data.get("signature"),
            key_id=data.get("key_id"),
        )


class EventJournal:
    """
    Append-only, hash-chained, signed list of billing events.
    """

    def __init__(self, signer: Optional[CryptoSigner] = None):
        self.signer = signer or Ed25519Signer()
        self.events: List[BillingEvent] = []

    @property
    def head_hash(self) -> str:
        return self.events[-1].event_hash if self.events else GENESIS_HASH

    def record(
        self,
        event_type: EventType,
        payload: Dict[str, Any],
        block_time: int,
    ) -> BillingEvent:
        """Append a new signed event and return it."""
        event = BillingEvent(
            sequence=len(self.events),
            event_type=event_type,
            payload=dict(payload),
            block_time=block_time,
            prev_hash=self.head_hash,
        )
        event.event_hash = event.compute_hash()
        signed = self.signer.sign(event.event_hash.encode("utf-8"))
        event.signature = signed.signature_b64
        event.key_id = signed.key_id

        self.events.append(event)
        logger.info(
            "event_recorded",
            sequence=event.sequence,
            event_type=event_type.value,
            event_hash=event.event_hash[:16],
        )
        return event

    def load(self, events: List[BillingEvent]) -> None:
        """Replace the in-memory journal with previously persisted events."""
        self.events = sorted(events, key=lambda e: e.sequence)

    def since(self, sequence: int) -> List[BillingEvent]:
        """Events with sequence >= `sequence`."""
        return [e for e in self.events if e.sequence >= sequence]

    def filter(self, event_type: Optional[EventType] = None, limit: int = 100) -> List[BillingEvent]:
        """Most recent `limit` entries, optionally of one type. A limit of 0 returns all."""
        if limit < 0:
            raise ValueError("limit must be non-negative")
        events = self.events
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        return events[-limit:] if limit else list(events)

    def verify_chain_integrity(self) -> Tuple[bool, Optional[str]]:
        """
        Verify sequence numbers, hash linkage, entry hashes and signatures.

        Returns (is_valid, error_message)
        """
        prev_hash = GENESIS_HASH

        for i, event in enumerate(self.events):
            if event.sequence != i:
                return (False, f"Sequence mismatch at position {i}")

            if event.prev_hash != prev_hash:
                return (False, f"Hash chain broken at position {i}")

            if event.compute_hash() != event.event_hash:
                return (False, f"Event hash mismatch at position {i}")

            if event.signature is None:
                return (False, f"Missing signature at position {i}")

            result = self.signer.verify_b64(event.event_hash.encode("utf-8"), event.signature)
            if not result.valid:
                return (False, f"Invalid signature at position {i}")

            prev_hash = event.event_hash

        return (True, None)

    def export(self) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.events]

"""
Subscriber Registry

Owns subscriber records: owner, paused flag, the set of provider ids the
subscriber is entitled to, and a per-provider due date.

Subscriber balance is never stored. It is derived on demand from the due
dates and the providers' current rates, so the passage of time costs nothing.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set
import structlog

from core.config import MAX_UINT256
from core.errors import (
    ArithmeticFailure,
    CapacityExceededError,
    EntitlementNotFoundError,
    PreconditionError,
    SubscriberNotFoundError,
)

logger = structlog.get_logger()


@dataclass
class Subscriber:
    """A subscriber and its entitlements."""
    subscriber_id: int
    owner: Optional[str] = None
    # Not read or written by any operation; reported as-is.
    is_paused: bool = False
    active_providers: Set[int] = field(default_factory=set)
    due_dates: Dict[int, int] = field(default_factory=dict)

    def due_date(self, provider_id: int) -> int:
        return self.due_dates.get(provider_id, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscriber_id": self.subscriber_id,
            "owner": self.owner,
            "is_paused": self.is_paused,
            "active_providers": sorted(self.active_providers),
            "due_dates": {str(pid): due for pid, due in sorted(self.due_dates.items())},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Subscriber":
        return cls(
            subscriber_id=int(data["subscriber_id"]),
            owner=data.get("owner"),
            is_paused=bool(data.get("is_paused", False)),
            active_providers={int(p) for p in data.get("active_providers", [])},
            due_dates={int(p): int(d) for p, d in data.get("due_dates", {}).items()},
        )


def paid_seconds(amount: int, fee_per_second: int) -> int:
    """Whole seconds bought by `amount`; fractional seconds are forfeited."""
    if fee_per_second <= 0:
        raise ArithmeticFailure("Division by zero fee rate", fee_per_second=fee_per_second)
    return amount // fee_per_second


class SubscriberRegistry:
    """
    Subscriber table keyed by id, each bounded by a fan-out cap.
    """

    def __init__(self, max_subscribed_providers: int):
        self.max_subscribed_providers = max_subscribed_providers
        self._subscribers: Dict[int, Subscriber] = {}

    def get(self, subscriber_id: int) -> Optional[Subscriber]:
        return self._subscribers.get(subscriber_id)

    def require(self, subscriber_id: int) -> Subscriber:
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is None:
            raise SubscriberNotFoundError("Subscriber not registered", subscriber_id=subscriber_id)
        return subscriber

    def list_ids(self) -> List[int]:
        return sorted(self._subscribers)

    def owner_of(self, subscriber_id: int) -> Optional[str]:
        subscriber = self._subscribers.get(subscriber_id)
        return subscriber.owner if subscriber else None

    def bind_owner(self, subscriber_id: int, caller: str) -> str:
        """
        Return the owner of `subscriber_id`, binding it to `caller` first if
        the record is new or ownerless. The first subscribe wins.
        """
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is None:
            subscriber = Subscriber(subscriber_id=subscriber_id)
            self._subscribers[subscriber_id] = subscriber

        if subscriber.owner is None:
            subscriber.owner = caller
            logger.info("subscriber_owner_bound", subscriber_id=subscriber_id, owner=caller)
        return subscriber.owner

    def add_entitlement(
        self,
        subscriber_id: int,
        provider_id: int,
        fee_per_second: int,
        deposit: int,
        now: int,
    ) -> int:
        """Create an entitlement and return its due date."""
        subscriber = self.require(subscriber_id)

        if provider_id in subscriber.active_providers:
            raise PreconditionError(
                "Already subscribed to provider",
                subscriber_id=subscriber_id,
                provider_id=provider_id,
            )

        duration = paid_seconds(deposit, fee_per_second)

        if len(subscriber.active_providers) >= self.max_subscribed_providers:
            raise CapacityExceededError(
                "Maximum subscribed providers reached",
                subscriber_id=subscriber_id,
                max_subscribed_providers=self.max_subscribed_providers,
            )

        due_date = now + duration
        if due_date > MAX_UINT256:
            raise ArithmeticFailure("Due date overflow", subscriber_id=subscriber_id)

        subscriber.active_providers.add(provider_id)
        subscriber.due_dates[provider_id] = due_date

        logger.info(
            "entitlement_added",
            subscriber_id=subscriber_id,
            provider_id=provider_id,
            due_date=due_date,
            paid_seconds=duration,
        )
        return due_date

    def extend_entitlement(
        self,
        subscriber_id: int,
        provider_id: int,
        fee_per_second: int,
        amount: int,
        now: int,
        anchor_at_now: bool = False,
    ) -> int:
        """
        Push an existing due date forward and return the new one.

        By default the extra time is added to the stored due date even when it
        already lies in the past, so a lapsed subscriber who tops up stays
        expired until the gap is covered. `anchor_at_now` anchors at
        max(now, due_date) instead.
        """
        subscriber = self.require(subscriber_id)
        if provider_id not in subscriber.due_dates:
            raise EntitlementNotFoundError(
                "No subscription to provider",
                subscriber_id=subscriber_id,
                provider_id=provider_id,
            )

        extra = paid_seconds(amount, fee_per_second)
        old_due = subscriber.due_dates[provider_id]
        anchor = max(now, old_due) if anchor_at_now else old_due
        new_due = anchor + extra
        if new_due > MAX_UINT256:
            raise ArithmeticFailure("Due date overflow", subscriber_id=subscriber_id)

        if old_due <= now and not anchor_at_now:
            logger.warning(
                "extension_from_expired_due_date",
                subscriber_id=subscriber_id,
                provider_id=provider_id,
                old_due_date=old_due,
                now=now,
                new_due_date=new_due,
            )

        subscriber.due_dates[provider_id] = new_due
        logger.info(
            "entitlement_extended",
            subscriber_id=subscriber_id,
            provider_id=provider_id,
            old_due_date=old_due,
            due_date=new_due,
        )
        return new_due

    def is_active(self, subscriber_id: int, provider_id: int, now: int) -> bool:
        """True iff due_date > now. Unknown ids read as zero state."""
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is None:
            return False
        return subscriber.due_date(provider_id) > now

    def derived_balance(
        self,
        subscriber_id: int,
        now: int,
        fee_lookup: Callable[[int], int],
    ) -> int:
        """
        Sum of (due_date - now) * fee_per_second over unexpired entitlements.

        `fee_lookup` must return 0 for providers that no longer exist.
        """
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is None:
            return 0

        total = 0
        for provider_id in subscriber.active_providers:
            due = subscriber.due_date(provider_id)
            if due > now:
                total += (due - now) * fee_lookup(provider_id)
        return total

    def compact(self, subscriber_id: int, exists: Callable[[int], bool]) -> List[int]:
        """Drop memberships of providers that no longer exist; return their ids."""
        subscriber = self.require(subscriber_id)
        dangling = sorted(pid for pid in subscriber.active_providers if not exists(pid))
        for provider_id in dangling:
            subscriber.active_providers.discard(provider_id)
            subscriber.due_dates.pop(provider_id, None)

        if dangling:
            logger.info("subscriber_compacted", subscriber_id=subscriber_id, dropped=dangling)
        return dangling

    def export_state(self) -> List[Dict[str, Any]]:
        return [self._subscribers[sid].to_dict() for sid in self.list_ids()]

    def import_state(self, rows: List[Dict[str, Any]]) -> None:
        self._subscribers = {}
        for row in rows:
            subscriber = Subscriber.from_dict(row)
            self._subscribers[subscriber.subscriber_id] = subscriber

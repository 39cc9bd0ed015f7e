"""
Billing Engine

Orchestrates the operations that touch both registries at once: subscribe,
extend, change fee, withdraw, remove, admin toggle, upgrade latch.

Execution model:
1. Every operation takes the engine lock, so operations never interleave.
2. State is snapshotted on entry; any exception restores the snapshot and
   propagates. There is no partial success.
3. Events are journaled as they happen; a rollback truncates the journal
   back to its length on entry.
"""

import copy
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple
import structlog

from core.access import AccessControl, Operation, UpgradeGate
from core.config import EngineConfig, MAX_RECORD_ID, MAX_UINT256
from core.errors import BillingError, PreconditionError
from core.events import EventJournal, EventType
from .custody import CustodyLedger
from .oracle import PriceFeed, PriceOracleGuard
from .providers import Provider, ProviderRegistry
from .subscribers import Subscriber, SubscriberRegistry

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProviderState:
    """Read-only view of a provider."""
    provider_id: int
    owner: str
    fee_per_second: int
    balance: int
    is_active: bool
    active_subscribers: Tuple[int, ...]

    @classmethod
    def of(cls, provider: Provider) -> "ProviderState":
        return cls(
            provider_id=provider.provider_id,
            owner=provider.owner,
            fee_per_second=provider.fee_per_second,
            balance=provider.balance,
            is_active=provider.is_active,
            active_subscribers=tuple(sorted(provider.active_subscribers)),
        )


@dataclass(frozen=True)
class SubscriberState:
    """Read-only view of a subscriber, with its derived balance."""
    subscriber_id: int
    owner: Optional[str]
    is_paused: bool
    balance: int
    active_providers: Tuple[int, ...]
    due_dates: Dict[int, int] = field(default_factory=dict)

    @classmethod
    def of(cls, subscriber: Subscriber, balance: int) -> "SubscriberState":
        return cls(
            subscriber_id=subscriber.subscriber_id,
            owner=subscriber.owner,
            is_paused=subscriber.is_paused,
            balance=balance,
            active_providers=tuple(sorted(subscriber.active_providers)),
            due_dates=dict(subscriber.due_dates),
        )


@dataclass(frozen=True)
class Withdrawal:
    """Outcome of withdrawEarnings."""
    provider_id: int
    owner: str
    amount: int
    value_usd: Optional[int]


def _require_uint(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise PreconditionError(f"{name} must be an integer", **{name: value})
    if value < 0 or value > MAX_UINT256:
        raise PreconditionError(f"{name} out of range", **{name: value})
    return value


def _require_id(value: Any, name: str) -> int:
    _require_uint(value, name)
    if value > MAX_RECORD_ID:
        raise PreconditionError(f"{name} out of range", **{name: value})
    return value


class BillingEngine:
    """
    The subscription billing engine.

    Callers are identified by an opaque string; the admin identity comes from
    the config. Time comes from `clock`, which returns integer epoch seconds.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        feed: Optional[PriceFeed] = None,
        clock: Optional[Callable[[], int]] = None,
        custody: Optional[CustodyLedger] = None,
        journal: Optional[EventJournal] = None,
    ):
        self.config = config or EngineConfig()
        self.clock = clock or (lambda: int(time.time()))

        self.oracle = PriceOracleGuard.from_config(self.config, feed=feed, clock=self.clock)
        self.providers = ProviderRegistry(
            oracle=self.oracle,
            seconds_per_month=self.config.seconds_per_month,
            max_providers=self.config.max_providers,
        )
        self.subscribers = SubscriberRegistry(
            max_subscribed_providers=self.config.max_subscribed_providers,
        )
        self.custody = custody or CustodyLedger()
        self.access = AccessControl(self.config.admin)
        self.upgrades = UpgradeGate(self.access)
        self.journal = journal or EventJournal()

        self._lock = RLock()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @property
    def lock(self) -> RLock:
        return self._lock

    def _snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy({
            "providers": self.providers._providers,
            "subscribers": self.subscribers._subscribers,
            "wallets": self.custody.wallets,
            "pooled": self.custody.pooled,
            "upgrades_disabled": self.upgrades._disabled,
            "implementation_version": self.upgrades.implementation_version,
            "upgrade_history": self.upgrades._history,
            "journal_length": len(self.journal.events),
        })

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self.providers._providers = snapshot["providers"]
        self.subscribers._subscribers = snapshot["subscribers"]
        self.custody.wallets = snapshot["wallets"]
        self.custody.pooled = snapshot["pooled"]
        self.upgrades._disabled = snapshot["upgrades_disabled"]
        self.upgrades.implementation_version = snapshot["implementation_version"]
        self.upgrades._history = snapshot["upgrade_history"]
        del self.journal.events[snapshot["journal_length"]:]

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """
        All-or-nothing critical section.

        Reentrant: a caller may wrap several operations (plus its own work,
        such as persisting a snapshot) in one outer transaction.

        The rollback snapshot is a deep copy of every registry, so each
        operation costs O(providers + subscribers + wallets).
        """
        with self._lock:
            snapshot = self._snapshot()
            try:
                yield
            except Exception as e:
                self._restore(snapshot)
                logger.warning(
                    "operation_rolled_back",
                    error=type(e).__name__,
                    code=getattr(e, "code", None),
                    message=str(e),
                )
                raise

    def _emit(self, event_type: EventType, now: int, **payload: Any) -> None:
        self.journal.record(event_type, payload, now)

    # ------------------------------------------------------------------
    # Provider operations
    # ------------------------------------------------------------------

    def register_provider(self, caller: str, provider_id: int, monthly_fee: int) -> ProviderState:
        _require_id(provider_id, "provider_id")
        _require_uint(monthly_fee, "monthly_fee")

        with self.transaction():
            now = self.clock()
            self.access.authorize(Operation.REGISTER_PROVIDER, caller)
            provider = self.providers.register(provider_id, caller, monthly_fee)
            self._emit(
                EventType.PROVIDER_REGISTERED,
                now,
                provider_id=provider_id,
                owner=caller,
                monthly_fee=monthly_fee,
            )
            return ProviderState.of(provider)

    def remove_provider(self, caller: str, provider_id: int) -> int:
        """Delete the provider and refund its full balance to the owner."""
        with self.transaction():
            now = self.clock()
            existing = self.providers.get(provider_id)
            self.access.authorize(
                Operation.REMOVE_PROVIDER,
                caller,
                owner=existing.owner if existing else None,
            )
            provider = self.providers.remove(provider_id)
            refund = provider.balance
            self.custody.push(provider.owner, refund)
            self._emit(
                EventType.PROVIDER_REMOVED,
                now,
                provider_id=provider_id,
                owner=provider.owner,
                refunded=refund,
            )
            return refund

    def set_provider_fee(self, caller: str, provider_id: int, monthly_fee: int) -> ProviderState:
        _require_uint(monthly_fee, "monthly_fee")

        with self.transaction():
            now = self.clock()
            existing = self.providers.get(provider_id)
            self.access.authorize(
                Operation.SET_PROVIDER_FEE,
                caller,
                owner=existing.owner if existing else None,
            )
            provider = self.providers.set_fee(provider_id, monthly_fee)
            self._emit(
                EventType.PROVIDER_FEE_SET,
                now,
                provider_id=provider_id,
                monthly_fee=monthly_fee,
                fee_per_second=provider.fee_per_second,
            )
            return ProviderState.of(provider)

    def withdraw_earnings(self, caller: str, provider_id: int) -> Withdrawal:
        """
        Pay the provider's whole balance to its owner.

        The USD value is informational only; an unavailable oracle leaves it
        as None and does not block the payout.
        """
        with self.transaction():
            now = self.clock()
            existing = self.providers.get(provider_id)
            self.access.authorize(
                Operation.WITHDRAW_EARNINGS,
                caller,
                owner=existing.owner if existing else None,
            )
            provider = self.providers.require(provider_id)
            amount = provider.balance
            value_usd = self._reporting_value(amount)

            self.providers.debit(provider_id, amount)
            self.custody.push(provider.owner, amount)

            self._emit(
                EventType.EARNINGS_WITHDRAWN,
                now,
                provider_id=provider_id,
                amount=amount,
                value_usd=value_usd,
            )
            logger.info(
                "earnings_withdrawn",
                provider_id=provider_id,
                amount=amount,
                value_usd=value_usd,
            )
            return Withdrawal(
                provider_id=provider_id,
                owner=provider.owner,
                amount=amount,
                value_usd=value_usd,
            )

    def update_provider_state(self, caller: str, provider_id: int, active: bool) -> ProviderState:
        with self.transaction():
            now = self.clock()
            self.access.authorize(Operation.UPDATE_PROVIDER_STATE, caller)
            provider = self.providers.set_active(provider_id, bool(active))
            self._emit(
                EventType.PROVIDER_STATE_UPDATED,
                now,
                provider_id=provider_id,
                is_active=provider.is_active,
            )
            return ProviderState.of(provider)

    # ------------------------------------------------------------------
    # Subscriber operations
    # ------------------------------------------------------------------

    def _require_active_provider(self, provider_id: int) -> Provider:
        provider = self.providers.get(provider_id)
        if provider is None or not provider.is_active:
            raise PreconditionError("Provider is not active", provider_id=provider_id)
        return provider

    def subscribe(
        self,
        caller: str,
        subscriber_id: int,
        provider_id: int,
        deposit: int,
    ) -> int:
        """Create an entitlement funded by `deposit`; returns the due date."""
        _require_id(subscriber_id, "subscriber_id")
        _require_id(provider_id, "provider_id")
        _require_uint(deposit, "deposit")

        with self.transaction():
            now = self.clock()
            owner = self.subscribers.bind_owner(subscriber_id, caller)
            self.access.authorize(Operation.SUBSCRIBE, caller, owner=owner)
            provider = self._require_active_provider(provider_id)

            self.custody.pull(caller, deposit)
            due_date = self.subscribers.add_entitlement(
                subscriber_id,
                provider_id,
                provider.fee_per_second,
                deposit,
                now,
            )
            self.providers.credit(provider_id, deposit)
            self.providers.add_subscriber(provider_id, subscriber_id)

            self._emit(
                EventType.SUBSCRIBER_REGISTERED,
                now,
                subscriber_id=subscriber_id,
                owner=caller,
                deposit=deposit,
                provider_id=provider_id,
                due_date=due_date,
            )
            return due_date

    def increase_subscription_deposit(
        self,
        caller: str,
        subscriber_id: int,
        provider_id: int,
        amount: int,
    ) -> int:
        """Extend an existing entitlement; returns the new due date."""
        _require_uint(amount, "amount")

        with self.transaction():
            now = self.clock()
            self.access.authorize(
                Operation.INCREASE_DEPOSIT,
                caller,
                owner=self.subscribers.owner_of(subscriber_id),
            )
            provider = self._require_active_provider(provider_id)

            self.custody.pull(caller, amount)
            due_date = self.subscribers.extend_entitlement(
                subscriber_id,
                provider_id,
                provider.fee_per_second,
                amount,
                now,
                anchor_at_now=self.config.anchor_extensions_at_now,
            )
            self.providers.credit(provider_id, amount)

            self._emit(
                EventType.SUBSCRIPTION_INCREASED,
                now,
                subscriber_id=subscriber_id,
                amount=amount,
                provider_id=provider_id,
                due_date=due_date,
            )
            return due_date

    def compact_subscriber(self, caller: str, subscriber_id: int) -> List[int]:
        """Drop memberships of removed providers; returns the dropped ids."""
        with self.transaction():
            now = self.clock()
            self.access.authorize(
                Operation.COMPACT_SUBSCRIBER,
                caller,
                owner=self.subscribers.owner_of(subscriber_id),
            )
            dropped = self.subscribers.compact(subscriber_id, self.providers.exists)
            self._emit(
                EventType.SUBSCRIBER_COMPACTED,
                now,
                subscriber_id=subscriber_id,
                dropped=dropped,
            )
            return dropped

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    def disable_upgrades(self, caller: str) -> None:
        with self.transaction():
            now = self.clock()
            self.upgrades.disable(caller)
            self._emit(
                EventType.UPGRADES_DISABLED,
                now,
                implementation_version=self.upgrades.implementation_version,
            )

    def upgrade_implementation(self, caller: str, version: str) -> str:
        with self.transaction():
            now = self.clock()
            record = self.upgrades.upgrade(caller, version)
            self._emit(
                EventType.IMPLEMENTATION_UPGRADED,
                now,
                version=record.version,
                upgraded_by=record.upgraded_by,
            )
            return record.version

    def fund_account(self, caller: str, account: str, amount: int) -> int:
        """Credit an external wallet. Dev/test faucet, admin only."""
        _require_uint(amount, "amount")

        with self.transaction():
            now = self.clock()
            self.access.authorize(Operation.FUND_ACCOUNT, caller)
            balance = self.custody.fund(account, amount)
            self._emit(EventType.ACCOUNT_FUNDED, now, account=account, amount=amount)
            return balance

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _reporting_value(self, amount: int) -> Optional[int]:
        try:
            return self.oracle.price_of(amount)
        except BillingError as e:
            logger.warning("reporting_value_unavailable", amount=amount, error=str(e))
            return None

    @property
    def provider_count(self) -> int:
        return self.providers.count

    def check_subscription_status(self, subscriber_id: int, provider_id: int) -> bool:
        with self._lock:
            return self.subscribers.is_active(subscriber_id, provider_id, self.clock())

    def upgrade_history(self) -> List[Dict[str, str]]:
        with self._lock:
            return [r.to_dict() for r in self.upgrades.get_history()]

    def get_provider_state(self, provider_id: int) -> ProviderState:
        with self._lock:
            return ProviderState.of(self.providers.require(provider_id))

    def get_provider_earnings(self, provider_id: int) -> int:
        with self._lock:
            return self.providers.require(provider_id).balance

    def get_subscriber_balance(self, subscriber_id: int) -> int:
        with self._lock:
            return self.subscribers.derived_balance(
                subscriber_id,
                self.clock(),
                self.providers.fee_per_second_of,
            )

    def get_subscriber_state(self, subscriber_id: int) -> SubscriberState:
        with self._lock:
            subscriber = self.subscribers.require(subscriber_id)
            return SubscriberState.of(subscriber, self.get_subscriber_balance(subscriber_id))

    def get_subscriber_deposit_value_usd(self, subscriber_id: int) -> int:
        """Reference-currency value of the subscriber's derived balance."""
        with self._lock:
            return self.oracle.price_of(self.get_subscriber_balance(subscriber_id))

    def wallet_balance(self, account: str) -> int:
        with self._lock:
            return self.custody.balance_of(account)

    # ------------------------------------------------------------------
    # Persistence support
    # ------------------------------------------------------------------

    def export_state(self) -> Dict[str, Any]:
        """Snapshot of registries, custody and the upgrade latch."""
        with self._lock:
            return {
                "providers": self.providers.export_state(),
                "subscribers": self.subscribers.export_state(),
                "custody": self.custody.to_dict(),
                "upgrades": self.upgrades.export_state(),
            }

    def import_state(self, state: Dict[str, Any]) -> None:
        with self._lock:
            self.providers.import_state(state.get("providers", []))
            self.subscribers.import_state(state.get("subscribers", []))
            restored = CustodyLedger.from_dict(state.get("custody", {}))
            self.custody.wallets = restored.wallets
            self.custody.pooled = restored.pooled
            self.upgrades.import_state(state.get("upgrades", {}))

        logger.info(
            "engine_state_restored",
            providers=self.providers.count,
            subscribers=len(self.subscribers.list_ids()),
        )

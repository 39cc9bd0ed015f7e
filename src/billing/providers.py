"""
Provider Registry

Owns provider records: owner, per-second fee, accumulated balance, active flag
and the set of subscriber ids holding an entitlement.

Provider balance is a running total. It moves only on explicit credit
(subscribe/extend) and debit (withdraw), never with the passage of time.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set
import structlog

from core.config import MAX_UINT256
from core.errors import (
    ArithmeticFailure,
    CapacityExceededError,
    InsufficientFundsError,
    PreconditionError,
    ProviderNotFoundError,
)
from .oracle import PriceOracleGuard

logger = structlog.get_logger()


@dataclass
class Provider:
    """A registered provider."""
    provider_id: int
    owner: str
    fee_per_second: int
    balance: int = 0
    is_active: bool = True
    active_subscribers: Set[int] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "owner": self.owner,
            "fee_per_second": str(self.fee_per_second),
            "balance": str(self.balance),
            "is_active": self.is_active,
            "active_subscribers": sorted(self.active_subscribers),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Provider":
        return cls(
            provider_id=int(data["provider_id"]),
            owner=data["owner"],
            fee_per_second=int(data["fee_per_second"]),
            balance=int(data.get("balance", 0)),
            is_active=bool(data.get("is_active", True)),
            active_subscribers={int(s) for s in data.get("active_subscribers", [])},
        )


class ProviderRegistry:
    """
    Provider table keyed by id, bounded by a global ceiling.
    """

    def __init__(
        self,
        oracle: PriceOracleGuard,
        seconds_per_month: int,
        max_providers: int,
    ):
        self.oracle = oracle
        self.seconds_per_month = seconds_per_month
        self.max_providers = max_providers
        self._providers: Dict[int, Provider] = {}

    @property
    def count(self) -> int:
        return len(self._providers)

    def get(self, provider_id: int) -> Optional[Provider]:
        return self._providers.get(provider_id)

    def require(self, provider_id: int) -> Provider:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ProviderNotFoundError("Provider not registered", provider_id=provider_id)
        return provider

    def exists(self, provider_id: int) -> bool:
        return provider_id in self._providers

    def list_ids(self) -> List[int]:
        return sorted(self._providers)

    def fee_per_second_of(self, provider_id: int) -> int:
        """Per-second fee, or 0 for a provider that no longer exists."""
        provider = self._providers.get(provider_id)
        return provider.fee_per_second if provider else 0

    def to_fee_per_second(self, monthly_fee: int) -> int:
        # Truncates; a fee below seconds_per_month yields a zero rate.
        return monthly_fee // self.seconds_per_month

    def register(self, provider_id: int, owner: str, monthly_fee: int) -> Provider:
        if provider_id in self._providers:
            raise PreconditionError("Provider already registered", provider_id=provider_id)
        if self.count >= self.max_providers:
            raise CapacityExceededError(
                "Maximum number of providers reached",
                max_providers=self.max_providers,
            )
        self.oracle.enforce_minimum(monthly_fee)

        provider = Provider(
            provider_id=provider_id,
            owner=owner,
            fee_per_second=self.to_fee_per_second(monthly_fee),
        )
        self._providers[provider_id] = provider

        logger.info(
            "provider_registered",
            provider_id=provider_id,
            owner=owner,
            monthly_fee=monthly_fee,
            fee_per_second=provider.fee_per_second,
        )
        return provider

    def remove(self, provider_id: int) -> Provider:
        """
        Delete the record and return it so its balance can be refunded.

        Subscriber memberships that reference this id are left in place.
        """
        provider = self.require(provider_id)
        del self._providers[provider_id]
        logger.info(
            "provider_removed",
            provider_id=provider_id,
            refunded=provider.balance,
            dangling_subscribers=len(provider.active_subscribers),
        )
        return provider

    def set_fee(self, provider_id: int, new_monthly_fee: int) -> Provider:
        """Change the rate for new and extended entitlements only."""
        provider = self.require(provider_id)
        if not provider.is_active:
            raise PreconditionError("Provider is not active", provider_id=provider_id)
        self.oracle.enforce_minimum(new_monthly_fee)

        old_rate = provider.fee_per_second
        provider.fee_per_second = self.to_fee_per_second(new_monthly_fee)
        logger.info(
            "provider_fee_set",
            provider_id=provider_id,
            old_fee_per_second=old_rate,
            fee_per_second=provider.fee_per_second,
        )
        return provider

    def set_active(self, provider_id: int, value: bool) -> Provider:
        provider = self.require(provider_id)
        provider.is_active = value
        logger.info("provider_state_updated", provider_id=provider_id, is_active=value)
        return provider

    def credit(self, provider_id: int, amount: int) -> int:
        provider = self.require(provider_id)
        new_balance = provider.balance + amount
        if new_balance > MAX_UINT256:
            raise ArithmeticFailure("Provider balance overflow", provider_id=provider_id)
        provider.balance = new_balance
        return new_balance

    def debit(self, provider_id: int, amount: int) -> int:
        provider = self.require(provider_id)
        if amount > provider.balance:
            raise InsufficientFundsError(
                "Debit exceeds provider balance",
                provider_id=provider_id,
                requested=amount,
                balance=provider.balance,
            )
        provider.balance -= amount
        return provider.balance

    def add_subscriber(self, provider_id: int, subscriber_id: int) -> None:
        self.require(provider_id).active_subscribers.add(subscriber_id)

    def export_state(self) -> List[Dict[str, Any]]:
        return [self._providers[pid].to_dict() for pid in self.list_ids()]

    def import_state(self, rows: List[Dict[str, Any]]) -> None:
        self._providers = {}
        for row in rows:
            provider = Provider.from_dict(row)
            self._providers[provider.provider_id] = provider

"""
Pooled Custody

Holds subscriber deposits between subscribe/extend and provider withdrawal.
Wallet balances stand in for the external token: `pull` moves funds from a
caller's wallet into the pool, `push` pays out of the pool to a wallet.
"""

from dataclasses import dataclass, field
from typing import Any, Dict
import structlog

from core.config import MAX_UINT256
from core.errors import ArithmeticFailure, InsufficientFundsError

logger = structlog.get_logger()


@dataclass
class CustodyLedger:
    """Wallet balances plus the pooled amount held by the engine."""
    wallets: Dict[str, int] = field(default_factory=dict)
    pooled: int = 0

    def balance_of(self, account: str) -> int:
        return self.wallets.get(account, 0)

    def fund(self, account: str, amount: int) -> int:
        """Credit an external wallet (faucet for dev and tests)."""
        if amount < 0:
            raise ValueError("amount must be non-negative")
        new_balance = self.balance_of(account) + amount
        if new_balance > MAX_UINT256:
            raise ArithmeticFailure("Wallet balance overflow", account=account)
        self.wallets[account] = new_balance
        return new_balance

    def pull(self, account: str, amount: int) -> None:
        """Move `amount` from `account` into the pool."""
        if amount < 0:
            raise ValueError("amount must be non-negative")
        available = self.balance_of(account)
        if available < amount:
            raise InsufficientFundsError(
                "Transfer amount exceeds balance",
                account=account,
                requested=amount,
                available=available,
            )
        if self.pooled + amount > MAX_UINT256:
            raise ArithmeticFailure("Pooled balance overflow")

        self.wallets[account] = available - amount
        self.pooled += amount
        logger.debug("custody_pull", account=account, amount=amount, pooled=self.pooled)

    def push(self, account: str, amount: int) -> None:
        """Pay `amount` out of the pool to `account`."""
        if amount < 0:
            raise ValueError("amount must be non-negative")
        if self.pooled < amount:
            raise InsufficientFundsError(
                "Pool cannot cover payout",
                requested=amount,
                pooled=self.pooled,
            )
        self.pooled -= amount
        self.wallets[account] = self.balance_of(account) + amount
        logger.debug("custody_push", account=account, amount=amount, pooled=self.pooled)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pooled": str(self.pooled),
            "wallets": {k: str(v) for k, v in self.wallets.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustodyLedger":
        return cls(
            wallets={k: int(v) for k, v in data.get("wallets", {}).items()},
            pooled=int(data.get("pooled", 0)),
        )

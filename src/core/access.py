"""
Access Control and Upgrade Gate

Two actor roles gate every mutating operation:
- ENTITY OWNER: the identity recorded at provider registration or at a
  subscriber's first subscribe.
- SYSTEM ADMIN: a single fixed identity chosen when the engine is built.

Ownership comparisons live in one capability check, `AccessControl.authorize`,
keyed by the operation being attempted.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional
import structlog

from .errors import AuthorizationError, PreconditionError, UpgradesDisabledError

logger = structlog.get_logger()


class Role(Enum):
    """Who may invoke an operation."""
    PUBLIC = "PUBLIC"
    OWNER = "OWNER"
    ADMIN = "ADMIN"


class Operation(Enum):
    """Externally visible operations of the billing engine."""
    REGISTER_PROVIDER = "registerProvider"
    REMOVE_PROVIDER = "removeProvider"
    SUBSCRIBE = "subscribe"
    INCREASE_DEPOSIT = "increaseSubscriptionDeposit"
    SET_PROVIDER_FEE = "setProviderFee"
    WITHDRAW_EARNINGS = "withdrawEarnings"
    UPDATE_PROVIDER_STATE = "updateProviderState"
    DISABLE_UPGRADES = "disableUpgrades"
    UPGRADE_IMPLEMENTATION = "upgradeImplementation"
    COMPACT_SUBSCRIBER = "compactSubscriber"
    FUND_ACCOUNT = "fundAccount"


# Subscribe is checked against the owner the registry binds on first use.
OPERATION_ROLES: Dict[Operation, Role] = {
    Operation.REGISTER_PROVIDER: Role.PUBLIC,
    Operation.REMOVE_PROVIDER: Role.OWNER,
    Operation.SUBSCRIBE: Role.OWNER,
    Operation.INCREASE_DEPOSIT: Role.OWNER,
    Operation.SET_PROVIDER_FEE: Role.OWNER,
    Operation.WITHDRAW_EARNINGS: Role.OWNER,
    Operation.UPDATE_PROVIDER_STATE: Role.ADMIN,
    Operation.DISABLE_UPGRADES: Role.ADMIN,
    Operation.UPGRADE_IMPLEMENTATION: Role.ADMIN,
    Operation.COMPACT_SUBSCRIBER: Role.OWNER,
    Operation.FUND_ACCOUNT: Role.ADMIN,
}


class AccessControl:
    """Single capability check for (operation, actor, target owner)."""

    def __init__(self, admin: str):
        if not admin:
            raise ValueError("An admin identity is required")
        self.admin = admin

    def is_admin(self, actor: str) -> bool:
        return actor == self.admin

    def authorize(
        self,
        operation: Operation,
        actor: str,
        owner: Optional[str] = None,
    ) -> None:
        """
        Raise AuthorizationError unless `actor` may perform `operation`.

        `owner` is the identity recorded on the target record, if any. A
        missing owner never matches, so operations on unknown records fail
        here the same way a mismatched caller does.
        """
        role = OPERATION_ROLES[operation]

        if role == Role.PUBLIC:
            return

        if role == Role.ADMIN:
            if not self.is_admin(actor):
                logger.warning(
                    "authorization_denied",
                    operation=operation.value,
                    actor=actor,
                    required=role.value,
                )
                raise AuthorizationError(
                    "Caller is not the admin",
                    operation=operation.value,
                    actor=actor,
                )
            return

        if owner is None or actor != owner:
            logger.warning(
                "authorization_denied",
                operation=operation.value,
                actor=actor,
                required=role.value,
            )
            raise AuthorizationError(
                "Caller is not the owner",
                operation=operation.value,
                actor=actor,
            )


@dataclass
class UpgradeRecord:
    """An accepted code replacement."""
    version: str
    upgraded_by: str
    upgraded_at: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "version": self.version,
            "upgraded_by": self.upgraded_by,
            "upgraded_at": self.upgraded_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "UpgradeRecord":
        return cls(
            version=data["version"],
            upgraded_by=data["upgraded_by"],
            upgraded_at=data["upgraded_at"],
        )


class UpgradeGate:
    """
    One-way latch over code replacement of the deployed engine.

    Once disabled, every future upgrade attempt fails regardless of who asks.
    """

    def __init__(self, access: AccessControl, implementation_version: str = "1.0.0"):
        self.access = access
        self.implementation_version = implementation_version
        self._disabled = False
        self._history: list = []

    @property
    def disabled(self) -> bool:
        return self._disabled

    def disable(self, actor: str) -> None:
        """Latch the gate. Admin only, one shot."""
        self.access.authorize(Operation.DISABLE_UPGRADES, actor)
        if self._disabled:
            raise UpgradesDisabledError("Upgrades already disabled")

        self._disabled = True
        logger.critical(
            "upgrades_disabled",
            actor=actor,
            implementation_version=self.implementation_version,
            effect="CODE_REPLACEMENT_PERMANENTLY_BLOCKED",
        )

    def authorize_upgrade(self, actor: str) -> None:
        if self._disabled:
            raise UpgradesDisabledError("Upgrades are permanently disabled", actor=actor)
        self.access.authorize(Operation.UPGRADE_IMPLEMENTATION, actor)

    def upgrade(self, actor: str, version: str) -> UpgradeRecord:
        """Record a replacement implementation after the latch and admin check pass."""
        self.authorize_upgrade(actor)
        if not version:
            raise PreconditionError("An implementation version is required")

        record = UpgradeRecord(
            version=version,
            upgraded_by=actor,
            upgraded_at=datetime.now(timezone.utc).isoformat(),
        )
        self._history.append(record)
        self.implementation_version = version
        logger.info("implementation_upgraded", version=version, actor=actor)
        return record

    def get_history(self) -> list:
        return self._history.copy()

    def export_state(self) -> Dict[str, object]:
        return {
            "disabled": self._disabled,
            "implementation_version": self.implementation_version,
            "history": [r.to_dict() for r in self._history],
        }

    def import_state(self, state: Dict[str, object]) -> None:
        self._disabled = bool(state.get("disabled", False))
        self.implementation_version = str(state.get("implementation_version", self.implementation_version))
        self._history = [UpgradeRecord.from_dict(r) for r in state.get("history", [])]

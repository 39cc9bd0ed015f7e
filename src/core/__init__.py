"""
SERVICEHUB - Core Module

Cross-cutting pieces shared by the billing engine and its outer layers:
configuration, the error taxonomy, access control with the upgrade latch,
and the signed event journal.
"""

from .config import EngineConfig
from .errors import (
    BillingError,
    AuthorizationError,
    PreconditionError,
    ArithmeticFailure,
    OracleError,
)
from .access import AccessControl, Operation, Role, UpgradeGate
from .events import BillingEvent, EventJournal, EventType

__all__ = [
    "EngineConfig",
    "BillingError",
    "AuthorizationError",
    "PreconditionError",
    "ArithmeticFailure",
    "OracleError",
    "AccessControl",
    "Operation",
    "Role",
    "UpgradeGate",
    "BillingEvent",
    "EventJournal",
    "EventType",
]

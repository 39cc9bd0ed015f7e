"""
Billing Error Taxonomy

Every failure raised by the engine derives from BillingError and carries a
stable machine-readable code. Failures are surfaced synchronously to the
caller of the failing operation; the engine rolls back all state touched by
that operation before the exception leaves it.
"""

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for all billing engine failures."""

    code = "BILLING_ERROR"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "context": {k: str(v) for k, v in self.context.items()},
        }


class AuthorizationError(BillingError):
    """Caller does not match the recorded owner or the system admin."""

    code = "UNAUTHORIZED"


class PreconditionError(BillingError):
    """State does not allow the requested operation."""

    code = "PRECONDITION_FAILED"


class FeeTooLowError(PreconditionError):
    """Reference-currency value of a fee is below the floor."""

    code = "FEE_TOO_LOW"


class ProviderNotFoundError(PreconditionError):
    code = "PROVIDER_NOT_FOUND"


class SubscriberNotFoundError(PreconditionError):
    code = "SUBSCRIBER_NOT_FOUND"


class EntitlementNotFoundError(PreconditionError):
    code = "ENTITLEMENT_NOT_FOUND"


class CapacityExceededError(PreconditionError):
    """A provider ceiling or subscriber fan-out cap would be exceeded."""

    code = "CAPACITY_EXCEEDED"


class InsufficientFundsError(PreconditionError):
    code = "INSUFFICIENT_FUNDS"


class UpgradesDisabledError(PreconditionError):
    code = "UPGRADES_DISABLED"


class ArithmeticFailure(BillingError):
    """Division by a zero rate, or overflow of a balance or timestamp."""

    code = "ARITHMETIC_FAILURE"


class OracleError(BillingError):
    """The reference price feed could not supply a usable reading."""

    code = "ORACLE_UNAVAILABLE"

    def __init__(self, message: str, cause: Optional[BaseException] = None, **context: Any):
        super().__init__(message, **context)
        self.cause = cause

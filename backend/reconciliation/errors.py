"""
Reconciliation Engine Errors

Every failure the engine reports is a ReconciliationError carrying a
discriminating ``kind``. The API layer turns these into a structured
error body:

{
    "error": {
        "kind": "OverAllocation",
        "message": "Requested 600.00 EUR exceeds unallocated 300.00 EUR",
        "details": {...}
    }
}

Validation errors are raised before any mutation, so catching one means
nothing was written.
"""

from typing import Dict, Any, Optional


class ErrorKind:
    """Discriminator values for engine errors."""
    INVALID_STATE_TRANSITION = "InvalidStateTransition"
    INVALID_AMOUNT = "InvalidAmount"
    OVER_ALLOCATION = "OverAllocation"
    CURRENCY_MISMATCH = "CurrencyMismatch"
    DIRECTION_MISMATCH = "DirectionMismatch"
    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"


class ReconciliationError(Exception):
    """Base class for all engine errors."""

    kind: str = "ReconciliationError"
    http_status: int = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "details": self.details
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class InvalidStateTransition(ReconciliationError):
    kind = ErrorKind.INVALID_STATE_TRANSITION
    http_status = 409


class InvalidAmount(ReconciliationError):
    kind = ErrorKind.INVALID_AMOUNT
    http_status = 422


class OverAllocation(ReconciliationError):
    kind = ErrorKind.OVER_ALLOCATION
    http_status = 422


class CurrencyMismatch(ReconciliationError):
    kind = ErrorKind.CURRENCY_MISMATCH
    http_status = 422


class DirectionMismatch(ReconciliationError):
    """Inflow allocated to a vendor bill, or outflow to a customer invoice."""
    kind = ErrorKind.DIRECTION_MISMATCH
    http_status = 422


class NotFound(ReconciliationError):
    kind = ErrorKind.NOT_FOUND
    http_status = 404


class Conflict(ReconciliationError):
    """Optimistic concurrency violation: the data changed since it was read."""
    kind = ErrorKind.CONFLICT
    http_status = 409


class ProviderUnavailable(ReconciliationError):
    """The ledger store could not be reached. Never retried by the engine."""
    kind = ErrorKind.PROVIDER_UNAVAILABLE
    http_status = 503


ERROR_TYPES = {
    cls.kind: cls
    for cls in (
        InvalidStateTransition,
        InvalidAmount,
        OverAllocation,
        CurrencyMismatch,
        DirectionMismatch,
        NotFound,
        Conflict,
        ProviderUnavailable,
    )
}

"""Domain error taxonomy shared by every service.

Services raise these; the HTTP layer renders them through one exception
handler (see `nunaa.common.service_app`).
"""

from typing import Any


class CoreError(Exception):
    """Base class for errors surfaced to callers with a stable code."""

    code = "CORE_ERROR"
    status_code = 400

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": self.context}


class InvalidArgument(CoreError):
    code = "INVALID_ARGUMENT"
    status_code = 400


class AccountNotFound(CoreError):
    code = "ACCOUNT_NOT_FOUND"
    status_code = 404


class PaymentNotFound(CoreError):
    code = "PAYMENT_NOT_FOUND"
    status_code = 404


class InsufficientFunds(CoreError):
    code = "INSUFFICIENT_FUNDS"
    status_code = 409


class ListingUnavailable(CoreError):
    code = "LISTING_UNAVAILABLE"
    status_code = 409


class AlreadyFinalized(CoreError):
    """A payment or verification record is already in a terminal state."""

    code = "ALREADY_FINALIZED"
    status_code = 409


class StorageUnavailable(CoreError):
    """Store timeout or lost connection; the unit of work left no effect."""

    code = "STORAGE_UNAVAILABLE"
    status_code = 503


class LedgerInvariantViolation(CoreError):
    """Posted rows do not balance. Never retried, never swallowed."""

    code = "LEDGER_INVARIANT"
    status_code = 500


class PermissionDenied(CoreError):
    code = "PERMISSION_DENIED"
    status_code = 403

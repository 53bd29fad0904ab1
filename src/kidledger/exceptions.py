"""Custom exception hierarchy for the KidLedger package."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Type


class KidLedgerError(Exception):
    """Base class for all KidLedger specific errors.

    Every error carries a machine readable ``kind`` and a ``retryable`` flag so
    callers such as the offline action queue can decide whether to keep an
    operation pending or give up on it.
    """

    kind = "ledger_error"
    retryable = False
    user_message = "Something went wrong. Please try again."

    def as_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "retryable": self.retryable, "message": str(self) or self.user_message}


class DuplicateOperationError(KidLedgerError):
    """Raised when an idempotency key has already been committed.

    Not a failure: the caller should use :attr:`entry` as the result.
    """

    kind = "duplicate_operation"
    user_message = "Already saved."

    def __init__(self, message: str, *, entry: Any = None, balance: Optional[int] = None) -> None:
        super().__init__(message)
        self.entry = entry
        self.balance = balance


class InsufficientBalanceError(KidLedgerError):
    """Raised when a redemption would push an account below zero."""

    kind = "insufficient_balance"
    user_message = "Not enough points for this reward yet."

    def __init__(self, message: str, *, balance: Optional[int] = None, requested: Optional[int] = None) -> None:
        super().__init__(message)
        self.balance = balance
        self.requested = requested


class ContentionError(KidLedgerError):
    """Raised when a transaction keeps losing write conflicts."""

    kind = "contention"
    retryable = True
    user_message = "Still syncing. Your change is safe and will be retried."


class StaleIdempotencyKeyError(KidLedgerError):
    """Raised when a request replays a key whose record has expired."""

    kind = "stale_idempotency_key"
    user_message = "This request is too old to replay. Please start it again."


class TransportError(KidLedgerError):
    """Raised when the ledger service could not be reached."""

    kind = "transport"
    retryable = True
    user_message = "Offline. Your change is saved and will sync later."


class InvariantViolationError(KidLedgerError, ValueError):
    """Raised for malformed input such as a non-positive amount."""

    kind = "invariant_violation"


class AccountNotFoundError(KidLedgerError):
    """Raised when an account lookup fails."""

    kind = "account_not_found"
    user_message = "That account could not be found."


class DuplicateAccountError(KidLedgerError):
    """Raised when attempting to open an account that already exists."""

    kind = "duplicate_account"
    user_message = "That account already exists."


class AccountArchivedError(KidLedgerError):
    """Raised when a ledger operation targets an archived account."""

    kind = "account_archived"
    user_message = "That account is no longer active."


_ERRORS_BY_KIND: Dict[str, Type[KidLedgerError]] = {
    cls.kind: cls
    for cls in (
        KidLedgerError,
        DuplicateOperationError,
        InsufficientBalanceError,
        ContentionError,
        StaleIdempotencyKeyError,
        TransportError,
        InvariantViolationError,
        AccountNotFoundError,
        DuplicateAccountError,
        AccountArchivedError,
    )
}


def error_from_payload(payload: Mapping[str, Any]) -> KidLedgerError:
    """Rebuild an exception from the JSON body produced by :meth:`KidLedgerError.as_dict`."""

    kind = str(payload.get("error") or KidLedgerError.kind)
    message = str(payload.get("message") or "")
    cls = _ERRORS_BY_KIND.get(kind)
    if cls is None:
        error = KidLedgerError(message or kind)
        error.kind = kind
        error.retryable = bool(payload.get("retryable", False))
        return error
    return cls(message)


__all__ = [
    "KidLedgerError",
    "DuplicateOperationError",
    "InsufficientBalanceError",
    "ContentionError",
    "StaleIdempotencyKeyError",
    "TransportError",
    "InvariantViolationError",
    "AccountNotFoundError",
    "DuplicateAccountError",
    "AccountArchivedError",
    "error_from_payload",
]

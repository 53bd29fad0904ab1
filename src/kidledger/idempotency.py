"""Idempotency guard mapping client operation keys to completion records.

Every method takes the caller's open :class:`~sqlmodel.Session` so the record
is written in the same transaction as the mutation it guards. A key moves from
``in-flight`` to ``committed`` (terminal) or ``failed``; a failed key may be
re-armed by a corrected retry of the same logical operation.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import delete
from sqlmodel import Session

from .exceptions import InvariantViolationError, StaleIdempotencyKeyError
from .models import IdempotencyStatus
from .ops import StructuredLogger, utcnow
from .persistence import DurableStore, IdempotencyRecordRow, LedgerEntryRow

MAX_KEY_LENGTH = 128


class GuardOutcome(str, Enum):
    PROCEED = "proceed"
    ALREADY_COMMITTED = "already_committed"
    IN_FLIGHT = "in_flight"


@dataclass(slots=True, frozen=True)
class GuardDecision:
    outcome: GuardOutcome
    result_ref: Optional[str] = None

    @property
    def should_proceed(self) -> bool:
        return self.outcome is GuardOutcome.PROCEED


def validate_key(key: str) -> str:
    if not isinstance(key, str) or not key.strip():
        raise InvariantViolationError("Idempotency key must be a non-empty string.")
    if len(key) > MAX_KEY_LENGTH:
        raise InvariantViolationError(f"Idempotency key longer than {MAX_KEY_LENGTH} characters.")
    return key


class IdempotencyGuard:
    """Reject replays of an operation key within one store transaction."""

    def __init__(
        self,
        *,
        ttl: timedelta = timedelta(hours=48),
        clock: Callable[[], datetime] = utcnow,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._ttl = ttl
        self._clock = clock
        self._logger = logger or StructuredLogger(component="idempotency")

    def begin(self, session: Session, key: str, *, operation: str = "", account_id: str = "") -> GuardDecision:
        """Claim ``key`` for the current transaction.

        Raises :class:`StaleIdempotencyKeyError` when the key was committed
        long enough ago that its record expired (or was purged while the
        ledger entry it produced still exists).
        """

        validate_key(key)
        now = self._clock()
        record = session.get(IdempotencyRecordRow, key)

        if record is None:
            if session.get(LedgerEntryRow, key) is not None:
                self._logger.warning("stale_key_replayed", key=key, reason="record purged")
                raise StaleIdempotencyKeyError(f"Operation {key!r} already ran and its replay window has closed.")
            session.add(
                IdempotencyRecordRow(
                    key=key,
                    status=IdempotencyStatus.IN_FLIGHT.value,
                    operation=operation,
                    account_id=account_id,
                    created_at=now,
                    updated_at=now,
                    expires_at=now + self._ttl,
                )
            )
            # Surface a concurrent insert of the same key as a write conflict now.
            session.flush()
            return GuardDecision(GuardOutcome.PROCEED)

        status = IdempotencyStatus(record.status)
        if status is IdempotencyStatus.COMMITTED:
            if record.expires_at <= now:
                self._logger.warning("stale_key_replayed", key=key, reason="record expired")
                raise StaleIdempotencyKeyError(f"Operation {key!r} already ran and its replay window has closed.")
            return GuardDecision(GuardOutcome.ALREADY_COMMITTED, record.result_ref)
        if status is IdempotencyStatus.IN_FLIGHT:
            return GuardDecision(GuardOutcome.IN_FLIGHT)

        record.status = IdempotencyStatus.IN_FLIGHT.value
        record.attempts += 1
        record.failure_reason = None
        record.updated_at = now
        record.expires_at = now + self._ttl
        session.add(record)
        session.flush()
        self._logger.log("failed_key_rearmed", key=key, attempts=record.attempts)
        return GuardDecision(GuardOutcome.PROCEED)

    def commit(self, session: Session, key: str, result_ref: str) -> None:
        record = self._require_in_flight(session, key)
        now = self._clock()
        record.status = IdempotencyStatus.COMMITTED.value
        record.result_ref = result_ref
        record.updated_at = now
        record.expires_at = now + self._ttl
        session.add(record)

    def fail(self, session: Session, key: str, reason: str) -> None:
        record = self._require_in_flight(session, key)
        record.status = IdempotencyStatus.FAILED.value
        record.failure_reason = reason
        record.updated_at = self._clock()
        session.add(record)

    def status(self, session: Session, key: str) -> Optional[IdempotencyStatus]:
        record = session.get(IdempotencyRecordRow, key)
        return IdempotencyStatus(record.status) if record else None

    def purge_expired(self, store: DurableStore, *, now: Optional[datetime] = None) -> int:
        """Delete settled records past their expiry and return how many were removed."""

        moment = now or self._clock()

        def _purge(session: Session) -> int:
            statement = delete(IdempotencyRecordRow).where(
                IdempotencyRecordRow.expires_at <= moment,
                IdempotencyRecordRow.status != IdempotencyStatus.IN_FLIGHT.value,
            )
            return session.connection().execute(statement).rowcount or 0

        removed = store.run(_purge, operation="purge_idempotency")
        self._logger.log("idempotency_purged", removed=removed)
        return removed

    def _require_in_flight(self, session: Session, key: str) -> IdempotencyRecordRow:
        record = session.get(IdempotencyRecordRow, key)
        if record is None or record.status != IdempotencyStatus.IN_FLIGHT.value:
            raise InvariantViolationError(f"Idempotency key {key!r} is not in flight.")
        return record


__all__ = ["GuardDecision", "GuardOutcome", "IdempotencyGuard", "validate_key"]

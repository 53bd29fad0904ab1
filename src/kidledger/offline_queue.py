"""Client-side queue that holds ledger requests until the server confirms them.

Actions are written to a local database before any network attempt and are
replayed strictly in enqueue order. The idempotency key is minted once, at
enqueue, and sent unchanged on every attempt, which is what makes replays safe
against the server's idempotency guard.

Lifecycle::

    pending -> in_flight -> confirmed (row deleted)
                         -> retryable_failed -> (due) -> in_flight ...
                         -> terminal_failed (parked for manual retry)

A server-side terminal error (insufficient balance, stale key, bad input)
removes the action and is reported in the drain outcome.
Any other exception raised by the transport is treated as retryable. Parking
an action queues a sync-needs-attention notification when a
:class:`NotificationCenter` is attached.
"""

from __future__ import annotations

import asyncio
import json
import random
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import delete, func, update
from sqlmodel import Session, select

from .config import LedgerSettings
from .exceptions import DuplicateOperationError, InvariantViolationError, KidLedgerError
from .idempotency import validate_key
from .models import (
    ActionOutcome,
    LedgerEntryKind,
    QueuedAction,
    QueuedActionStatus,
    QueueStatus,
)
from .notifications import NotificationCenter, sync_attention_notification
from .ops import StructuredLogger, utcnow
from .persistence import (
    CLIENT_TABLES,
    DurableStore,
    QueuedActionRow,
    create_store_engine,
    create_tables,
)
from .points import require_positive, to_points
from .transport import PAYLOAD_FIELDS, LedgerTransport

_ACTIVE = (QueuedActionStatus.PENDING.value, QueuedActionStatus.RETRYABLE_FAILED.value)


def _normalise_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    missing = [name for name in PAYLOAD_FIELDS if name not in payload]
    if missing:
        raise InvariantViolationError(f"Queued payload is missing {', '.join(missing)}.")
    cleaned = dict(payload)
    for name in ("account_id", "ref", "actor_id"):
        if not isinstance(cleaned[name], str) or not cleaned[name].strip():
            raise InvariantViolationError(f"{name} must be a non-empty string.")
    cleaned["amount"] = require_positive(to_points(cleaned["amount"]))
    cleaned.setdefault("note", "")
    return cleaned


class OfflineActionQueue:
    """Durable FIFO of not-yet-confirmed ledger requests."""

    def __init__(
        self,
        store: DurableStore,
        transport: LedgerTransport,
        *,
        max_attempts: int = 6,
        base_delay: float = 5.0,
        max_delay: float = 300.0,
        attempt_timeout: float = 10.0,
        notifications: NotificationCenter | None = None,
        logger: StructuredLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._store = store
        self._transport = transport
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._attempt_timeout = attempt_timeout
        self._notifications = notifications
        self._logger = logger.child("offline_queue") if logger else StructuredLogger(component="offline_queue")
        self._clock = clock
        self._jitter = jitter
        self._drain_lock = asyncio.Lock()

    @classmethod
    def open(
        cls,
        path: str | Path,
        transport: LedgerTransport,
        *,
        settings: LedgerSettings | None = None,
        notifications: NotificationCenter | None = None,
        logger: StructuredLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "OfflineActionQueue":
        """Open (creating if needed) the queue database at ``path`` and recover it."""

        settings = settings or LedgerSettings()
        engine = create_store_engine(f"sqlite:///{path}", busy_timeout=settings.sqlite_busy_timeout_seconds)
        create_tables(engine, CLIENT_TABLES)
        store = DurableStore(engine, max_attempts=settings.txn_max_attempts, base_delay=settings.txn_base_delay_seconds)
        queue = cls(
            store,
            transport,
            max_attempts=settings.queue_max_attempts,
            base_delay=settings.queue_base_delay_seconds,
            max_delay=settings.queue_max_delay_seconds,
            attempt_timeout=settings.queue_attempt_timeout_seconds,
            notifications=notifications,
            logger=logger,
            clock=clock,
        )
        queue.recover()
        return queue

    # ------------------------------------------------------------------
    # Enqueue and management
    # ------------------------------------------------------------------
    def enqueue(
        self,
        kind: LedgerEntryKind | str,
        payload: Mapping[str, Any],
        *,
        idempotency_key: Optional[str] = None,
    ) -> QueuedAction:
        """Persist an action and return it. Nothing is sent until :meth:`drain`.

        Enqueueing an already queued key returns the stored action unchanged.
        """

        parsed = LedgerEntryKind.parse(kind)
        cleaned = _normalise_payload(payload)
        key = validate_key(idempotency_key) if idempotency_key else uuid.uuid4().hex

        def _enqueue(session: Session) -> QueuedAction:
            existing = session.exec(select(QueuedActionRow).where(QueuedActionRow.idempotency_key == key)).first()
            if existing is not None:
                return existing.to_model()
            row = QueuedActionRow(
                idempotency_key=key,
                kind=parsed.value,
                payload=json.dumps(cleaned, sort_keys=True),
                enqueued_at=self._clock(),
            )
            session.add(row)
            session.flush()
            return row.to_model()

        action = self._store.run(_enqueue, operation="queue_enqueue")
        self._logger.log("action_enqueued", key=action.idempotency_key, kind=action.kind.value, sequence=action.sequence)
        return action

    def recover(self) -> int:
        """Return actions abandoned mid-attempt (e.g. after a crash) to ``pending``."""

        def _recover(session: Session) -> int:
            statement = (
                update(QueuedActionRow)
                .where(QueuedActionRow.status == QueuedActionStatus.IN_FLIGHT.value)
                .values(status=QueuedActionStatus.PENDING.value)
            )
            return session.connection().execute(statement).rowcount or 0

        recovered = self._store.run(_recover, operation="queue_recover")
        if recovered:
            self._logger.warning("in_flight_recovered", count=recovered)
        return recovered

    def retry(self, idempotency_key: str) -> QueuedAction:
        """Re-arm an action parked after exhausting its attempts."""

        def _retry(session: Session) -> QueuedAction:
            row = self._require(session, idempotency_key)
            if row.status != QueuedActionStatus.TERMINAL_FAILED.value:
                raise InvariantViolationError(f"Queued action {idempotency_key!r} is not waiting for a manual retry.")
            row.status = QueuedActionStatus.PENDING.value
            row.attempt_count = 0
            row.next_retry_at = None
            session.add(row)
            session.flush()
            return row.to_model()

        action = self._store.run(_retry, operation="queue_retry")
        self._logger.log("action_rearmed", key=idempotency_key)
        return action

    def discard(self, idempotency_key: str) -> bool:
        def _discard(session: Session) -> bool:
            statement = delete(QueuedActionRow).where(QueuedActionRow.idempotency_key == idempotency_key)
            return bool(session.connection().execute(statement).rowcount)

        removed = self._store.run(_discard, operation="queue_discard")
        if removed:
            self._logger.log("action_discarded", key=idempotency_key)
        return removed

    def get(self, idempotency_key: str) -> Optional[QueuedAction]:
        with self._store.session() as session:
            row = session.exec(
                select(QueuedActionRow).where(QueuedActionRow.idempotency_key == idempotency_key)
            ).first()
            return row.to_model() if row else None

    def actions(self) -> List[QueuedAction]:
        with self._store.session() as session:
            rows = session.exec(select(QueuedActionRow).order_by(QueuedActionRow.sequence)).all()
            return [row.to_model() for row in rows]

    def status(self) -> QueueStatus:
        with self._store.session() as session:
            counts = dict(
                session.exec(
                    select(QueuedActionRow.status, func.count()).group_by(QueuedActionRow.status)
                ).all()
            )
            next_retry = session.exec(
                select(func.min(QueuedActionRow.next_retry_at)).where(
                    QueuedActionRow.status == QueuedActionStatus.RETRYABLE_FAILED.value
                )
            ).one()
        terminal = counts.get(QueuedActionStatus.TERMINAL_FAILED.value, 0)
        return QueueStatus(
            queue_length=sum(counts.values()),
            failed_items=counts.get(QueuedActionStatus.RETRYABLE_FAILED.value, 0) + terminal,
            needs_attention=terminal,
            next_retry_at=next_retry,
        )

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------
    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after failed ``attempt`` (1-based), with jitter."""

        ceiling = min(self._max_delay, self._base_delay * (2 ** (attempt - 1)))
        return ceiling / 2 + self._jitter() * ceiling / 2

    async def drain(self) -> List[ActionOutcome]:
        """Replay due actions in enqueue order.

        Stops at the first action that is not yet due or fails retryably, so a
        later action never overtakes an earlier one.
        """

        outcomes: List[ActionOutcome] = []
        async with self._drain_lock:
            while True:
                action = self._claim_head()
                if action is None:
                    break
                outcome = await self._attempt(action)
                outcomes.append(outcome)
                if outcome.status is QueuedActionStatus.RETRYABLE_FAILED:
                    break
        return outcomes

    async def run_forever(self, stop: asyncio.Event, *, idle_interval: float = 30.0) -> None:
        """Drain repeatedly until ``stop`` is set, sleeping until the head is due."""

        self._logger.log("replay_started")
        while not stop.is_set():
            await self.drain()
            wait = self._seconds_until_due(idle_interval)
            try:
                await asyncio.wait_for(stop.wait(), timeout=wait)
            except asyncio.TimeoutError:
                continue
        self._logger.log("replay_stopped")

    def _head(self, session: Session) -> Optional[QueuedActionRow]:
        return session.exec(
            select(QueuedActionRow)
            .where(QueuedActionRow.status.in_(_ACTIVE))
            .order_by(QueuedActionRow.sequence)
        ).first()

    def _seconds_until_due(self, idle_interval: float) -> float:
        with self._store.session() as session:
            head = self._head(session)
            due_at = head.next_retry_at if head else None
        if head is None:
            return idle_interval
        if due_at is None:
            return 0.0
        return max(0.0, min(idle_interval, (due_at - self._clock()).total_seconds()))

    def _claim_head(self) -> Optional[QueuedAction]:
        def _claim(session: Session) -> Optional[QueuedAction]:
            row = self._head(session)
            if row is None:
                return None
            if row.next_retry_at is not None and row.next_retry_at > self._clock():
                return None
            statement = (
                update(QueuedActionRow)
                .where(QueuedActionRow.sequence == row.sequence, QueuedActionRow.status == row.status)
                .values(status=QueuedActionStatus.IN_FLIGHT.value, attempt_count=row.attempt_count + 1)
            )
            if session.connection().execute(statement).rowcount != 1:
                return None
            action = row.to_model()
            action.status = QueuedActionStatus.IN_FLIGHT
            action.attempt_count = row.attempt_count + 1
            return action

        return self._store.run(_claim, operation="queue_claim")

    async def _attempt(self, action: QueuedAction) -> ActionOutcome:
        key = action.idempotency_key
        try:
            receipt = await asyncio.wait_for(
                asyncio.to_thread(self._transport.submit, action),
                timeout=self._attempt_timeout,
            )
        except DuplicateOperationError as exc:
            self._delete(key)
            self._logger.log("action_confirmed", key=key, duplicate=True)
            return ActionOutcome(key, QueuedActionStatus.CONFIRMED, entry=exc.entry, message=str(exc))
        except KidLedgerError as exc:
            if exc.retryable:
                return self._schedule_retry(action, exc.kind, str(exc))
            self._delete(key)
            self._logger.warning("action_rejected", key=key, error=exc.kind, message=str(exc))
            return ActionOutcome(key, QueuedActionStatus.TERMINAL_FAILED, error_kind=exc.kind, message=str(exc))
        except asyncio.TimeoutError:
            return self._schedule_retry(action, "timeout", f"No answer within {self._attempt_timeout}s.")
        except OSError as exc:
            return self._schedule_retry(action, "transport", str(exc))
        except Exception as exc:
            return self._schedule_retry(action, "unexpected", f"{type(exc).__name__}: {exc}")
        self._delete(key)
        self._logger.log(
            "action_confirmed",
            key=key,
            entry_id=receipt.entry.entry_id,
            duplicate=receipt.duplicate,
            attempts=action.attempt_count,
        )
        return ActionOutcome(key, QueuedActionStatus.CONFIRMED, entry=receipt.entry)

    def _schedule_retry(self, action: QueuedAction, error_kind: str, message: str) -> ActionOutcome:
        key = action.idempotency_key
        exhausted = action.attempt_count >= self._max_attempts
        status = QueuedActionStatus.TERMINAL_FAILED if exhausted else QueuedActionStatus.RETRYABLE_FAILED
        next_retry = None if exhausted else self._clock() + timedelta(seconds=self.backoff_delay(action.attempt_count))

        def _update(session: Session) -> None:
            statement = (
                update(QueuedActionRow)
                .where(QueuedActionRow.idempotency_key == key)
                .values(status=status.value, next_retry_at=next_retry, last_error=f"{error_kind}: {message}")
            )
            session.connection().execute(statement)

        self._store.run(_update, operation="queue_schedule_retry")
        if exhausted:
            self._logger.error("action_needs_attention", key=key, attempts=action.attempt_count, error=error_kind)
            if self._notifications is not None:
                self._notifications.queue(sync_attention_notification(action, error_kind))
        else:
            self._logger.warning(
                "action_retry_scheduled",
                key=key,
                attempts=action.attempt_count,
                next_retry_at=next_retry.isoformat() if next_retry else None,
                error=error_kind,
            )
        return ActionOutcome(key, status, error_kind=error_kind, message=message)

    def _delete(self, key: str) -> None:
        def _remove(session: Session) -> None:
            session.connection().execute(delete(QueuedActionRow).where(QueuedActionRow.idempotency_key == key))

        self._store.run(_remove, operation="queue_delete")

    @staticmethod
    def _require(session: Session, key: str) -> QueuedActionRow:
        row = session.exec(select(QueuedActionRow).where(QueuedActionRow.idempotency_key == key)).first()
        if row is None:
            raise InvariantViolationError(f"No queued action with key {key!r}.")
        return row


__all__ = ["OfflineActionQueue"]

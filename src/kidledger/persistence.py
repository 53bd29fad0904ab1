"""Persistence and SQLModel definitions for KidLedger.

The durable store is any SQLAlchemy database reached through SQLModel. Five
logical collections back the server side (``accounts``, ``ledger_entries``,
``idempotency_records``, ``streak_states``, ``achievement_progress``) plus the
``audit_log`` and ``member_settings`` tables. The client side offline queue
keeps ``queued_actions`` in its own database file.

:class:`DurableStore` runs a unit of work as one atomic transaction and
retries it when the store reports a write conflict.
"""
from __future__ import annotations

import json
import random
import time
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional, Sequence, TypeVar

from sqlalchemy import CheckConstraint, UniqueConstraint, event, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine

from .exceptions import ContentionError
from .models import (
    Account,
    AchievementProgress,
    AuditAction,
    AuditEvent,
    LedgerEntry,
    LedgerEntryKind,
    QueuedAction,
    QueuedActionStatus,
    StreakState,
)
from .ops import StructuredLogger, utcnow

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
class AccountRow(SQLModel, table=True):
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
        CheckConstraint("balance = total_earned - total_redeemed", name="ck_accounts_balance_conserved"),
    )

    account_id: str = Field(primary_key=True)
    member_id: str = Field(index=True)
    family_id: str = Field(index=True)
    balance: int = 0
    total_earned: int = 0
    total_redeemed: int = 0
    award_count: int = 0
    redeem_count: int = 0
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    archived_at: Optional[datetime] = None

    def to_model(self) -> Account:
        return Account(
            account_id=self.account_id,
            member_id=self.member_id,
            family_id=self.family_id,
            balance=self.balance,
            total_earned=self.total_earned,
            total_redeemed=self.total_redeemed,
            award_count=self.award_count,
            redeem_count=self.redeem_count,
            version=self.version,
            created_at=self.created_at,
            updated_at=self.updated_at,
            archived_at=self.archived_at,
        )


class LedgerEntryRow(SQLModel, table=True):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("account_id", "sequence", name="uq_ledger_entries_account_sequence"),
        CheckConstraint("amount > 0", name="ck_ledger_entries_amount_positive"),
    )

    entry_id: str = Field(primary_key=True)
    account_id: str = Field(index=True)
    member_id: str = Field(index=True)
    kind: str
    amount: int
    source_ref: str
    actor_id: str
    sequence: int
    created_at: datetime = Field(default_factory=utcnow, index=True)
    audit_note: str = ""

    def to_model(self) -> LedgerEntry:
        return LedgerEntry(
            entry_id=self.entry_id,
            account_id=self.account_id,
            member_id=self.member_id,
            kind=LedgerEntryKind(self.kind),
            amount=self.amount,
            source_ref=self.source_ref,
            actor_id=self.actor_id,
            sequence=self.sequence,
            created_at=self.created_at,
            audit_note=self.audit_note,
        )


class IdempotencyRecordRow(SQLModel, table=True):
    __tablename__ = "idempotency_records"

    key: str = Field(primary_key=True)
    status: str  # in-flight|committed|failed
    operation: str = ""
    account_id: str = ""
    result_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    attempts: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(index=True)


class AuditRecordRow(SQLModel, table=True):
    __tablename__ = "audit_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: str = Field(index=True)
    entry_id: str
    action: str  # award|redeem|redeem_rejected
    actor_id: str
    amount: int
    balance_after: int
    recorded_at: datetime = Field(default_factory=utcnow, index=True)
    details: str = "{}"

    def to_model(self) -> AuditEvent:
        return AuditEvent(
            account_id=self.account_id,
            entry_id=self.entry_id,
            action=AuditAction(self.action),
            actor_id=self.actor_id,
            amount=self.amount,
            balance_after=self.balance_after,
            recorded_at=self.recorded_at,
            details=json.loads(self.details or "{}"),
        )


class StreakStateRow(SQLModel, table=True):
    __tablename__ = "streak_states"
    __table_args__ = (
        CheckConstraint("current_count >= 0", name="ck_streak_states_current_non_negative"),
        CheckConstraint("freezes_available >= 0", name="ck_streak_states_freezes_non_negative"),
    )

    member_id: str = Field(primary_key=True)
    current_count: int = 0
    longest_count: int = 0
    last_active_date: Optional[date] = None
    freezes_available: int = 0
    freezes_used_this_month: int = 0
    freeze_month: Optional[str] = None
    last_processed_entry_id: Optional[str] = None
    version: int = 0
    updated_at: datetime = Field(default_factory=utcnow)

    def to_model(self) -> StreakState:
        return StreakState(
            member_id=self.member_id,
            current_count=self.current_count,
            longest_count=self.longest_count,
            last_active_date=self.last_active_date,
            freezes_available=self.freezes_available,
            freezes_used_this_month=self.freezes_used_this_month,
            freeze_month=self.freeze_month,
            last_processed_entry_id=self.last_processed_entry_id,
            version=self.version,
        )


class AchievementProgressRow(SQLModel, table=True):
    __tablename__ = "achievement_progress"

    member_id: str = Field(primary_key=True)
    achievement_id: str = Field(primary_key=True)
    progress_value: int = 0
    threshold: int
    unlocked_at: Optional[datetime] = None
    period_key: str = ""
    updated_at: datetime = Field(default_factory=utcnow)

    def to_model(self) -> AchievementProgress:
        return AchievementProgress(
            member_id=self.member_id,
            achievement_id=self.achievement_id,
            progress_value=self.progress_value,
            threshold=self.threshold,
            unlocked_at=self.unlocked_at,
            period_key=self.period_key,
        )


class MemberSettingsRow(SQLModel, table=True):
    __tablename__ = "member_settings"

    member_id: str = Field(primary_key=True)
    timezone: str = "UTC"
    updated_at: datetime = Field(default_factory=utcnow)


class QueuedActionRow(SQLModel, table=True):
    __tablename__ = "queued_actions"

    sequence: Optional[int] = Field(default=None, primary_key=True)
    idempotency_key: str = Field(index=True, unique=True)
    kind: str
    payload: str = "{}"
    enqueued_at: datetime = Field(default_factory=utcnow)
    attempt_count: int = 0
    next_retry_at: Optional[datetime] = None
    status: str = QueuedActionStatus.PENDING.value
    last_error: Optional[str] = None

    def to_model(self) -> QueuedAction:
        return QueuedAction(
            idempotency_key=self.idempotency_key,
            kind=LedgerEntryKind(self.kind),
            payload=json.loads(self.payload or "{}"),
            enqueued_at=self.enqueued_at,
            attempt_count=self.attempt_count,
            next_retry_at=self.next_retry_at,
            status=QueuedActionStatus(self.status),
            last_error=self.last_error,
            sequence=self.sequence or 0,
        )


SERVER_TABLES = (
    AccountRow,
    LedgerEntryRow,
    IdempotencyRecordRow,
    AuditRecordRow,
    StreakStateRow,
    AchievementProgressRow,
    MemberSettingsRow,
)
CLIENT_TABLES = (QueuedActionRow,)


# ---------------------------------------------------------------------------
# Engine & schema
# ---------------------------------------------------------------------------
def create_store_engine(url: str, *, busy_timeout: float = 30.0, echo: bool = False) -> Engine:
    """Create an engine for ``url``.

    SQLite engines open every transaction with ``BEGIN IMMEDIATE`` so the
    write lock is taken before the first read, and wait up to
    ``busy_timeout`` seconds for it. In-memory databases share one connection
    and are therefore only suitable for single threaded use.
    """

    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    kwargs: Dict[str, Any] = {}
    if url in {"sqlite://", "sqlite:///:memory:"}:
        kwargs["poolclass"] = StaticPool
    engine = create_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": busy_timeout},
        **kwargs,
    )

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, _record) -> None:  # pragma: no cover - driver hook
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(connection) -> None:  # pragma: no cover - driver hook
        connection.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_tables(engine: Engine, tables: Sequence[type[SQLModel]] = SERVER_TABLES) -> None:
    SQLModel.metadata.create_all(engine, tables=[table.__table__ for table in tables])


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------
class WriteConflict(Exception):
    """Internal signal that a transaction lost an optimistic concurrency race."""


def _is_lock_error(exc: OperationalError) -> bool:
    message = str(exc).lower()
    return "database is locked" in message or "deadlock" in message or "could not serialize" in message


def compare_and_set(session: Session, row_type: type[SQLModel], *criteria: Any, expected_version: int, **values: Any) -> None:
    """Apply ``values`` only if the row still carries ``expected_version``.

    ``version`` is bumped as part of the same statement. Raises
    :class:`WriteConflict` when no row matched, meaning another transaction
    committed first.
    """

    version_column = getattr(row_type, "version")
    statement = (
        update(row_type)
        .where(*criteria, version_column == expected_version)
        .values(version=expected_version + 1, **values)
    )
    result = session.connection().execute(statement)
    if result.rowcount != 1:
        raise WriteConflict(f"{row_type.__name__} changed concurrently (expected version {expected_version}).")


def assert_version(session: Session, row_type: type[SQLModel], *criteria: Any, expected_version: int) -> None:
    """Fail with :class:`WriteConflict` unless the row is still at ``expected_version``."""

    version_column = getattr(row_type, "version")
    statement = update(row_type).where(*criteria, version_column == expected_version).values(version=expected_version)
    result = session.connection().execute(statement)
    if result.rowcount != 1:
        raise WriteConflict(f"{row_type.__name__} changed concurrently (expected version {expected_version}).")


class DurableStore:
    """Run units of work as atomic, retried transactions."""

    def __init__(
        self,
        engine: Engine,
        *,
        max_attempts: int = 5,
        base_delay: float = 0.02,
        logger: StructuredLogger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.engine = engine
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._logger = logger or StructuredLogger(component="store")
        self._sleep = sleep

    def session(self) -> Session:
        """Open a plain session for read-only projections."""

        return Session(self.engine, expire_on_commit=False)

    def run(self, work: Callable[[Session], T], *, operation: str = "transaction") -> T:
        """Execute ``work`` inside one transaction, retrying on write conflicts.

        ``work`` must be safe to run again from scratch: every attempt gets a
        fresh session and nothing from a failed attempt is committed.
        """

        last_reason = ""
        for attempt in range(1, self._max_attempts + 1):
            try:
                with Session(self.engine, expire_on_commit=False) as session:
                    result = work(session)
                    session.commit()
                    return result
            except WriteConflict as exc:
                last_reason = str(exc)
            except IntegrityError as exc:
                last_reason = f"integrity: {exc.orig}"
            except OperationalError as exc:
                if not _is_lock_error(exc):
                    raise
                last_reason = f"locked: {exc.orig}"
            self._logger.warning(
                "write_conflict",
                operation=operation,
                attempt=attempt,
                max_attempts=self._max_attempts,
                reason=last_reason,
            )
            if attempt < self._max_attempts:
                self._sleep(self.backoff_delay(attempt))
        raise ContentionError(
            f"{operation} could not commit after {self._max_attempts} attempts: {last_reason}"
        )

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with random jitter for retry ``attempt`` (1-based)."""

        ceiling = self._base_delay * (2 ** (attempt - 1))
        return ceiling / 2 + random.uniform(0, ceiling / 2)


__all__ = [
    "AccountRow",
    "LedgerEntryRow",
    "IdempotencyRecordRow",
    "AuditRecordRow",
    "StreakStateRow",
    "AchievementProgressRow",
    "MemberSettingsRow",
    "QueuedActionRow",
    "SERVER_TABLES",
    "CLIENT_TABLES",
    "create_store_engine",
    "create_tables",
    "WriteConflict",
    "compare_and_set",
    "assert_version",
    "DurableStore",
]

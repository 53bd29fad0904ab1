"""Domain models used by the KidLedger package.

These are plain value objects handed across component boundaries. The
persisted rows live in :mod:`kidledger.persistence`; each row type offers a
``to_model`` helper returning the matching dataclass here, so no caller ever
holds a live ORM object outside its transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .exceptions import InvariantViolationError


class LedgerEntryKind(str, Enum):
    """The closed set of economic events the ledger records."""

    AWARD = "award"
    REDEEM = "redeem"

    @classmethod
    def parse(cls, raw: Any) -> "LedgerEntryKind":
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw))
        except ValueError as exc:
            raise InvariantViolationError(f"Unknown ledger entry kind: {raw!r}") from exc


class IdempotencyStatus(str, Enum):
    IN_FLIGHT = "in-flight"
    COMMITTED = "committed"
    FAILED = "failed"


class AuditAction(str, Enum):
    AWARD = "award"
    REDEEM = "redeem"
    REDEEM_REJECTED = "redeem_rejected"


class QueuedActionStatus(str, Enum):
    """Lifecycle of an operation waiting in the offline action queue."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    CONFIRMED = "confirmed"
    RETRYABLE_FAILED = "retryable_failed"
    TERMINAL_FAILED = "terminal_failed"


@dataclass(slots=True)
class Account:
    """Snapshot of a member's point balance within one family."""

    account_id: str
    member_id: str
    family_id: str
    balance: int
    total_earned: int
    total_redeemed: int
    award_count: int
    redeem_count: int
    version: int
    created_at: datetime
    updated_at: datetime
    archived_at: Optional[datetime] = None

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    @property
    def is_conserved(self) -> bool:
        """True when the materialised balance matches earned minus redeemed."""

        return self.balance == self.total_earned - self.total_redeemed and self.balance >= 0


@dataclass(slots=True, frozen=True)
class LedgerEntry:
    """Immutable record of one committed award or redemption."""

    entry_id: str
    account_id: str
    member_id: str
    kind: LedgerEntryKind
    amount: int
    source_ref: str
    actor_id: str
    sequence: int
    created_at: datetime
    audit_note: str = ""

    @property
    def signed_amount(self) -> int:
        return self.amount if self.kind is LedgerEntryKind.AWARD else -self.amount


@dataclass(slots=True, frozen=True)
class LedgerReceipt:
    """Result of an award or redeem call.

    ``duplicate`` is true when the idempotency key had already been committed
    and ``entry`` is the originally stored result.
    """

    entry: LedgerEntry
    balance: int
    duplicate: bool = False


@dataclass(slots=True, frozen=True)
class LedgerPage:
    entries: Tuple[LedgerEntry, ...]
    next_page_token: Optional[str] = None


@dataclass(slots=True)
class AuditEvent:
    """Represents one append-only audit row for a ledger transition."""

    account_id: str
    entry_id: str
    action: AuditAction
    actor_id: str
    amount: int
    balance_after: int
    recorded_at: datetime
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class StreakState:
    member_id: str
    current_count: int = 0
    longest_count: int = 0
    last_active_date: Optional[date] = None
    freezes_available: int = 2
    freezes_used_this_month: int = 0
    freeze_month: Optional[str] = None
    last_processed_entry_id: Optional[str] = None
    version: int = 0


class StreakStatus(str, Enum):
    ACTIVE = "active"
    AT_RISK = "at-risk"
    BROKEN = "broken"


class StreakTransition(str, Enum):
    """What folding one award event did to a streak."""

    STARTED = "started"
    EXTENDED = "extended"
    FROZEN = "frozen"
    RESET = "reset"
    UNCHANGED = "unchanged"
    DUPLICATE = "duplicate"


class AchievementMetric(str, Enum):
    TASKS_COMPLETED = "tasks_completed"
    POINTS_EARNED = "points_earned"
    CURRENT_STREAK = "current_streak"
    LONGEST_STREAK = "longest_streak"
    REDEMPTIONS = "redemptions"
    WEEKLY_TASKS = "weekly_tasks"


class AchievementLevel(str, Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    DIAMOND = "diamond"


@dataclass(slots=True, frozen=True)
class AchievementDefinition:
    """A threshold on one metric that unlocks an achievement."""

    achievement_id: str
    name: str
    description: str
    metric: AchievementMetric
    threshold: int
    level: AchievementLevel = AchievementLevel.BRONZE
    category: str = "milestone"
    resettable: bool = False
    encouragement: str = ""


@dataclass(slots=True, frozen=True)
class MetricSnapshot:
    """Cumulative metrics for one member at a point in time."""

    tasks_completed: int = 0
    points_earned: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    redemptions: int = 0
    weekly_tasks: int = 0
    period_key: str = ""

    def value_for(self, metric: AchievementMetric) -> int:
        return int(getattr(self, metric.value))


@dataclass(slots=True)
class AchievementProgress:
    member_id: str
    achievement_id: str
    progress_value: int
    threshold: int
    unlocked_at: Optional[datetime] = None
    period_key: str = ""

    @property
    def is_unlocked(self) -> bool:
        return self.unlocked_at is not None


@dataclass(slots=True, frozen=True)
class UnlockEvent:
    member_id: str
    achievement_id: str
    name: str
    unlocked_at: datetime
    encouragement: str = ""


@dataclass(slots=True)
class QueuedAction:
    """A ledger request stored on the device until the server confirms it."""

    idempotency_key: str
    kind: LedgerEntryKind
    payload: Dict[str, Any]
    enqueued_at: datetime
    attempt_count: int = 0
    next_retry_at: Optional[datetime] = None
    status: QueuedActionStatus = QueuedActionStatus.PENDING
    last_error: Optional[str] = None
    sequence: int = 0


@dataclass(slots=True, frozen=True)
class ActionOutcome:
    """What happened to one queued action during a drain pass."""

    idempotency_key: str
    status: QueuedActionStatus
    entry: Optional[LedgerEntry] = None
    error_kind: Optional[str] = None
    message: str = ""


@dataclass(slots=True, frozen=True)
class QueueStatus:
    queue_length: int
    failed_items: int
    needs_attention: int
    next_retry_at: Optional[datetime] = None


__all__ = [
    "Account",
    "AchievementDefinition",
    "AchievementLevel",
    "AchievementMetric",
    "AchievementProgress",
    "ActionOutcome",
    "AuditAction",
    "AuditEvent",
    "IdempotencyStatus",
    "LedgerEntry",
    "LedgerEntryKind",
    "LedgerPage",
    "LedgerReceipt",
    "MetricSnapshot",
    "QueueStatus",
    "QueuedAction",
    "QueuedActionStatus",
    "StreakState",
    "StreakStatus",
    "StreakTransition",
    "UnlockEvent",
]

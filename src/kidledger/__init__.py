"""KidLedger package: the rewards ledger and derived-state engine of a family chores app."""

from .achievements import DEFAULT_CATALOGUE, AchievementEvaluator
from .api import ApiExporter, ChangeFeed
from .audit import AuditLog
from .config import LedgerSettings
from .exceptions import (
    AccountArchivedError,
    AccountNotFoundError,
    ContentionError,
    DuplicateAccountError,
    DuplicateOperationError,
    InsufficientBalanceError,
    InvariantViolationError,
    KidLedgerError,
    StaleIdempotencyKeyError,
    TransportError,
)
from .idempotency import GuardDecision, GuardOutcome, IdempotencyGuard
from .ledger import LedgerCore
from .models import (
    Account,
    AchievementDefinition,
    AchievementLevel,
    AchievementMetric,
    AchievementProgress,
    ActionOutcome,
    AuditAction,
    AuditEvent,
    LedgerEntry,
    LedgerEntryKind,
    LedgerPage,
    LedgerReceipt,
    MetricSnapshot,
    QueuedAction,
    QueuedActionStatus,
    QueueStatus,
    StreakState,
    StreakStatus,
    StreakTransition,
    UnlockEvent,
)
from .notifications import Notification, NotificationCenter, NotificationType
from .offline_queue import OfflineActionQueue
from .ops import StructuredLogger
from .persistence import DurableStore, create_store_engine, create_tables
from .service import KidLedger
from .streaks import StreakEngine, StreakView
from .transport import HttpTransport, ServiceTransport

__all__ = [
    "Account",
    "AccountArchivedError",
    "AccountNotFoundError",
    "AchievementDefinition",
    "AchievementEvaluator",
    "AchievementLevel",
    "AchievementMetric",
    "AchievementProgress",
    "ActionOutcome",
    "ApiExporter",
    "AuditAction",
    "AuditEvent",
    "AuditLog",
    "ChangeFeed",
    "ContentionError",
    "DEFAULT_CATALOGUE",
    "DuplicateAccountError",
    "DuplicateOperationError",
    "DurableStore",
    "GuardDecision",
    "GuardOutcome",
    "HttpTransport",
    "IdempotencyGuard",
    "InsufficientBalanceError",
    "InvariantViolationError",
    "KidLedger",
    "KidLedgerError",
    "LedgerCore",
    "LedgerEntry",
    "LedgerEntryKind",
    "LedgerPage",
    "LedgerReceipt",
    "LedgerSettings",
    "MetricSnapshot",
    "Notification",
    "NotificationCenter",
    "NotificationType",
    "OfflineActionQueue",
    "QueueStatus",
    "QueuedAction",
    "QueuedActionStatus",
    "ServiceTransport",
    "StaleIdempotencyKeyError",
    "StreakEngine",
    "StreakState",
    "StreakStatus",
    "StreakTransition",
    "StreakView",
    "StructuredLogger",
    "TransportError",
    "UnlockEvent",
    "create_store_engine",
    "create_tables",
]

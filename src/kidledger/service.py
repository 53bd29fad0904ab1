"""High level service wiring the ledger to its derived-state engines."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from sqlalchemy.engine import Engine

from .achievements import DEFAULT_CATALOGUE, AchievementEvaluator
from .api import ApiExporter, ChangeFeed
from .config import LedgerSettings
from .ledger import LedgerCore, default_account_id
from .models import (
    Account,
    AchievementDefinition,
    AchievementMetric,
    AchievementProgress,
    AuditEvent,
    LedgerEntry,
    LedgerEntryKind,
    LedgerPage,
    LedgerReceipt,
    MetricSnapshot,
)
from .notifications import Notification, NotificationCenter, NotificationType, streak_notification
from .offline_queue import OfflineActionQueue
from .ops import StructuredLogger, utcnow
from .persistence import SERVER_TABLES, DurableStore, create_store_engine, create_tables
from .points import PointsLike, format_points
from .streaks import StreakEngine, StreakUpdate, StreakView, local_date
from .transport import ServiceTransport

AWARD_METRICS = (
    AchievementMetric.TASKS_COMPLETED,
    AchievementMetric.POINTS_EARNED,
    AchievementMetric.CURRENT_STREAK,
    AchievementMetric.LONGEST_STREAK,
    AchievementMetric.WEEKLY_TASKS,
)
REDEEM_METRICS = (AchievementMetric.REDEMPTIONS,)


def week_key(day: date) -> str:
    year, week, _ = day.isocalendar()
    return f"{year}-W{week:02d}"


class KidLedger:
    """Entry point for task approvals, redemptions and read projections.

    Every committed ledger entry is published on :attr:`feed`; the streak
    engine and achievement evaluator are registered listeners, so they run
    after the ledger commit and a failure in either never undoes it.
    """

    __slots__ = (
        "_settings",
        "_clock",
        "_logger",
        "_store",
        "_ledger",
        "_streaks",
        "_achievements",
        "_notifications",
        "_feed",
        "_api",
    )

    def __init__(
        self,
        settings: LedgerSettings | None = None,
        *,
        engine: Engine | None = None,
        catalogue: Sequence[AchievementDefinition] = DEFAULT_CATALOGUE,
        logger: StructuredLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings or LedgerSettings()
        self._clock = clock
        self._logger = logger or StructuredLogger(path=self._settings.log_path)
        if engine is None:
            engine = create_store_engine(
                self._settings.database_url,
                busy_timeout=self._settings.sqlite_busy_timeout_seconds,
            )
        create_tables(engine, SERVER_TABLES)
        self._store = DurableStore(
            engine,
            max_attempts=self._settings.txn_max_attempts,
            base_delay=self._settings.txn_base_delay_seconds,
            logger=self._logger.child("store"),
        )
        self._ledger = LedgerCore(self._store, settings=self._settings, logger=self._logger, clock=clock)
        self._streaks = StreakEngine(
            self._store,
            max_freezes=self._settings.max_streak_freezes,
            default_timezone=self._settings.default_timezone,
            logger=self._logger,
            clock=clock,
        )
        self._notifications = NotificationCenter()
        self._achievements = AchievementEvaluator(
            self._store,
            catalogue=catalogue,
            notifications=self._notifications,
            logger=self._logger,
            clock=clock,
        )
        self._feed = ChangeFeed(logger=self._logger.child("change_feed"))
        self._feed.register("streaks", self._update_streak)
        self._feed.register("achievements", self._update_achievements)
        self._api = ApiExporter()

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------
    @property
    def settings(self) -> LedgerSettings:
        return self._settings

    @property
    def ledger(self) -> LedgerCore:
        return self._ledger

    @property
    def streaks(self) -> StreakEngine:
        return self._streaks

    @property
    def achievements(self) -> AchievementEvaluator:
        return self._achievements

    @property
    def notifications(self) -> NotificationCenter:
        return self._notifications

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    @property
    def api(self) -> ApiExporter:
        return self._api

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    def open_account(
        self,
        member_id: str,
        family_id: str,
        *,
        account_id: Optional[str] = None,
        timezone_name: Optional[str] = None,
    ) -> Account:
        account = self._ledger.open_account(member_id, family_id, account_id=account_id)
        if timezone_name:
            self._streaks.set_timezone(member_id, timezone_name)
        return account

    def archive_account(self, account_id: str) -> Account:
        return self._ledger.archive_account(account_id)

    def set_member_timezone(self, member_id: str, timezone_name: str) -> None:
        self._streaks.set_timezone(member_id, timezone_name)

    # ------------------------------------------------------------------
    # External interfaces
    # ------------------------------------------------------------------
    def notify_task_approved(
        self,
        task_id: str,
        member_id: str,
        amount: PointsLike,
        idempotency_key: str,
        *,
        family_id: str,
        actor_id: str,
        note: str = "",
    ) -> LedgerReceipt:
        """Pay out an approved task. Called once per approval by the task workflow."""

        account_id = default_account_id(family_id, member_id)
        return self.award(account_id, task_id, amount, idempotency_key, actor_id, note=note)

    def request_redemption(
        self,
        reward_id: str,
        member_id: str,
        amount: PointsLike,
        idempotency_key: str,
        *,
        family_id: str,
        actor_id: str,
        note: str = "",
    ) -> LedgerReceipt:
        account_id = default_account_id(family_id, member_id)
        return self.redeem(account_id, reward_id, amount, idempotency_key, actor_id, note=note)

    def award(
        self,
        account_id: str,
        source_ref: str,
        amount: PointsLike,
        idempotency_key: str,
        actor_id: str,
        *,
        note: str = "",
    ) -> LedgerReceipt:
        receipt = self._ledger.award(account_id, source_ref, amount, idempotency_key, actor_id, note)
        if not receipt.duplicate:
            self._queue_ledger_notification(
                receipt,
                NotificationType.POINTS_AWARDED,
                f"You earned {format_points(receipt.entry.amount)}!",
            )
        self._feed.publish(receipt.entry)
        return receipt

    def redeem(
        self,
        account_id: str,
        reward_ref: str,
        amount: PointsLike,
        idempotency_key: str,
        actor_id: str,
        *,
        note: str = "",
    ) -> LedgerReceipt:
        receipt = self._ledger.redeem(account_id, reward_ref, amount, idempotency_key, actor_id, note)
        if not receipt.duplicate:
            self._queue_ledger_notification(
                receipt,
                NotificationType.REWARD_REDEEMED,
                f"Reward redeemed for {format_points(receipt.entry.amount)}.",
            )
        self._feed.publish(receipt.entry)
        return receipt

    # ------------------------------------------------------------------
    # Read projections
    # ------------------------------------------------------------------
    def get_account(self, account_id: str) -> Account:
        return self._ledger.get_account(account_id)

    def get_balance(self, account_id: str) -> int:
        return self._ledger.get_balance(account_id)

    def get_streak(self, member_id: str, *, today: Optional[date] = None) -> StreakView:
        return self._streaks.status(member_id, today)

    def list_achievements(self, member_id: str) -> List[Tuple[AchievementDefinition, Optional[AchievementProgress]]]:
        return self._achievements.progress(member_id)

    def list_ledger_history(
        self,
        account_id: str,
        page_token: Optional[str] = None,
        *,
        page_size: Optional[int] = None,
    ) -> LedgerPage:
        return self._ledger.list_history(account_id, page_token, page_size=page_size)

    def audit_entries(
        self,
        account_id: str,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Tuple[AuditEvent, ...]:
        return self._ledger.audit.entries(account_id, start=start, end=end)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def verify_account(self, account_id: str) -> Account:
        return self._ledger.verify_account(account_id)

    def redeliver(self, account_id: str) -> int:
        """Publish the account's full history again; listeners deduplicate."""

        return self._feed.redeliver(self._ledger.entries(account_id))

    def purge_expired_keys(self, *, now: Optional[datetime] = None) -> int:
        return self._ledger.guard.purge_expired(self._store, now=now)

    def offline_queue(self, path: str | Path | None = None) -> OfflineActionQueue:
        """Open a local action queue that replays straight into this service's ledger."""

        return OfflineActionQueue.open(
            path or self._settings.queue_db_file,
            ServiceTransport(self),
            settings=self._settings,
            notifications=self._notifications,
            logger=self._logger,
            clock=self._clock,
        )

    def metric_snapshot(self, member_id: str, *, at: Optional[datetime] = None) -> MetricSnapshot:
        """Current achievement metrics for ``member_id``; the week is the one containing ``at``."""

        moment = at or self._clock()
        accounts = self._ledger.accounts_for_member(member_id)
        streak = self._streaks.get(member_id)
        zone = self._streaks.timezone_for(member_id)
        today = local_date(moment, zone)
        week_start_local = datetime.combine(today - timedelta(days=today.weekday()), time(), tzinfo=zone)
        week_start = week_start_local.astimezone(timezone.utc).replace(tzinfo=None)
        week_end = (week_start_local + timedelta(days=7)).astimezone(timezone.utc).replace(tzinfo=None)
        return MetricSnapshot(
            tasks_completed=sum(account.award_count for account in accounts),
            points_earned=sum(account.total_earned for account in accounts),
            current_streak=streak.current_count,
            longest_streak=streak.longest_count,
            redemptions=sum(account.redeem_count for account in accounts),
            weekly_tasks=self._ledger.count_awards(member_id, since=week_start, until=week_end),
            period_key=week_key(today),
        )

    # ------------------------------------------------------------------
    # Change feed listeners
    # ------------------------------------------------------------------
    def _update_streak(self, entry: LedgerEntry) -> None:
        if entry.kind is not LedgerEntryKind.AWARD:
            return
        update: StreakUpdate = self._streaks.apply_award(entry)
        if update.milestone:
            self._notifications.queue(streak_notification(entry.member_id, update.milestone))

    def _update_achievements(self, entry: LedgerEntry) -> None:
        metrics = AWARD_METRICS if entry.kind is LedgerEntryKind.AWARD else REDEEM_METRICS
        snapshot = self.metric_snapshot(entry.member_id, at=entry.created_at)
        self._achievements.evaluate(entry.member_id, snapshot, changed=metrics)

    def _queue_ledger_notification(self, receipt: LedgerReceipt, kind: NotificationType, subject: str) -> None:
        entry = receipt.entry
        self._notifications.queue(
            Notification(
                recipient=entry.member_id,
                type=kind,
                subject=subject,
                body=f"Balance is now {format_points(receipt.balance)}.",
                metadata={"entry_id": entry.entry_id, "account_id": entry.account_id},
            )
        )


__all__ = ["KidLedger", "week_key"]

"""Achievement catalogue and evaluator.

``evaluate`` folds a :class:`MetricSnapshot` into per-member progress rows and
unlocks each achievement at most once. The unlock is a conditional update on
``unlocked_at IS NULL``, so concurrent evaluations for the same member race on
the row and only the winner reports an :class:`UnlockEvent`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence

from sqlalchemy import case, update
from sqlmodel import Session, select

from .models import (
    AchievementDefinition,
    AchievementLevel,
    AchievementMetric,
    AchievementProgress,
    MetricSnapshot,
    UnlockEvent,
)
from .notifications import NotificationCenter, unlock_notification
from .ops import StructuredLogger, utcnow
from .persistence import AchievementProgressRow, DurableStore, WriteConflict


def _tasks(achievement_id: str, name: str, threshold: int, level: AchievementLevel, encouragement: str) -> AchievementDefinition:
    description = "Complete your very first task!" if threshold == 1 else f"Complete {threshold} tasks"
    return AchievementDefinition(
        achievement_id=achievement_id,
        name=name,
        description=description,
        metric=AchievementMetric.TASKS_COMPLETED,
        threshold=threshold,
        level=level,
        category="milestone",
        encouragement=encouragement,
    )


def _streak(achievement_id: str, name: str, threshold: int, level: AchievementLevel, encouragement: str) -> AchievementDefinition:
    return AchievementDefinition(
        achievement_id=achievement_id,
        name=name,
        description=f"Complete tasks for {threshold} days in a row",
        metric=AchievementMetric.CURRENT_STREAK,
        threshold=threshold,
        level=level,
        category="streak",
        encouragement=encouragement,
    )


DEFAULT_CATALOGUE: tuple[AchievementDefinition, ...] = (
    _tasks("first_step", "First Step", 1, AchievementLevel.BRONZE, "Great start! Every journey begins with a single step."),
    _tasks("getting_started", "Getting Started", 10, AchievementLevel.BRONZE, "You're building great habits! Keep it up!"),
    _tasks("dedicated", "Dedicated", 50, AchievementLevel.SILVER, "Your dedication is inspiring! You're making real progress."),
    _tasks("committed", "Committed", 100, AchievementLevel.GOLD, "100 tasks completed! You're truly committed to growth."),
    _tasks("champion", "Champion", 500, AchievementLevel.PLATINUM, "You're a champion! Your consistency is remarkable."),
    _tasks("legend", "Living Legend", 1000, AchievementLevel.DIAMOND, "Legendary achievement! You're an inspiration to everyone."),
    _streak("three_day_streak", "On a Roll", 3, AchievementLevel.BRONZE, "3 days strong! Consistency is key."),
    _streak("week_warrior", "Week Warrior", 7, AchievementLevel.SILVER, "A full week! You're building lasting habits."),
    _streak("fortnight_focus", "Fortnight Focus", 14, AchievementLevel.SILVER, "Two weeks of consistency! You're unstoppable."),
    _streak("monthly_master", "Monthly Master", 30, AchievementLevel.GOLD, "A full month! You've mastered consistency."),
    _streak("quarterly_quest", "Quarterly Quest", 90, AchievementLevel.PLATINUM, "90 days! You've transformed habits into lifestyle."),
    AchievementDefinition(
        achievement_id="point_collector",
        name="Point Collector",
        description="Earn 1,000 points",
        metric=AchievementMetric.POINTS_EARNED,
        threshold=1000,
        level=AchievementLevel.SILVER,
        category="milestone",
        encouragement="A thousand points! Your hard work adds up.",
    ),
    AchievementDefinition(
        achievement_id="first_reward",
        name="Treat Yourself",
        description="Redeem your first reward",
        metric=AchievementMetric.REDEMPTIONS,
        threshold=1,
        level=AchievementLevel.BRONZE,
        category="milestone",
        encouragement="You earned it! Enjoy your reward.",
    ),
    AchievementDefinition(
        achievement_id="weekly_helper",
        name="Weekly Helper",
        description="Complete 5 tasks in one week",
        metric=AchievementMetric.WEEKLY_TASKS,
        threshold=5,
        level=AchievementLevel.BRONZE,
        category="weekly",
        resettable=True,
        encouragement="Five tasks this week! What a helper.",
    ),
)


class AchievementEvaluator:
    """Track achievement progress per member and emit first-time unlocks."""

    def __init__(
        self,
        store: DurableStore,
        *,
        catalogue: Sequence[AchievementDefinition] = DEFAULT_CATALOGUE,
        notifications: NotificationCenter | None = None,
        logger: StructuredLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        ids = [definition.achievement_id for definition in catalogue]
        if len(ids) != len(set(ids)):
            raise ValueError("Achievement ids must be unique")
        self._store = store
        self._catalogue = tuple(catalogue)
        self._notifications = notifications
        self._logger = logger.child("achievements") if logger else StructuredLogger(component="achievements")
        self._clock = clock

    @property
    def catalogue(self) -> tuple[AchievementDefinition, ...]:
        return self._catalogue

    def definition(self, achievement_id: str) -> Optional[AchievementDefinition]:
        for definition in self._catalogue:
            if definition.achievement_id == achievement_id:
                return definition
        return None

    def evaluate(
        self,
        member_id: str,
        snapshot: MetricSnapshot,
        *,
        changed: Optional[Iterable[AchievementMetric]] = None,
    ) -> List[UnlockEvent]:
        """Fold ``snapshot`` into progress and return the achievements unlocked by this call.

        ``changed`` limits evaluation to definitions on those metrics; by
        default every definition is considered.
        """

        metrics = set(changed) if changed is not None else None
        relevant = [d for d in self._catalogue if metrics is None or d.metric in metrics]
        if not relevant:
            return []

        def _evaluate(session: Session) -> List[UnlockEvent]:
            now = self._clock()
            unlocked: List[UnlockEvent] = []
            for definition in relevant:
                value = snapshot.value_for(definition.metric)
                if self._fold_progress(session, member_id, definition, value, snapshot.period_key, now):
                    if self._try_unlock(session, member_id, definition, now):
                        unlocked.append(
                            UnlockEvent(
                                member_id=member_id,
                                achievement_id=definition.achievement_id,
                                name=definition.name,
                                unlocked_at=now,
                                encouragement=definition.encouragement,
                            )
                        )
            return unlocked

        events = self._store.run(_evaluate, operation="achievement_evaluate")
        for event in events:
            self._logger.log("achievement_unlocked", member_id=member_id, achievement_id=event.achievement_id)
            self._notify(event)
        return events

    def progress(self, member_id: str) -> List[tuple[AchievementDefinition, Optional[AchievementProgress]]]:
        """Catalogue order list of definitions paired with the member's progress, if any."""

        with self._store.session() as session:
            rows = session.exec(
                select(AchievementProgressRow).where(AchievementProgressRow.member_id == member_id)
            ).all()
            by_id = {row.achievement_id: row.to_model() for row in rows}
        return [(definition, by_id.get(definition.achievement_id)) for definition in self._catalogue]

    def unlocked(self, member_id: str) -> List[AchievementProgress]:
        return [progress for _, progress in self.progress(member_id) if progress and progress.is_unlocked]

    # ------------------------------------------------------------------
    def _fold_progress(
        self,
        session: Session,
        member_id: str,
        definition: AchievementDefinition,
        value: int,
        period_key: str,
        now: datetime,
    ) -> bool:
        """Write progress for one definition. Returns False when there is nothing to track yet."""

        row = session.get(AchievementProgressRow, (member_id, definition.achievement_id))
        if row is None:
            if value <= 0:
                return False
            session.add(
                AchievementProgressRow(
                    member_id=member_id,
                    achievement_id=definition.achievement_id,
                    progress_value=value,
                    threshold=definition.threshold,
                    period_key=period_key if definition.resettable else "",
                    updated_at=now,
                )
            )
            session.flush()
            return True

        key_match = (
            AchievementProgressRow.member_id == member_id,
            AchievementProgressRow.achievement_id == definition.achievement_id,
        )
        if definition.resettable and period_key < row.period_key:
            # A redelivered entry from an earlier period must not rewind the row.
            return False
        if definition.resettable and row.period_key != period_key:
            statement = (
                update(AchievementProgressRow)
                .where(*key_match, AchievementProgressRow.period_key == row.period_key)
                .values(progress_value=value, period_key=period_key, updated_at=now)
            )
            if session.connection().execute(statement).rowcount != 1:
                raise WriteConflict(f"Progress period for {definition.achievement_id!r} changed concurrently.")
            return True

        column = AchievementProgressRow.progress_value
        statement = (
            update(AchievementProgressRow)
            .where(*key_match)
            .values(progress_value=case((column < value, value), else_=column), updated_at=now)
        )
        session.connection().execute(statement)
        return True

    def _try_unlock(self, session: Session, member_id: str, definition: AchievementDefinition, now: datetime) -> bool:
        statement = (
            update(AchievementProgressRow)
            .where(
                AchievementProgressRow.member_id == member_id,
                AchievementProgressRow.achievement_id == definition.achievement_id,
                AchievementProgressRow.unlocked_at.is_(None),
                AchievementProgressRow.progress_value >= definition.threshold,
            )
            .values(unlocked_at=now)
        )
        return session.connection().execute(statement).rowcount == 1

    def _notify(self, event: UnlockEvent) -> None:
        if self._notifications is None:
            return
        try:
            self._notifications.queue(unlock_notification(event))
        except Exception as exc:  # delivery is best effort
            self._logger.error(
                "unlock_notification_failed",
                member_id=event.member_id,
                achievement_id=event.achievement_id,
                error=str(exc),
            )


__all__ = ["AchievementEvaluator", "DEFAULT_CATALOGUE"]

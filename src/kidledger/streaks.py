"""Streak engine deriving consecutive-day activity from committed awards.

Dates are calendar days in the member's configured timezone
(``member_settings``), falling back to the ledger-wide default. The engine is
safe to run more than once for the same award: an award dated on or before
``last_active_date`` changes nothing, and the last folded entry id is kept to
short-circuit exact redelivery.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone, tzinfo
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlmodel import Session

from .exceptions import InvariantViolationError
from .models import LedgerEntry, LedgerEntryKind, StreakState, StreakStatus, StreakTransition
from .ops import StructuredLogger, utcnow
from .persistence import DurableStore, MemberSettingsRow, StreakStateRow, compare_and_set

STREAK_MILESTONES = (3, 7, 14, 30, 60, 90, 180, 365)


@dataclass(slots=True, frozen=True)
class StreakUpdate:
    state: StreakState
    transition: StreakTransition
    activity_date: Optional[date] = None
    milestone: Optional[int] = None


@dataclass(slots=True, frozen=True)
class StreakView:
    """Read projection of a streak as of one calendar day."""

    state: StreakState
    status: StreakStatus
    days_until_break: int
    as_of: date


def load_timezone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvariantViolationError(f"Unknown timezone: {name!r}") from exc


def local_date(moment: datetime, zone: tzinfo) -> date:
    """Calendar date of a naive UTC ``moment`` in ``zone``."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(zone).date()


def month_key(day: date) -> str:
    return day.strftime("%Y-%m")


def fold_award(
    state: StreakState,
    activity_date: date,
    entry_id: str,
    *,
    max_freezes: int = 2,
) -> tuple[StreakState, StreakTransition]:
    """Apply one award dated ``activity_date`` to ``state``.

    Returns the new state and what happened. The input is never modified.
    """

    if state.last_processed_entry_id == entry_id:
        return state, StreakTransition.DUPLICATE
    last = state.last_active_date
    if last is not None and activity_date <= last:
        return replace(state, last_processed_entry_id=entry_id), StreakTransition.UNCHANGED

    updated = replace(state, last_processed_entry_id=entry_id, last_active_date=activity_date)
    current_month = month_key(activity_date)
    if updated.freeze_month != current_month:
        updated.freeze_month = current_month
        updated.freezes_used_this_month = 0
        updated.freezes_available = max_freezes

    if last is None:
        updated.current_count = 1
        transition = StreakTransition.STARTED
    else:
        gap = (activity_date - last).days
        if gap == 1:
            updated.current_count = state.current_count + 1
            transition = StreakTransition.EXTENDED
        elif gap == 2 and updated.freezes_available > 0:
            updated.freezes_available -= 1
            updated.freezes_used_this_month += 1
            transition = StreakTransition.FROZEN
        else:
            updated.current_count = 1
            transition = StreakTransition.RESET
    updated.longest_count = max(state.longest_count, updated.current_count)
    return updated, transition


def project_status(state: StreakState, today: date, *, max_freezes: int = 2) -> tuple[StreakStatus, int]:
    """Return ``(status, days_until_break)`` for ``state`` as seen on ``today``."""

    if state.last_active_date is None or state.current_count == 0:
        return StreakStatus.BROKEN, 0
    freezes = state.freezes_available
    if state.freeze_month != month_key(today):
        freezes = max_freezes
    gap = (today - state.last_active_date).days
    if gap <= 0:
        return StreakStatus.ACTIVE, 2
    if gap == 1:
        return StreakStatus.AT_RISK, 1
    if gap == 2 and freezes > 0:
        return StreakStatus.AT_RISK, 1
    return StreakStatus.BROKEN, 0


class StreakEngine:
    """Fold award entries into per-member :class:`StreakState` rows."""

    def __init__(
        self,
        store: DurableStore,
        *,
        max_freezes: int = 2,
        default_timezone: str = "UTC",
        logger: StructuredLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._max_freezes = max_freezes
        self._default_timezone = load_timezone(default_timezone)
        self._logger = logger.child("streaks") if logger else StructuredLogger(component="streaks")
        self._clock = clock

    def new_state(self, member_id: str) -> StreakState:
        return StreakState(member_id=member_id, freezes_available=self._max_freezes)

    def set_timezone(self, member_id: str, timezone_name: str) -> None:
        load_timezone(timezone_name)

        def _save(session: Session) -> None:
            row = session.get(MemberSettingsRow, member_id)
            if row is None:
                row = MemberSettingsRow(member_id=member_id)
            row.timezone = timezone_name
            row.updated_at = self._clock()
            session.add(row)

        self._store.run(_save, operation="set_timezone")
        self._logger.log("timezone_set", member_id=member_id, timezone=timezone_name)

    def timezone_for(self, member_id: str) -> tzinfo:
        with self._store.session() as session:
            return self._zone(session, member_id)

    def apply_award(self, entry: LedgerEntry) -> StreakUpdate:
        """Fold ``entry`` into its member's streak. Redemptions are ignored."""

        if entry.kind is not LedgerEntryKind.AWARD:
            return StreakUpdate(state=self.get(entry.member_id), transition=StreakTransition.UNCHANGED)

        member_id = entry.member_id

        def _fold(session: Session) -> StreakUpdate:
            row = session.get(StreakStateRow, member_id)
            activity = local_date(entry.created_at, self._zone(session, member_id))
            state = row.to_model() if row else self.new_state(member_id)
            updated, transition = fold_award(state, activity, entry.entry_id, max_freezes=self._max_freezes)
            if transition is StreakTransition.DUPLICATE:
                return StreakUpdate(state=state, transition=transition, activity_date=activity)
            now = self._clock()
            values = dict(
                current_count=updated.current_count,
                longest_count=updated.longest_count,
                last_active_date=updated.last_active_date,
                freezes_available=updated.freezes_available,
                freezes_used_this_month=updated.freezes_used_this_month,
                freeze_month=updated.freeze_month,
                last_processed_entry_id=updated.last_processed_entry_id,
                updated_at=now,
            )
            if row is None:
                session.add(StreakStateRow(member_id=member_id, version=1, **values))
                session.flush()
                updated.version = 1
            else:
                compare_and_set(
                    session,
                    StreakStateRow,
                    StreakStateRow.member_id == member_id,
                    expected_version=row.version,
                    **values,
                )
                updated.version = row.version + 1
            milestone = None
            if transition in (StreakTransition.EXTENDED, StreakTransition.STARTED) and updated.current_count in STREAK_MILESTONES:
                milestone = updated.current_count
            return StreakUpdate(state=updated, transition=transition, activity_date=activity, milestone=milestone)

        update = self._store.run(_fold, operation="streak_fold")
        if update.transition is not StreakTransition.DUPLICATE:
            self._logger.log(
                "streak_" + update.transition.value,
                member_id=member_id,
                entry_id=entry.entry_id,
                activity_date=update.activity_date.isoformat() if update.activity_date else None,
                current_count=update.state.current_count,
                longest_count=update.state.longest_count,
                freezes_available=update.state.freezes_available,
            )
        return update

    def get(self, member_id: str) -> StreakState:
        with self._store.session() as session:
            row = session.get(StreakStateRow, member_id)
            return row.to_model() if row else self.new_state(member_id)

    def status(self, member_id: str, today: Optional[date] = None) -> StreakView:
        with self._store.session() as session:
            row = session.get(StreakStateRow, member_id)
            state = row.to_model() if row else self.new_state(member_id)
            zone = self._zone(session, member_id)
        day = today or local_date(self._clock(), zone)
        status, days_left = project_status(state, day, max_freezes=self._max_freezes)
        return StreakView(state=state, status=status, days_until_break=days_left, as_of=day)

    def _zone(self, session: Session, member_id: str) -> tzinfo:
        settings = session.get(MemberSettingsRow, member_id)
        if settings is None:
            return self._default_timezone
        return load_timezone(settings.timezone)


__all__ = [
    "STREAK_MILESTONES",
    "StreakEngine",
    "StreakUpdate",
    "StreakView",
    "fold_award",
    "load_timezone",
    "local_date",
    "month_key",
    "project_status",
]

from datetime import date, datetime, timedelta

import pytest

from kidledger.exceptions import InvariantViolationError
from kidledger.models import LedgerEntry, LedgerEntryKind, StreakState, StreakStatus, StreakTransition
from kidledger.persistence import DurableStore, create_store_engine, create_tables
from kidledger.streaks import StreakEngine, fold_award, local_date, project_status

MONDAY = date(2026, 10, 12)
WEDNESDAY = date(2026, 10, 14)


def award_entry(entry_id: str, created_at: datetime, *, member_id: str = "kid-1", kind=LedgerEntryKind.AWARD) -> LedgerEntry:
    return LedgerEntry(
        entry_id=entry_id,
        account_id=f"fam-1:{member_id}",
        member_id=member_id,
        kind=kind,
        amount=5,
        source_ref="task",
        actor_id="parent-1",
        sequence=1,
        created_at=created_at,
    )


def make_engine(**kwargs) -> StreakEngine:
    engine = create_store_engine("sqlite://")
    create_tables(engine)
    kwargs.setdefault("clock", lambda: datetime(2026, 10, 12, 12, 0))
    return StreakEngine(DurableStore(engine, base_delay=0.001), **kwargs)


def monday_state(freezes: int) -> StreakState:
    return StreakState(
        member_id="kid-1",
        current_count=4,
        longest_count=6,
        last_active_date=MONDAY,
        freezes_available=freezes,
        freeze_month="2026-10",
        last_processed_entry_id="monday",
    )


def test_gap_of_one_day_consumes_a_freeze_without_rewarding_it() -> None:
    state, transition = fold_award(monday_state(1), WEDNESDAY, "wednesday")

    assert transition is StreakTransition.FROZEN
    assert state.current_count == 4
    assert state.freezes_available == 0
    assert state.freezes_used_this_month == 1
    assert state.last_active_date == WEDNESDAY


def test_gap_without_freeze_resets_to_one() -> None:
    state, transition = fold_award(monday_state(0), WEDNESDAY, "wednesday")

    assert transition is StreakTransition.RESET
    assert state.current_count == 1
    assert state.longest_count == 6
    assert state.last_active_date == WEDNESDAY


def test_consecutive_days_extend_and_track_longest() -> None:
    state = StreakState(member_id="kid-1")
    transitions = []
    for offset in range(8):
        state, transition = fold_award(state, MONDAY + timedelta(days=offset), f"e{offset}")
        transitions.append(transition)

    assert transitions[0] is StreakTransition.STARTED
    assert set(transitions[1:]) == {StreakTransition.EXTENDED}
    assert (state.current_count, state.longest_count) == (8, 8)


def test_same_day_and_older_awards_change_nothing_but_the_cursor() -> None:
    original = monday_state(1)

    same_day, transition = fold_award(original, MONDAY, "second-monday")
    assert transition is StreakTransition.UNCHANGED
    assert same_day.current_count == original.current_count
    assert same_day.last_processed_entry_id == "second-monday"

    older, transition = fold_award(original, MONDAY - timedelta(days=3), "late")
    assert transition is StreakTransition.UNCHANGED
    assert older.last_active_date == MONDAY

    replay, transition = fold_award(original, WEDNESDAY, "monday")
    assert transition is StreakTransition.DUPLICATE
    assert replay is original


def test_freezes_refill_when_the_month_changes() -> None:
    state = StreakState(
        member_id="kid-1",
        current_count=10,
        longest_count=10,
        last_active_date=date(2026, 9, 30),
        freezes_available=0,
        freezes_used_this_month=2,
        freeze_month="2026-09",
    )

    updated, transition = fold_award(state, date(2026, 10, 2), "october", max_freezes=2)

    assert transition is StreakTransition.FROZEN
    assert updated.current_count == 10
    assert updated.freeze_month == "2026-10"
    assert (updated.freezes_available, updated.freezes_used_this_month) == (1, 1)


def test_gap_across_a_month_end_uses_the_new_month_allowance() -> None:
    state = StreakState(
        member_id="kid-1",
        current_count=10,
        longest_count=10,
        last_active_date=date(2026, 8, 31),
        freezes_available=1,
        freezes_used_this_month=1,
        freeze_month="2026-08",
    )

    # Monday to Wednesday with September 1 missed: the refill happens first.
    updated, transition = fold_award(state, date(2026, 9, 2), "september-second", max_freezes=2)

    assert transition is StreakTransition.FROZEN
    assert (updated.current_count, updated.freeze_month) == (10, "2026-09")
    assert (updated.freezes_available, updated.freezes_used_this_month) == (1, 1)

    again, transition = fold_award(updated, date(2026, 9, 4), "september-fourth", max_freezes=2)
    assert transition is StreakTransition.FROZEN
    assert (again.freezes_available, again.freezes_used_this_month) == (0, 2)
    assert project_status(again, date(2026, 9, 6), max_freezes=2)[0] is StreakStatus.BROKEN


def test_fold_never_mutates_its_input() -> None:
    original = monday_state(1)
    fold_award(original, WEDNESDAY, "wednesday")

    assert original.freezes_available == 1
    assert original.last_active_date == MONDAY


@pytest.mark.parametrize(
    "today, freezes, expected",
    [
        (MONDAY, 1, (StreakStatus.ACTIVE, 2)),
        (MONDAY + timedelta(days=1), 1, (StreakStatus.AT_RISK, 1)),
        (WEDNESDAY, 1, (StreakStatus.AT_RISK, 1)),
        (WEDNESDAY, 0, (StreakStatus.BROKEN, 0)),
        (MONDAY + timedelta(days=3), 1, (StreakStatus.BROKEN, 0)),
    ],
)
def test_project_status(today: date, freezes: int, expected) -> None:
    assert project_status(monday_state(freezes), today) == expected


def test_project_status_without_activity_is_broken() -> None:
    assert project_status(StreakState(member_id="kid-1"), MONDAY) == (StreakStatus.BROKEN, 0)


def test_engine_persists_folds_and_ignores_redelivery() -> None:
    engine = make_engine()
    first = award_entry("e1", datetime(2026, 10, 12, 9, 0))

    started = engine.apply_award(first)
    replay = engine.apply_award(first)

    assert started.transition is StreakTransition.STARTED
    assert replay.transition is StreakTransition.DUPLICATE
    state = engine.get("kid-1")
    assert (state.current_count, state.last_processed_entry_id, state.version) == (1, "e1", 1)


def test_engine_reports_the_three_day_milestone() -> None:
    engine = make_engine()

    updates = [
        engine.apply_award(award_entry(f"e{day}", datetime(2026, 10, 12 + day, 9, 0)))
        for day in range(3)
    ]

    assert [update.milestone for update in updates] == [None, None, 3]
    assert updates[-1].state.current_count == 3
    assert engine.get("kid-1").version == 3


def test_redemptions_do_not_touch_the_streak() -> None:
    engine = make_engine()

    update = engine.apply_award(award_entry("r1", datetime(2026, 10, 12, 9, 0), kind=LedgerEntryKind.REDEEM))

    assert update.transition is StreakTransition.UNCHANGED
    assert engine.get("kid-1").current_count == 0


def test_member_timezone_decides_the_calendar_day() -> None:
    engine = make_engine()
    engine.set_timezone("kid-1", "America/Los_Angeles")

    # 03:00 UTC on Tuesday is still Monday evening in Los Angeles.
    update = engine.apply_award(award_entry("e1", datetime(2026, 10, 13, 3, 0)))

    assert update.activity_date == MONDAY
    assert local_date(datetime(2026, 10, 13, 3, 0), engine.timezone_for("kid-2")) == date(2026, 10, 13)


def test_unknown_timezones_are_rejected() -> None:
    engine = make_engine()

    with pytest.raises(InvariantViolationError):
        engine.set_timezone("kid-1", "Mars/Olympus_Mons")
    with pytest.raises(InvariantViolationError):
        make_engine(default_timezone="Not/AZone")


def test_status_projects_from_the_engine_clock() -> None:
    engine = make_engine(clock=lambda: datetime(2026, 10, 14, 12, 0))
    engine.apply_award(award_entry("e1", datetime(2026, 10, 12, 9, 0)))

    view = engine.status("kid-1")

    assert view.as_of == WEDNESDAY
    assert (view.status, view.days_until_break) == (StreakStatus.AT_RISK, 1)
    assert engine.status("kid-1", today=date(2026, 10, 20)).status is StreakStatus.BROKEN

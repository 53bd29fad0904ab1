from datetime import datetime, timedelta

import pytest

from kidledger.exceptions import InvariantViolationError, StaleIdempotencyKeyError
from kidledger.idempotency import GuardOutcome, IdempotencyGuard, validate_key
from kidledger.models import IdempotencyStatus
from kidledger.persistence import (
    DurableStore,
    IdempotencyRecordRow,
    LedgerEntryRow,
    create_store_engine,
    create_tables,
)

T0 = datetime(2026, 10, 12, 8, 0)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


def make_store() -> DurableStore:
    engine = create_store_engine("sqlite://")
    create_tables(engine)
    return DurableStore(engine, sleep=lambda _delay: None)


def claim_and_commit(store: DurableStore, guard: IdempotencyGuard, key: str):
    def _work(session):
        decision = guard.begin(session, key, operation="award", account_id="fam:kid")
        if decision.should_proceed:
            guard.commit(session, key, key)
        return decision

    return store.run(_work)


def test_first_claim_proceeds_and_replay_returns_stored_result() -> None:
    store = make_store()
    guard = IdempotencyGuard(clock=Clock(T0))

    first = claim_and_commit(store, guard, "key-A")
    replay = claim_and_commit(store, guard, "key-A")

    assert first.outcome is GuardOutcome.PROCEED
    assert replay.outcome is GuardOutcome.ALREADY_COMMITTED
    assert replay.result_ref == "key-A"
    with store.session() as session:
        assert guard.status(session, "key-A") is IdempotencyStatus.COMMITTED


def test_replay_after_expiry_is_rejected_as_stale() -> None:
    store = make_store()
    clock = Clock(T0)
    guard = IdempotencyGuard(ttl=timedelta(hours=48), clock=clock)
    claim_and_commit(store, guard, "key-A")

    clock.advance(hours=47)
    assert claim_and_commit(store, guard, "key-A").outcome is GuardOutcome.ALREADY_COMMITTED

    clock.advance(hours=2)
    with pytest.raises(StaleIdempotencyKeyError) as excinfo:
        claim_and_commit(store, guard, "key-A")
    assert excinfo.value.retryable is False


def test_purged_key_with_existing_entry_is_still_stale() -> None:
    store = make_store()
    clock = Clock(T0)
    guard = IdempotencyGuard(ttl=timedelta(hours=1), clock=clock)

    def _award(session):
        guard.begin(session, "key-A")
        session.add(
            LedgerEntryRow(
                entry_id="key-A",
                account_id="fam:kid",
                member_id="kid",
                kind="award",
                amount=5,
                source_ref="task-1",
                actor_id="parent",
                sequence=1,
                created_at=clock(),
            )
        )
        guard.commit(session, "key-A", "key-A")

    store.run(_award)
    clock.advance(hours=2)

    assert guard.purge_expired(store) == 1
    with store.session() as session:
        assert guard.status(session, "key-A") is None
    with pytest.raises(StaleIdempotencyKeyError):
        claim_and_commit(store, guard, "key-A")


def test_failed_key_is_rearmed_for_a_corrected_retry() -> None:
    store = make_store()
    guard = IdempotencyGuard(clock=Clock(T0))

    def _fail(session):
        guard.begin(session, "key-R", operation="redeem")
        guard.fail(session, "key-R", "insufficient_balance")

    store.run(_fail)
    with store.session() as session:
        record = session.get(IdempotencyRecordRow, "key-R")
        assert record.status == IdempotencyStatus.FAILED.value
        assert record.failure_reason == "insufficient_balance"

    decision = claim_and_commit(store, guard, "key-R")

    assert decision.outcome is GuardOutcome.PROCEED
    with store.session() as session:
        record = session.get(IdempotencyRecordRow, "key-R")
        assert record.status == IdempotencyStatus.COMMITTED.value
        assert record.attempts == 2
        assert record.failure_reason is None


def test_abandoned_in_flight_record_reports_in_flight() -> None:
    store = make_store()
    guard = IdempotencyGuard(clock=Clock(T0))

    def _abandon(session) -> None:
        session.add(
            IdempotencyRecordRow(
                key="key-X",
                status=IdempotencyStatus.IN_FLIGHT.value,
                expires_at=T0 + timedelta(hours=48),
            )
        )

    store.run(_abandon)

    decision = store.run(lambda session: guard.begin(session, "key-X"))
    assert decision.outcome is GuardOutcome.IN_FLIGHT
    assert not decision.should_proceed


def test_commit_requires_an_in_flight_claim() -> None:
    store = make_store()
    guard = IdempotencyGuard(clock=Clock(T0))

    with pytest.raises(InvariantViolationError):
        store.run(lambda session: guard.commit(session, "never-claimed", "x"))


def test_purge_keeps_unexpired_records() -> None:
    store = make_store()
    clock = Clock(T0)
    guard = IdempotencyGuard(ttl=timedelta(hours=48), clock=clock)
    claim_and_commit(store, guard, "old")
    clock.advance(hours=24)
    claim_and_commit(store, guard, "new")
    clock.advance(hours=25)

    assert guard.purge_expired(store) == 1
    with store.session() as session:
        assert guard.status(session, "old") is None
        assert guard.status(session, "new") is IdempotencyStatus.COMMITTED


@pytest.mark.parametrize("key", ["", "   ", "k" * 129])
def test_malformed_keys_are_rejected(key: str) -> None:
    with pytest.raises(InvariantViolationError):
        validate_key(key)


def test_validate_key_accepts_reasonable_keys() -> None:
    assert validate_key("device-1:op-42") == "device-1:op-42"

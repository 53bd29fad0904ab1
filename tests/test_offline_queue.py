import asyncio
import time
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from kidledger.exceptions import (
    DuplicateOperationError,
    InsufficientBalanceError,
    InvariantViolationError,
    TransportError,
)
from kidledger.models import LedgerEntry, LedgerEntryKind, LedgerReceipt, QueuedAction, QueuedActionStatus
from kidledger.notifications import NotificationCenter, NotificationType
from kidledger.offline_queue import OfflineActionQueue
from kidledger.persistence import CLIENT_TABLES, DurableStore, QueuedActionRow, create_store_engine, create_tables
from kidledger.service import KidLedger

T0 = datetime(2026, 10, 12, 8, 0)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class FakeTransport:
    """Records submissions; raises scripted errors per key, otherwise confirms."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.errors: dict[str, list[BaseException]] = {}
        self.always_fail: set[str] = set()
        self.delay = 0.0

    def fail(self, key: str, *errors: BaseException) -> None:
        self.errors.setdefault(key, []).extend(errors)

    def submit(self, action: QueuedAction) -> LedgerReceipt:
        self.calls.append(action.idempotency_key)
        if self.delay:
            time.sleep(self.delay)
        if action.idempotency_key in self.always_fail:
            raise TransportError("network unreachable")
        scripted = self.errors.get(action.idempotency_key)
        if scripted:
            raise scripted.pop(0)
        return LedgerReceipt(entry=entry_for(action), balance=action.payload["amount"])


def entry_for(action: QueuedAction) -> LedgerEntry:
    return LedgerEntry(
        entry_id=action.idempotency_key,
        account_id=action.payload["account_id"],
        member_id="kid-1",
        kind=action.kind,
        amount=action.payload["amount"],
        source_ref=action.payload["ref"],
        actor_id=action.payload["actor_id"],
        sequence=1,
        created_at=T0,
    )


def payload(amount=5, ref: str = "task-1") -> dict:
    return {"account_id": "fam-1:kid-1", "ref": ref, "amount": amount, "actor_id": "parent-1"}


def make_queue(tmp_path, transport, clock: Clock, **kwargs) -> OfflineActionQueue:
    engine = create_store_engine(f"sqlite:///{tmp_path / 'queue.db'}")
    create_tables(engine, CLIENT_TABLES)
    kwargs.setdefault("base_delay", 5.0)
    kwargs.setdefault("max_delay", 300.0)
    return OfflineActionQueue(
        DurableStore(engine, base_delay=0.001),
        transport,
        clock=clock,
        jitter=lambda: 1.0,
        **kwargs,
    )


def test_enqueued_actions_survive_reopening(tmp_path) -> None:
    transport = FakeTransport()
    path = tmp_path / "device.db"
    queue = OfflineActionQueue.open(path, transport, clock=Clock(T0))
    first = queue.enqueue("award", payload(), idempotency_key="op-1")
    second = queue.enqueue(LedgerEntryKind.REDEEM, payload(3, ref="reward-1"), idempotency_key="op-2")

    reopened = OfflineActionQueue.open(path, transport, clock=Clock(T0))

    actions = reopened.actions()
    assert [action.idempotency_key for action in actions] == ["op-1", "op-2"]
    assert [action.kind for action in actions] == [LedgerEntryKind.AWARD, LedgerEntryKind.REDEEM]
    assert {action.status for action in actions} == {QueuedActionStatus.PENDING}
    assert first.sequence < second.sequence
    assert transport.calls == []


def test_drain_replays_in_enqueue_order_and_clears_confirmed(tmp_path) -> None:
    transport = FakeTransport()
    queue = make_queue(tmp_path, transport, Clock(T0))
    for index in range(3):
        queue.enqueue("award", payload(ref=f"task-{index}"), idempotency_key=f"op-{index}")

    outcomes = asyncio.run(queue.drain())

    assert transport.calls == ["op-0", "op-1", "op-2"]
    assert [outcome.status for outcome in outcomes] == [QueuedActionStatus.CONFIRMED] * 3
    assert outcomes[0].entry.entry_id == "op-0"
    assert queue.actions() == []
    assert queue.status().queue_length == 0


def test_retryable_failure_blocks_later_actions_until_due(tmp_path) -> None:
    transport = FakeTransport()
    clock = Clock(T0)
    queue = make_queue(tmp_path, transport, clock)
    queue.enqueue("award", payload(), idempotency_key="op-1")
    queue.enqueue("award", payload(ref="task-2"), idempotency_key="op-2")
    transport.fail("op-1", TransportError("offline"))

    outcomes = asyncio.run(queue.drain())

    assert [(outcome.idempotency_key, outcome.status) for outcome in outcomes] == [
        ("op-1", QueuedActionStatus.RETRYABLE_FAILED)
    ]
    assert outcomes[0].error_kind == "transport"
    status = queue.status()
    assert (status.queue_length, status.failed_items, status.needs_attention) == (2, 1, 0)
    assert status.next_retry_at == T0 + timedelta(seconds=5)
    assert queue.get("op-2").status is QueuedActionStatus.PENDING

    assert asyncio.run(queue.drain()) == []
    assert transport.calls == ["op-1"]

    clock.advance(seconds=6)
    outcomes = asyncio.run(queue.drain())

    assert transport.calls == ["op-1", "op-1", "op-2"]
    assert [outcome.status for outcome in outcomes] == [QueuedActionStatus.CONFIRMED] * 2


def test_server_rejection_drops_the_action_and_moves_on(tmp_path) -> None:
    transport = FakeTransport()
    queue = make_queue(tmp_path, transport, Clock(T0))
    queue.enqueue("redeem", payload(50, ref="reward-1"), idempotency_key="op-1")
    queue.enqueue("award", payload(), idempotency_key="op-2")
    transport.fail("op-1", InsufficientBalanceError("Balance 5 does not cover redemption of 50."))

    outcomes = asyncio.run(queue.drain())

    assert outcomes[0].status is QueuedActionStatus.TERMINAL_FAILED
    assert outcomes[0].error_kind == "insufficient_balance"
    assert outcomes[1].status is QueuedActionStatus.CONFIRMED
    assert queue.get("op-1") is None
    assert queue.actions() == []


def test_duplicate_reply_counts_as_confirmation(tmp_path) -> None:
    transport = FakeTransport()
    queue = make_queue(tmp_path, transport, Clock(T0))
    action = queue.enqueue("award", payload(), idempotency_key="op-1")
    transport.fail("op-1", DuplicateOperationError("already committed", entry=entry_for(action)))

    outcomes = asyncio.run(queue.drain())

    assert outcomes[0].status is QueuedActionStatus.CONFIRMED
    assert outcomes[0].entry.entry_id == "op-1"
    assert queue.get("op-1") is None


def test_exhausted_action_is_parked_without_blocking_the_rest(tmp_path) -> None:
    transport = FakeTransport()
    clock = Clock(T0)
    queue = make_queue(tmp_path, transport, clock, max_attempts=2)
    queue.enqueue("award", payload(), idempotency_key="op-1")
    queue.enqueue("award", payload(ref="task-2"), idempotency_key="op-2")
    transport.always_fail.add("op-1")

    asyncio.run(queue.drain())
    clock.advance(seconds=6)
    outcomes = asyncio.run(queue.drain())

    assert [(outcome.idempotency_key, outcome.status) for outcome in outcomes] == [
        ("op-1", QueuedActionStatus.TERMINAL_FAILED),
        ("op-2", QueuedActionStatus.CONFIRMED),
    ]
    parked = queue.get("op-1")
    assert parked.status is QueuedActionStatus.TERMINAL_FAILED
    assert parked.attempt_count == 2
    assert parked.last_error.startswith("transport")
    status = queue.status()
    assert (status.queue_length, status.failed_items, status.needs_attention) == (1, 1, 1)

    transport.always_fail.clear()
    rearmed = queue.retry("op-1")
    assert (rearmed.status, rearmed.attempt_count) == (QueuedActionStatus.PENDING, 0)
    outcomes = asyncio.run(queue.drain())
    assert [outcome.status for outcome in outcomes] == [QueuedActionStatus.CONFIRMED]
    assert transport.calls == ["op-1", "op-1", "op-2", "op-1"]


def test_retry_only_applies_to_parked_actions(tmp_path) -> None:
    queue = make_queue(tmp_path, FakeTransport(), Clock(T0))
    queue.enqueue("award", payload(), idempotency_key="op-1")

    with pytest.raises(InvariantViolationError):
        queue.retry("op-1")
    with pytest.raises(InvariantViolationError):
        queue.retry("missing")
    assert queue.discard("op-1") is True
    assert queue.discard("op-1") is False


def test_crash_mid_attempt_is_recovered_on_reopen(tmp_path) -> None:
    transport = FakeTransport()
    path = tmp_path / "device.db"
    queue = OfflineActionQueue.open(path, transport, clock=Clock(T0))
    queue.enqueue("award", payload(), idempotency_key="op-1")
    # The process dies after claiming the action but before recording a result.
    with create_store_engine(f"sqlite:///{path}").begin() as connection:
        connection.execute(
            update(QueuedActionRow)
            .where(QueuedActionRow.idempotency_key == "op-1")
            .values(status=QueuedActionStatus.IN_FLIGHT.value, attempt_count=1)
        )
    assert queue.get("op-1").status is QueuedActionStatus.IN_FLIGHT
    assert asyncio.run(queue.drain()) == []

    reopened = OfflineActionQueue.open(path, transport, clock=Clock(T0))
    assert reopened.get("op-1").status is QueuedActionStatus.PENDING
    outcomes = asyncio.run(reopened.drain())

    assert outcomes[0].status is QueuedActionStatus.CONFIRMED
    assert transport.calls == ["op-1"]


def test_unexpected_transport_error_is_retried_without_reordering(tmp_path) -> None:
    transport = FakeTransport()
    clock = Clock(T0)
    queue = make_queue(tmp_path, transport, clock)
    queue.enqueue("award", payload(), idempotency_key="op-1")
    queue.enqueue("award", payload(ref="task-2"), idempotency_key="op-2")
    transport.fail("op-1", RuntimeError("decoder blew up"))

    outcomes = asyncio.run(queue.drain())

    assert [(outcome.idempotency_key, outcome.status) for outcome in outcomes] == [
        ("op-1", QueuedActionStatus.RETRYABLE_FAILED)
    ]
    assert outcomes[0].error_kind == "unexpected"
    assert queue.get("op-1").last_error == "unexpected: RuntimeError: decoder blew up"
    assert queue.get("op-2").status is QueuedActionStatus.PENDING

    clock.advance(seconds=6)
    outcomes = asyncio.run(queue.drain())

    assert transport.calls == ["op-1", "op-1", "op-2"]
    assert [outcome.status for outcome in outcomes] == [QueuedActionStatus.CONFIRMED] * 2


def test_parking_an_action_notifies_its_actor(tmp_path) -> None:
    transport = FakeTransport()
    center = NotificationCenter()
    queue = make_queue(tmp_path, transport, Clock(T0), max_attempts=1, notifications=center)
    queue.enqueue("award", payload(), idempotency_key="op-1")
    queue.enqueue("award", payload(ref="task-2"), idempotency_key="op-2")
    transport.always_fail.add("op-1")

    asyncio.run(queue.drain())

    alerts = center.pending(notification_type=NotificationType.SYNC_NEEDS_ATTENTION)
    assert len(alerts) == 1
    assert alerts[0].recipient == "parent-1"
    assert alerts[0].metadata == {"idempotency_key": "op-1", "account_id": "fam-1:kid-1"}
    assert center.pending(notification_type=NotificationType.POINTS_AWARDED) == ()

def test_slow_transport_times_out_and_is_retried(tmp_path) -> None:
    transport = FakeTransport()
    transport.delay = 0.3
    queue = make_queue(tmp_path, transport, Clock(T0), attempt_timeout=0.05)
    queue.enqueue("award", payload(), idempotency_key="op-1")

    outcomes = asyncio.run(queue.drain())

    assert outcomes[0].status is QueuedActionStatus.RETRYABLE_FAILED
    assert outcomes[0].error_kind == "timeout"
    assert queue.get("op-1").status is QueuedActionStatus.RETRYABLE_FAILED


def test_socket_errors_are_retryable(tmp_path) -> None:
    transport = FakeTransport()
    queue = make_queue(tmp_path, transport, Clock(T0))
    queue.enqueue("award", payload(), idempotency_key="op-1")
    transport.fail("op-1", ConnectionRefusedError("refused"))

    outcomes = asyncio.run(queue.drain())

    assert outcomes[0].status is QueuedActionStatus.RETRYABLE_FAILED
    assert outcomes[0].error_kind == "transport"


@pytest.mark.parametrize(
    "kind, body",
    [
        ("award", {"account_id": "fam-1:kid-1", "ref": "task-1", "amount": 5}),
        ("award", payload(0)),
        ("award", payload(2.5)),
        ("award", {**payload(), "ref": " "}),
        ("transfer", payload()),
    ],
)
def test_enqueue_rejects_malformed_actions(tmp_path, kind, body) -> None:
    queue = make_queue(tmp_path, FakeTransport(), Clock(T0))

    with pytest.raises(InvariantViolationError):
        queue.enqueue(kind, body)
    assert queue.actions() == []


def test_enqueue_is_idempotent_per_key_and_mints_keys(tmp_path) -> None:
    queue = make_queue(tmp_path, FakeTransport(), Clock(T0))

    first = queue.enqueue("award", payload("5"), idempotency_key="op-1")
    again = queue.enqueue("award", payload(9), idempotency_key="op-1")
    minted = queue.enqueue("award", payload())

    assert first.payload["amount"] == 5
    assert again.sequence == first.sequence
    assert again.payload["amount"] == 5
    assert minted.idempotency_key not in ("", "op-1")
    assert len(queue.actions()) == 2


def test_backoff_grows_and_is_capped(tmp_path) -> None:
    queue = make_queue(tmp_path, FakeTransport(), Clock(T0), base_delay=5.0, max_delay=60.0)

    assert queue.backoff_delay(1) == 5.0
    assert queue.backoff_delay(3) == 20.0
    assert queue.backoff_delay(10) == 60.0


def test_run_forever_drains_until_stopped(tmp_path) -> None:
    transport = FakeTransport()
    queue = make_queue(tmp_path, transport, Clock(T0))
    queue.enqueue("award", payload(), idempotency_key="op-1")
    queue.enqueue("award", payload(ref="task-2"), idempotency_key="op-2")

    async def scenario() -> None:
        stop = asyncio.Event()
        worker = asyncio.create_task(queue.run_forever(stop, idle_interval=0.01))
        for _ in range(200):
            if not queue.actions():
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(worker, timeout=5)

    asyncio.run(scenario())

    assert transport.calls == ["op-1", "op-2"]
    assert queue.actions() == []


def test_queue_replays_into_the_service_exactly_once(tmp_path) -> None:
    service = KidLedger(engine=create_store_engine("sqlite://"))
    service.open_account("kid-1", "fam-1")
    queue = service.offline_queue(tmp_path / "device.db")
    queue.enqueue("award", payload(10), idempotency_key="op-1")
    queue.enqueue("redeem", payload(50, ref="reward-1"), idempotency_key="op-2")

    outcomes = asyncio.run(queue.drain())
    # The device lost the confirmation and queues the same operation again.
    queue.enqueue("award", payload(10), idempotency_key="op-1")
    replay = asyncio.run(queue.drain())

    assert [outcome.status for outcome in outcomes] == [
        QueuedActionStatus.CONFIRMED,
        QueuedActionStatus.TERMINAL_FAILED,
    ]
    assert outcomes[1].error_kind == "insufficient_balance"
    assert replay[0].status is QueuedActionStatus.CONFIRMED
    assert service.get_balance("fam-1:kid-1") == 10
    assert service.get_streak("kid-1").state.current_count == 1

"""Notification primitives for KidLedger.

The ledger never delivers anything itself. Derived-state engines queue
:class:`Notification` records here and the presentation layer drains them.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Sequence

from .models import QueuedAction, UnlockEvent
from .ops import utcnow


class NotificationType(str, Enum):
    ACHIEVEMENT_UNLOCKED = "achievement_unlocked"
    STREAK_MILESTONE = "streak_milestone"
    POINTS_AWARDED = "points_awarded"
    REWARD_REDEEMED = "reward_redeemed"
    SYNC_NEEDS_ATTENTION = "sync_needs_attention"
    OTHER = "other"


@dataclass(slots=True)
class Notification:
    """Simple representation of a notification waiting to be delivered."""

    recipient: str
    type: NotificationType
    subject: str
    body: str
    metadata: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> Dict[str, str]:
        payload = {
            "recipient": self.recipient,
            "type": self.type.value,
            "subject": self.subject,
            "body": self.body,
            "created_at": self.created_at.isoformat(),
        }
        payload.update(self.metadata)
        return payload


def unlock_notification(event: UnlockEvent) -> Notification:
    return Notification(
        recipient=event.member_id,
        type=NotificationType.ACHIEVEMENT_UNLOCKED,
        subject=f"Achievement unlocked: {event.name}",
        body=event.encouragement or f"You earned {event.name}!",
        metadata={"achievement_id": event.achievement_id},
        created_at=event.unlocked_at,
    )


def streak_notification(member_id: str, days: int) -> Notification:
    return Notification(
        recipient=member_id,
        type=NotificationType.STREAK_MILESTONE,
        subject=f"{days} day streak!",
        body=f"You have completed tasks {days} days in a row. Keep it going!",
        metadata={"streak_days": str(days)},
    )


def sync_attention_notification(action: QueuedAction, error_kind: str) -> Notification:
    return Notification(
        recipient=str(action.payload["actor_id"]),
        type=NotificationType.SYNC_NEEDS_ATTENTION,
        subject="An offline change could not be saved",
        body=f"Gave up after {action.attempt_count} attempts ({error_kind}). Retry it from the sync screen.",
        metadata={"idempotency_key": action.idempotency_key, "account_id": str(action.payload["account_id"])},
    )


class NotificationCenter:
    """In-memory notification inbox used for tests and integrations."""

    def __init__(self) -> None:
        self._queue: List[Notification] = []
        self._sent: List[Notification] = []
        self._lock = threading.Lock()

    def queue(self, notification: Notification) -> None:
        with self._lock:
            self._queue.append(notification)

    def pending(self, *, notification_type: NotificationType | None = None) -> Sequence[Notification]:
        with self._lock:
            items = tuple(self._queue)
        if notification_type is None:
            return items
        return tuple(item for item in items if item.type is notification_type)

    def pop_all(self) -> Sequence[Notification]:
        with self._lock:
            pending = tuple(self._queue)
            self._queue.clear()
            self._sent.extend(pending)
        return pending

    def history(self) -> Sequence[Notification]:
        with self._lock:
            return tuple(self._sent)


__all__ = [
    "Notification",
    "NotificationCenter",
    "NotificationType",
    "streak_notification",
    "sync_attention_notification",
    "unlock_notification",
]

"""API helpers and change notification for KidLedger."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence

from .exceptions import InvariantViolationError
from .models import (
    Account,
    AchievementDefinition,
    AchievementProgress,
    AuditEvent,
    LedgerEntry,
    LedgerEntryKind,
    LedgerPage,
    LedgerReceipt,
    StreakState,
)
from .ops import StructuredLogger


class ApiExporter:
    """Convert KidLedger data structures to JSON friendly dictionaries."""

    def account_snapshot(self, account: Account) -> Dict[str, object]:
        return {
            "account_id": account.account_id,
            "member_id": account.member_id,
            "family_id": account.family_id,
            "balance": account.balance,
            "total_earned": account.total_earned,
            "total_redeemed": account.total_redeemed,
            "version": account.version,
            "archived": account.is_archived,
        }

    def entry(self, entry: LedgerEntry) -> Dict[str, object]:
        return {
            "entry_id": entry.entry_id,
            "account_id": entry.account_id,
            "member_id": entry.member_id,
            "kind": entry.kind.value,
            "amount": entry.amount,
            "source_ref": entry.source_ref,
            "actor_id": entry.actor_id,
            "sequence": entry.sequence,
            "created_at": entry.created_at.isoformat(),
            "audit_note": entry.audit_note,
        }

    def receipt(self, receipt: LedgerReceipt) -> Dict[str, object]:
        return {"entry": self.entry(receipt.entry), "balance": receipt.balance, "duplicate": receipt.duplicate}

    def history(self, page: LedgerPage) -> Dict[str, object]:
        return {
            "entries": [self.entry(entry) for entry in page.entries],
            "next_page_token": page.next_page_token,
        }

    def streak(self, state: StreakState, *, status: str, days_until_break: int) -> Dict[str, object]:
        return {
            "member_id": state.member_id,
            "current_count": state.current_count,
            "longest_count": state.longest_count,
            "last_active_date": state.last_active_date.isoformat() if state.last_active_date else None,
            "freezes_available": state.freezes_available,
            "freezes_used_this_month": state.freezes_used_this_month,
            "status": status,
            "days_until_break": days_until_break,
        }

    def achievements(
        self, items: Sequence[tuple[AchievementDefinition, AchievementProgress | None]]
    ) -> List[Dict[str, object]]:
        payload: List[Dict[str, object]] = []
        for definition, progress in items:
            payload.append(
                {
                    "achievement_id": definition.achievement_id,
                    "name": definition.name,
                    "description": definition.description,
                    "level": definition.level.value,
                    "category": definition.category,
                    "threshold": definition.threshold,
                    "progress": progress.progress_value if progress else 0,
                    "unlocked_at": progress.unlocked_at.isoformat() if progress and progress.unlocked_at else None,
                }
            )
        return payload

    def audit(self, events: Iterable[AuditEvent]) -> List[Dict[str, object]]:
        return [
            {
                "entry_id": event.entry_id,
                "action": event.action.value,
                "actor_id": event.actor_id,
                "amount": event.amount,
                "balance_after": event.balance_after,
                "recorded_at": event.recorded_at.isoformat(),
                "details": event.details,
            }
            for event in events
        ]


def entry_from_payload(payload: Mapping[str, Any]) -> LedgerEntry:
    """Inverse of :meth:`ApiExporter.entry`."""

    try:
        return LedgerEntry(
            entry_id=str(payload["entry_id"]),
            account_id=str(payload["account_id"]),
            member_id=str(payload.get("member_id", "")),
            kind=LedgerEntryKind.parse(payload["kind"]),
            amount=int(payload["amount"]),
            source_ref=str(payload["source_ref"]),
            actor_id=str(payload["actor_id"]),
            sequence=int(payload["sequence"]),
            created_at=datetime.fromisoformat(str(payload["created_at"])),
            audit_note=str(payload.get("audit_note", "")),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise InvariantViolationError(f"Malformed ledger entry payload: {exc}") from exc


def receipt_from_payload(payload: Mapping[str, Any]) -> LedgerReceipt:
    return LedgerReceipt(
        entry=entry_from_payload(payload["entry"]),
        balance=int(payload["balance"]),
        duplicate=bool(payload.get("duplicate", False)),
    )


EntryListener = Callable[[LedgerEntry], None]


class ChangeFeed:
    """Publish committed ledger entries to derived-state consumers.

    Delivery is at least once: :meth:`redeliver` may hand a consumer an entry
    it has already seen, so listeners must be idempotent. A failing listener is
    logged and does not stop the others, and never affects the ledger commit
    that produced the entry.
    """

    def __init__(self, *, logger: StructuredLogger | None = None) -> None:
        self._listeners: list[tuple[str, EntryListener]] = []
        self._logger = logger or StructuredLogger(component="change_feed")

    def register(self, name: str, listener: EntryListener) -> None:
        self._listeners.append((name, listener))

    def unregister(self, name: str) -> None:
        self._listeners = [(key, listener) for key, listener in self._listeners if key != name]

    def publish(self, entry: LedgerEntry) -> int:
        """Deliver ``entry`` to every listener and return how many succeeded."""

        delivered = 0
        for name, listener in list(self._listeners):
            try:
                listener(entry)
            except Exception as exc:  # listener faults stay isolated from the ledger
                self._logger.error(
                    "listener_failed",
                    listener=name,
                    entry_id=entry.entry_id,
                    error=f"{type(exc).__name__}: {exc}",
                )
                continue
            delivered += 1
        return delivered

    def redeliver(self, entries: Iterable[LedgerEntry]) -> int:
        count = 0
        for entry in entries:
            self.publish(entry)
            count += 1
        self._logger.log("redelivered", count=count)
        return count


__all__ = ["ApiExporter", "ChangeFeed", "EntryListener", "entry_from_payload", "receipt_from_payload"]

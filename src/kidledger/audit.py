"""Append-only audit log of ledger transitions."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Mapping, Optional

from sqlmodel import Session, select

from .models import AuditAction, AuditEvent
from .ops import utcnow
from .persistence import AuditRecordRow, DurableStore


class AuditLog:
    """Record audit events inside ledger transactions and read them back.

    There is deliberately no update or delete path: rows are only ever added
    by :meth:`record`, which must be called with the session of the ledger
    transaction it documents.
    """

    def __init__(self, store: DurableStore) -> None:
        self._store = store

    def record(
        self,
        session: Session,
        *,
        account_id: str,
        entry_id: str,
        action: AuditAction,
        actor_id: str,
        amount: int,
        balance_after: int,
        details: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditRecordRow:
        row = AuditRecordRow(
            account_id=account_id,
            entry_id=entry_id,
            action=action.value,
            actor_id=actor_id,
            amount=amount,
            balance_after=balance_after,
            recorded_at=timestamp or utcnow(),
            details=json.dumps(dict(details or {}), sort_keys=True, default=str),
        )
        session.add(row)
        return row

    def entries(
        self,
        account_id: str,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        action: AuditAction | None = None,
    ) -> tuple[AuditEvent, ...]:
        """Return the account's audit trail in recording order, optionally bounded in time."""

        query = select(AuditRecordRow).where(AuditRecordRow.account_id == account_id)
        if start is not None:
            query = query.where(AuditRecordRow.recorded_at >= start)
        if end is not None:
            query = query.where(AuditRecordRow.recorded_at <= end)
        if action is not None:
            query = query.where(AuditRecordRow.action == action.value)
        query = query.order_by(AuditRecordRow.id)
        with self._store.session() as session:
            rows = session.exec(query).all()
            return tuple(row.to_model() for row in rows)

    def latest(self, account_id: str) -> AuditEvent | None:
        records = self.entries(account_id)
        return records[-1] if records else None


__all__ = ["AuditLog"]

"""Transports used by the offline queue to reach the ledger.

A transport turns one :class:`QueuedAction` into a ledger call and either
returns the :class:`LedgerReceipt` or raises a :class:`KidLedgerError` whose
``retryable`` flag tells the queue what to do next.
"""

from __future__ import annotations

import json
from http.client import HTTPException
from typing import Any, Dict, Mapping, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request as URLRequest, urlopen

from .api import receipt_from_payload
from .exceptions import KidLedgerError, TransportError, error_from_payload
from .models import LedgerEntryKind, LedgerReceipt, QueuedAction

PAYLOAD_FIELDS = ("account_id", "ref", "amount", "actor_id")


class LedgerTransport(Protocol):
    def submit(self, action: QueuedAction) -> LedgerReceipt:
        ...


class LedgerEndpoint(Protocol):
    """Anything exposing the ledger award/redeem signatures (``LedgerCore`` or ``KidLedger``)."""

    def award(self, account_id: str, source_ref: str, amount: Any, idempotency_key: str, actor_id: str, *, note: str = "") -> LedgerReceipt:
        ...

    def redeem(self, account_id: str, reward_ref: str, amount: Any, idempotency_key: str, actor_id: str, *, note: str = "") -> LedgerReceipt:
        ...


class ServiceTransport:
    """Call an in-process ledger directly."""

    def __init__(self, ledger: LedgerEndpoint) -> None:
        self._ledger = ledger

    def submit(self, action: QueuedAction) -> LedgerReceipt:
        payload = action.payload
        arguments = dict(
            account_id=payload["account_id"],
            amount=payload["amount"],
            idempotency_key=action.idempotency_key,
            actor_id=payload["actor_id"],
            note=payload.get("note", ""),
        )
        if action.kind is LedgerEntryKind.AWARD:
            return self._ledger.award(source_ref=payload["ref"], **arguments)
        return self._ledger.redeem(reward_ref=payload["ref"], **arguments)


class HttpTransport:
    """Post queued actions to the KidLedger HTTP API."""

    def __init__(self, base_url: str, *, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def submit(self, action: QueuedAction) -> LedgerReceipt:
        payload = action.payload
        path = "awards" if action.kind is LedgerEntryKind.AWARD else "redemptions"
        ref_field = "source_ref" if action.kind is LedgerEntryKind.AWARD else "reward_ref"
        body: Dict[str, Any] = {
            ref_field: payload["ref"],
            "amount": payload["amount"],
            "idempotency_key": action.idempotency_key,
            "actor_id": payload["actor_id"],
            "note": payload.get("note", ""),
        }
        url = f"{self.base_url}/accounts/{quote(str(payload['account_id']), safe='')}/{path}"
        req = URLRequest(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            method="POST",
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                status, raw = resp.status, resp.read()
        except HTTPError as exc:
            status, raw = exc.code, exc.read()
        except (URLError, HTTPException, TimeoutError) as exc:
            raise TransportError(f"POST {url} failed: {exc}") from exc
        return self._handle(status, raw)

    def _handle(self, status: int, raw: bytes) -> LedgerReceipt:
        try:
            data = json.loads(raw.decode("utf-8")) if raw else None
        except ValueError:
            data = None
        if 200 <= status < 300 and isinstance(data, Mapping):
            return receipt_from_payload(data)
        if isinstance(data, Mapping) and "error" in data:
            raise error_from_payload(data)
        if status >= 500 or status in (408, 429):
            raise TransportError(f"Ledger service answered HTTP {status}.")
        raise KidLedgerError(f"Unexpected HTTP {status} from ledger service.")


__all__ = ["HttpTransport", "LedgerEndpoint", "LedgerTransport", "PAYLOAD_FIELDS", "ServiceTransport"]

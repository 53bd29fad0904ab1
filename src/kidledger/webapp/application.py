"""FastAPI frontend for the KidLedger service.

Ledger writes and the presentation read projections are exposed as JSON.
Errors use the body produced by :meth:`KidLedgerError.as_dict` so clients
(including :class:`kidledger.transport.HttpTransport`) can rebuild the typed
exception and honour its ``retryable`` flag.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlmodel import SQLModel

from ..exceptions import InvariantViolationError, KidLedgerError
from ..models import LedgerReceipt
from ..service import KidLedger

ERROR_STATUS: Dict[str, int] = {
    "invariant_violation": 400,
    "account_not_found": 404,
    "insufficient_balance": 409,
    "duplicate_account": 409,
    "account_archived": 409,
    "stale_idempotency_key": 410,
    "contention": 503,
    "transport": 503,
}


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
class OpenAccountRequest(SQLModel):
    member_id: str
    family_id: str
    account_id: Optional[str] = None
    timezone: Optional[str] = None


class AwardRequest(SQLModel):
    source_ref: str
    amount: Any
    idempotency_key: str
    actor_id: str
    note: str = ""


class RedemptionRequest(SQLModel):
    reward_ref: str
    amount: Any
    idempotency_key: str
    actor_id: str
    note: str = ""


class TimezoneRequest(SQLModel):
    timezone: str


def _naive_utc(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None or moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def create_app(service: KidLedger | None = None) -> FastAPI:
    """Build an app around ``service`` (a default :class:`KidLedger` when omitted)."""

    ledger = service or KidLedger()
    api = ledger.api
    app = FastAPI(title="KidLedger")
    app.state.ledger = ledger

    @app.exception_handler(KidLedgerError)
    async def _ledger_error(_request: Request, exc: KidLedgerError) -> JSONResponse:
        status = ERROR_STATUS.get(exc.kind, 400)
        if status >= 500:
            ledger.logger.warning("request_failed", error=exc.kind, message=str(exc))
        return JSONResponse(exc.as_dict(), status_code=status)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        error = InvariantViolationError(f"Malformed request: {exc.errors()}")
        return JSONResponse(error.as_dict(), status_code=400)

    def _receipt_response(receipt: LedgerReceipt) -> JSONResponse:
        return JSONResponse(api.receipt(receipt), status_code=200 if receipt.duplicate else 201)

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/accounts", status_code=201)
    def open_account(body: OpenAccountRequest) -> Dict[str, Any]:
        account = ledger.open_account(
            body.member_id,
            body.family_id,
            account_id=body.account_id,
            timezone_name=body.timezone,
        )
        return api.account_snapshot(account)

    @app.post("/accounts/{account_id}/archive")
    def archive_account(account_id: str) -> Dict[str, Any]:
        return api.account_snapshot(ledger.archive_account(account_id))

    @app.post("/accounts/{account_id}/awards")
    def award(account_id: str, body: AwardRequest) -> JSONResponse:
        receipt = ledger.award(
            account_id,
            body.source_ref,
            body.amount,
            body.idempotency_key,
            body.actor_id,
            note=body.note,
        )
        return _receipt_response(receipt)

    @app.post("/accounts/{account_id}/redemptions")
    def redeem(account_id: str, body: RedemptionRequest) -> JSONResponse:
        receipt = ledger.redeem(
            account_id,
            body.reward_ref,
            body.amount,
            body.idempotency_key,
            body.actor_id,
            note=body.note,
        )
        return _receipt_response(receipt)

    @app.get("/accounts/{account_id}/balance")
    def balance(account_id: str) -> Dict[str, Any]:
        return api.account_snapshot(ledger.get_account(account_id))

    @app.get("/accounts/{account_id}/history")
    def history(
        account_id: str,
        page_token: Optional[str] = Query(None),
        page_size: Optional[int] = Query(None, ge=1, le=200),
    ) -> Dict[str, Any]:
        return api.history(ledger.list_ledger_history(account_id, page_token, page_size=page_size))

    @app.get("/accounts/{account_id}/audit")
    def audit(
        account_id: str,
        start: Optional[datetime] = Query(None),
        end: Optional[datetime] = Query(None),
    ) -> Dict[str, Any]:
        ledger.get_account(account_id)
        events = ledger.audit_entries(account_id, start=_naive_utc(start), end=_naive_utc(end))
        return {"account_id": account_id, "events": api.audit(events)}

    @app.get("/members/{member_id}/streak")
    def streak(member_id: str, today: Optional[date] = Query(None)) -> Dict[str, Any]:
        view = ledger.get_streak(member_id, today=today)
        return api.streak(view.state, status=view.status.value, days_until_break=view.days_until_break)

    @app.put("/members/{member_id}/timezone")
    def set_timezone(member_id: str, body: TimezoneRequest) -> Dict[str, str]:
        ledger.set_member_timezone(member_id, body.timezone)
        return {"member_id": member_id, "timezone": body.timezone}

    @app.get("/members/{member_id}/achievements")
    def achievements(member_id: str) -> Dict[str, Any]:
        return {"member_id": member_id, "achievements": api.achievements(ledger.list_achievements(member_id))}

    return app


_default_app: FastAPI | None = None


def __getattr__(name: str) -> Any:
    global _default_app
    if name == "app":
        if _default_app is None:
            _default_app = create_app()
        return _default_app
    raise AttributeError(name)


__all__ = ["ERROR_STATUS", "create_app"]

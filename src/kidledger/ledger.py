"""Transactional ledger core: accounts, awards, redemptions and history."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, Optional, Sequence

from sqlalchemy import func
from sqlmodel import Session, select

from .audit import AuditLog
from .config import LedgerSettings
from .exceptions import (
    AccountArchivedError,
    AccountNotFoundError,
    DuplicateAccountError,
    DuplicateOperationError,
    InsufficientBalanceError,
    InvariantViolationError,
)
from .idempotency import GuardOutcome, IdempotencyGuard
from .models import (
    Account,
    AuditAction,
    LedgerEntry,
    LedgerEntryKind,
    LedgerPage,
    LedgerReceipt,
)
from .ops import StructuredLogger, utcnow
from .persistence import (
    AccountRow,
    DurableStore,
    LedgerEntryRow,
    WriteConflict,
    assert_version,
    compare_and_set,
)
from .points import MAX_POINTS, PointsLike, require_positive, to_points


def default_account_id(family_id: str, member_id: str) -> str:
    return f"{family_id}:{member_id}"


def _require_text(value: str, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvariantViolationError(f"{field_name} must be a non-empty string.")
    return value


class LedgerCore:
    """Apply awards and redemptions as single atomic store transactions.

    Each operation claims its idempotency key, reads the account, writes the
    ledger entry, conditionally updates the account on its ``version`` and
    appends an audit row, all inside one :meth:`DurableStore.run` unit of
    work. Nothing here caches balances; every decision is made against the
    row read in the same transaction.
    """

    def __init__(
        self,
        store: DurableStore,
        *,
        settings: LedgerSettings | None = None,
        guard: IdempotencyGuard | None = None,
        audit: AuditLog | None = None,
        logger: StructuredLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or LedgerSettings()
        self._store = store
        self._logger = logger.child("ledger") if logger else StructuredLogger(component="ledger")
        self._clock = clock
        self.guard = guard or IdempotencyGuard(
            ttl=self.settings.idempotency_ttl,
            clock=clock,
            logger=self._logger.child("idempotency"),
        )
        self.audit = audit or AuditLog(store)

    @property
    def store(self) -> DurableStore:
        return self._store

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    def open_account(self, member_id: str, family_id: str, *, account_id: Optional[str] = None) -> Account:
        _require_text(member_id, "member_id")
        _require_text(family_id, "family_id")
        account_id = account_id or default_account_id(family_id, member_id)

        def _open(session: Session) -> Account:
            if session.get(AccountRow, account_id) is not None:
                raise DuplicateAccountError(f"Account {account_id!r} already exists.")
            now = self._clock()
            row = AccountRow(
                account_id=account_id,
                member_id=member_id,
                family_id=family_id,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            return row.to_model()

        account = self._store.run(_open, operation="open_account")
        self._logger.log("account_opened", account_id=account_id, member_id=member_id, family_id=family_id)
        return account

    def archive_account(self, account_id: str) -> Account:
        """Close an account to new ledger operations. History stays readable."""

        def _archive(session: Session) -> Account:
            row = self._require_account(session, account_id)
            if row.archived_at is not None:
                return row.to_model()
            now = self._clock()
            compare_and_set(
                session,
                AccountRow,
                AccountRow.account_id == account_id,
                expected_version=row.version,
                archived_at=now,
                updated_at=now,
            )
            session.refresh(row)
            return row.to_model()

        account = self._store.run(_archive, operation="archive_account")
        self._logger.log("account_archived", account_id=account_id)
        return account

    def get_account(self, account_id: str) -> Account:
        with self._store.session() as session:
            return self._require_account(session, account_id).to_model()

    def get_balance(self, account_id: str) -> int:
        return self.get_account(account_id).balance

    def accounts_for_member(self, member_id: str) -> tuple[Account, ...]:
        with self._store.session() as session:
            rows = session.exec(
                select(AccountRow).where(AccountRow.member_id == member_id).order_by(AccountRow.created_at)
            ).all()
            return tuple(row.to_model() for row in rows)

    # ------------------------------------------------------------------
    # Economic transitions
    # ------------------------------------------------------------------
    def award(
        self,
        account_id: str,
        source_ref: str,
        amount: PointsLike,
        idempotency_key: str,
        actor_id: str,
        note: str = "",
    ) -> LedgerReceipt:
        """Credit ``amount`` points to the account, exactly once per key."""

        value = self._validate(source_ref, amount, idempotency_key, actor_id)

        def _award(session: Session) -> LedgerReceipt:
            self._claim(session, idempotency_key, LedgerEntryKind.AWARD, account_id)
            row = self._require_open_account(session, account_id)
            if row.total_earned + value > MAX_POINTS:
                raise InvariantViolationError(f"Award of {value} would push lifetime earnings past {MAX_POINTS}.")
            now = self._clock()
            entry = self._write_entry(session, row, LedgerEntryKind.AWARD, value, source_ref, idempotency_key, actor_id, note, now)
            new_balance = row.balance + value
            compare_and_set(
                session,
                AccountRow,
                AccountRow.account_id == account_id,
                expected_version=row.version,
                balance=new_balance,
                total_earned=row.total_earned + value,
                award_count=row.award_count + 1,
                updated_at=now,
            )
            self.audit.record(
                session,
                account_id=account_id,
                entry_id=entry.entry_id,
                action=AuditAction.AWARD,
                actor_id=actor_id,
                amount=value,
                balance_after=new_balance,
                details={"source_ref": source_ref, "note": note} if note else {"source_ref": source_ref},
                timestamp=now,
            )
            self.guard.commit(session, idempotency_key, entry.entry_id)
            return LedgerReceipt(entry=entry, balance=new_balance)

        try:
            receipt = self._store.run(_award, operation="award")
        except DuplicateOperationError as duplicate:
            return self._replayed(duplicate)
        self._logger.log(
            "award_committed",
            account_id=account_id,
            entry_id=receipt.entry.entry_id,
            amount=value,
            balance=receipt.balance,
            sequence=receipt.entry.sequence,
        )
        return receipt

    def redeem(
        self,
        account_id: str,
        reward_ref: str,
        amount: PointsLike,
        idempotency_key: str,
        actor_id: str,
        note: str = "",
    ) -> LedgerReceipt:
        """Debit ``amount`` points if the balance covers it.

        An uncovered request marks the key ``failed`` and writes a
        ``redeem_rejected`` audit row before raising
        :class:`InsufficientBalanceError`, so a corrected retry may reuse the
        same key.
        """

        value = self._validate(reward_ref, amount, idempotency_key, actor_id)

        def _redeem(session: Session) -> LedgerReceipt | InsufficientBalanceError:
            self._claim(session, idempotency_key, LedgerEntryKind.REDEEM, account_id)
            row = self._require_open_account(session, account_id)
            now = self._clock()
            if row.balance < value:
                # The decision rests on this read, so it must still be current at commit.
                assert_version(session, AccountRow, AccountRow.account_id == account_id, expected_version=row.version)
                self.guard.fail(session, idempotency_key, "insufficient_balance")
                self.audit.record(
                    session,
                    account_id=account_id,
                    entry_id=idempotency_key,
                    action=AuditAction.REDEEM_REJECTED,
                    actor_id=actor_id,
                    amount=value,
                    balance_after=row.balance,
                    details={"reward_ref": reward_ref, "reason": "insufficient_balance"},
                    timestamp=now,
                )
                return InsufficientBalanceError(
                    f"Balance {row.balance} does not cover redemption of {value}.",
                    balance=row.balance,
                    requested=value,
                )
            entry = self._write_entry(session, row, LedgerEntryKind.REDEEM, value, reward_ref, idempotency_key, actor_id, note, now)
            new_balance = row.balance - value
            compare_and_set(
                session,
                AccountRow,
                AccountRow.account_id == account_id,
                expected_version=row.version,
                balance=new_balance,
                total_redeemed=row.total_redeemed + value,
                redeem_count=row.redeem_count + 1,
                updated_at=now,
            )
            self.audit.record(
                session,
                account_id=account_id,
                entry_id=entry.entry_id,
                action=AuditAction.REDEEM,
                actor_id=actor_id,
                amount=value,
                balance_after=new_balance,
                details={"reward_ref": reward_ref, "note": note} if note else {"reward_ref": reward_ref},
                timestamp=now,
            )
            self.guard.commit(session, idempotency_key, entry.entry_id)
            return LedgerReceipt(entry=entry, balance=new_balance)

        try:
            outcome = self._store.run(_redeem, operation="redeem")
        except DuplicateOperationError as duplicate:
            return self._replayed(duplicate)
        if isinstance(outcome, InsufficientBalanceError):
            self._logger.warning(
                "redeem_rejected",
                account_id=account_id,
                key=idempotency_key,
                balance=outcome.balance,
                requested=value,
            )
            raise outcome
        self._logger.log(
            "redeem_committed",
            account_id=account_id,
            entry_id=outcome.entry.entry_id,
            amount=value,
            balance=outcome.balance,
            sequence=outcome.entry.sequence,
        )
        return outcome

    def apply(self, kind: LedgerEntryKind | str, **request: object) -> LedgerReceipt:
        """Dispatch a tagged ``award``/``redeem`` request, rejecting unknown kinds."""

        parsed = LedgerEntryKind.parse(kind)
        if parsed is LedgerEntryKind.AWARD:
            return self.award(**request)
        return self.redeem(**request)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def list_history(
        self,
        account_id: str,
        page_token: Optional[str] = None,
        *,
        page_size: Optional[int] = None,
    ) -> LedgerPage:
        """Return one page of entries, newest first.

        ``page_token`` is the opaque value from the previous page's
        ``next_page_token``; ``None`` starts from the most recent entry.
        """

        size = page_size or self.settings.history_page_size
        if size <= 0:
            raise InvariantViolationError("page_size must be positive.")
        before: Optional[int] = None
        if page_token:
            try:
                before = int(page_token)
            except ValueError as exc:
                raise InvariantViolationError(f"Malformed page token: {page_token!r}") from exc
        with self._store.session() as session:
            self._require_account(session, account_id)
            query = select(LedgerEntryRow).where(LedgerEntryRow.account_id == account_id)
            if before is not None:
                query = query.where(LedgerEntryRow.sequence < before)
            rows = session.exec(query.order_by(LedgerEntryRow.sequence.desc()).limit(size + 1)).all()
        entries = tuple(row.to_model() for row in rows[:size])
        next_token = str(entries[-1].sequence) if len(rows) > size else None
        return LedgerPage(entries=entries, next_page_token=next_token)

    def entries(self, account_id: str) -> tuple[LedgerEntry, ...]:
        """All entries for ``account_id`` in commit order."""

        with self._store.session() as session:
            rows = session.exec(
                select(LedgerEntryRow)
                .where(LedgerEntryRow.account_id == account_id)
                .order_by(LedgerEntryRow.sequence)
            ).all()
            return tuple(row.to_model() for row in rows)

    def count_awards(
        self,
        member_id: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        """Awards for ``member_id`` created in ``[since, until)``."""

        query = select(func.count()).select_from(LedgerEntryRow).where(
            LedgerEntryRow.member_id == member_id,
            LedgerEntryRow.kind == LedgerEntryKind.AWARD.value,
        )
        if since is not None:
            query = query.where(LedgerEntryRow.created_at >= since)
        if until is not None:
            query = query.where(LedgerEntryRow.created_at < until)
        with self._store.session() as session:
            return int(session.exec(query).one())

    def verify_account(self, account_id: str) -> Account:
        """Replay the account's history and check it against the stored totals.

        Raises :class:`InvariantViolationError` describing the first mismatch.
        """

        with self._store.session() as session:
            account = self._require_account(session, account_id).to_model()
            rows = session.exec(
                select(LedgerEntryRow)
                .where(LedgerEntryRow.account_id == account_id)
                .order_by(LedgerEntryRow.sequence)
            ).all()
            history = [row.to_model() for row in rows]
        problems = _replay_problems(account, history)
        if problems:
            self._logger.error("conservation_failed", account_id=account_id, problems=problems)
            raise InvariantViolationError(f"Account {account_id!r} failed verification: {'; '.join(problems)}")
        return account

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _validate(self, ref: str, amount: PointsLike, key: str, actor_id: str) -> int:
        _require_text(ref, "source_ref")
        _require_text(key, "idempotency_key")
        _require_text(actor_id, "actor_id")
        return require_positive(to_points(amount))

    def _claim(self, session: Session, key: str, kind: LedgerEntryKind, account_id: str) -> None:
        decision = self.guard.begin(session, key, operation=kind.value, account_id=account_id)
        if decision.outcome is GuardOutcome.IN_FLIGHT:
            raise WriteConflict(f"Idempotency key {key!r} is held by another attempt.")
        if decision.outcome is GuardOutcome.ALREADY_COMMITTED:
            row = session.get(LedgerEntryRow, decision.result_ref) if decision.result_ref else None
            if row is None:
                raise InvariantViolationError(f"Committed key {key!r} has no ledger entry.")
            entry = row.to_model()
            if entry.account_id != account_id or entry.kind is not kind:
                raise InvariantViolationError(f"Idempotency key {key!r} was already used for a different operation.")
            account = session.get(AccountRow, account_id)
            raise DuplicateOperationError(
                f"Operation {key!r} already committed.",
                entry=entry,
                balance=account.balance if account else None,
            )

    def _replayed(self, duplicate: DuplicateOperationError) -> LedgerReceipt:
        entry: LedgerEntry = duplicate.entry
        self._logger.log("duplicate_replayed", account_id=entry.account_id, entry_id=entry.entry_id)
        balance = duplicate.balance if duplicate.balance is not None else self.get_balance(entry.account_id)
        return LedgerReceipt(entry=entry, balance=balance, duplicate=True)

    def _write_entry(
        self,
        session: Session,
        account: AccountRow,
        kind: LedgerEntryKind,
        amount: int,
        ref: str,
        key: str,
        actor_id: str,
        note: str,
        now: datetime,
    ) -> LedgerEntry:
        row = LedgerEntryRow(
            entry_id=key,
            account_id=account.account_id,
            member_id=account.member_id,
            kind=kind.value,
            amount=amount,
            source_ref=ref,
            actor_id=actor_id,
            sequence=account.version + 1,
            created_at=now,
            audit_note=note,
        )
        session.add(row)
        return row.to_model()

    @staticmethod
    def _require_account(session: Session, account_id: str) -> AccountRow:
        row = session.get(AccountRow, account_id)
        if row is None:
            raise AccountNotFoundError(f"Account {account_id!r} does not exist.")
        return row

    def _require_open_account(self, session: Session, account_id: str) -> AccountRow:
        row = self._require_account(session, account_id)
        if row.archived_at is not None:
            raise AccountArchivedError(f"Account {account_id!r} is archived.")
        return row


def _replay_problems(account: Account, history: Sequence[LedgerEntry]) -> list[str]:
    problems: list[str] = []
    earned = redeemed = running = 0
    awards = redeems = 0
    expected_sequence = 1
    for entry in history:
        if entry.sequence != expected_sequence:
            problems.append(f"sequence gap at {entry.entry_id} (expected {expected_sequence}, found {entry.sequence})")
            expected_sequence = entry.sequence
        expected_sequence += 1
        if entry.kind is LedgerEntryKind.AWARD:
            earned += entry.amount
            awards += 1
        else:
            redeemed += entry.amount
            redeems += 1
        running += entry.signed_amount
        if running < 0:
            problems.append(f"balance negative after {entry.entry_id}")
    checks: Iterable[tuple[str, int, int]] = (
        ("total_earned", account.total_earned, earned),
        ("total_redeemed", account.total_redeemed, redeemed),
        ("balance", account.balance, running),
        ("award_count", account.award_count, awards),
        ("redeem_count", account.redeem_count, redeems),
    )
    for name, stored, replayed in checks:
        if stored != replayed:
            problems.append(f"{name} is {stored} but history gives {replayed}")
    if not account.is_conserved:
        problems.append("balance does not equal total_earned - total_redeemed")
    # Archiving bumps the version without writing an entry.
    if account.archived_at is None and account.version != len(history):
        problems.append(f"version {account.version} does not match {len(history)} entries")
    return problems


__all__ = ["LedgerCore", "default_account_id"]

"""Configuration constants for KidLedger.

Values come from the environment (a ``.env`` file is loaded first) and fall
back to the defaults below. :class:`LedgerSettings` bundles them so services
and tests can override individual values without touching the environment.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


DATABASE_URL = os.environ.get("KIDLEDGER_DATABASE_URL", "sqlite:///kidledger.db")
QUEUE_DB_FILE = os.environ.get("KIDLEDGER_QUEUE_DB", "kidledger-queue.db")
LOG_PATH: Optional[str] = os.environ.get("KIDLEDGER_LOG_PATH") or None
DEFAULT_TIMEZONE = os.environ.get("KIDLEDGER_DEFAULT_TIMEZONE", "UTC")

IDEMPOTENCY_TTL_HOURS = _env_int("KIDLEDGER_IDEMPOTENCY_TTL_HOURS", 48)
TXN_MAX_ATTEMPTS = _env_int("KIDLEDGER_TXN_ATTEMPTS", 5)
TXN_BASE_DELAY_SECONDS = _env_float("KIDLEDGER_TXN_BASE_DELAY", 0.02)
SQLITE_BUSY_TIMEOUT_SECONDS = _env_float("KIDLEDGER_SQLITE_BUSY_TIMEOUT", 30.0)

MAX_STREAK_FREEZES = _env_int("KIDLEDGER_MAX_FREEZES", 2)

QUEUE_MAX_ATTEMPTS = _env_int("KIDLEDGER_QUEUE_MAX_ATTEMPTS", 6)
QUEUE_BASE_DELAY_SECONDS = _env_float("KIDLEDGER_QUEUE_BASE_DELAY", 5.0)
QUEUE_MAX_DELAY_SECONDS = _env_float("KIDLEDGER_QUEUE_MAX_DELAY", 300.0)
QUEUE_ATTEMPT_TIMEOUT_SECONDS = _env_float("KIDLEDGER_QUEUE_TIMEOUT", 10.0)

HISTORY_PAGE_SIZE = 20


@dataclass(frozen=True, slots=True)
class LedgerSettings:
    """Tunable knobs for the ledger, derived-state engines and offline queue."""

    database_url: str = DATABASE_URL
    queue_db_file: str = QUEUE_DB_FILE
    log_path: Optional[str] = LOG_PATH
    default_timezone: str = DEFAULT_TIMEZONE
    idempotency_ttl_hours: int = IDEMPOTENCY_TTL_HOURS
    txn_max_attempts: int = TXN_MAX_ATTEMPTS
    txn_base_delay_seconds: float = TXN_BASE_DELAY_SECONDS
    sqlite_busy_timeout_seconds: float = SQLITE_BUSY_TIMEOUT_SECONDS
    max_streak_freezes: int = MAX_STREAK_FREEZES
    queue_max_attempts: int = QUEUE_MAX_ATTEMPTS
    queue_base_delay_seconds: float = QUEUE_BASE_DELAY_SECONDS
    queue_max_delay_seconds: float = QUEUE_MAX_DELAY_SECONDS
    queue_attempt_timeout_seconds: float = QUEUE_ATTEMPT_TIMEOUT_SECONDS
    history_page_size: int = HISTORY_PAGE_SIZE

    @property
    def idempotency_ttl(self) -> timedelta:
        return timedelta(hours=self.idempotency_ttl_hours)

    def with_overrides(self, **changes: object) -> "LedgerSettings":
        return replace(self, **changes)


__all__ = [
    "DATABASE_URL",
    "QUEUE_DB_FILE",
    "LOG_PATH",
    "DEFAULT_TIMEZONE",
    "IDEMPOTENCY_TTL_HOURS",
    "TXN_MAX_ATTEMPTS",
    "TXN_BASE_DELAY_SECONDS",
    "SQLITE_BUSY_TIMEOUT_SECONDS",
    "MAX_STREAK_FREEZES",
    "QUEUE_MAX_ATTEMPTS",
    "QUEUE_BASE_DELAY_SECONDS",
    "QUEUE_MAX_DELAY_SECONDS",
    "QUEUE_ATTEMPT_TIMEOUT_SECONDS",
    "HISTORY_PAGE_SIZE",
    "LedgerSettings",
]

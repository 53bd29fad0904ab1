"""Operational utilities for KidLedger."""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every persisted datetime is stored in."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


class StructuredLogger:
    """Write JSON lines log entries for admin inspection.

    Entries are kept in memory (bounded by ``max_entries``) and appended to
    ``path`` when one is configured. ``component`` is stamped on every entry so
    one file can hold the ledger, streak, achievement and queue streams.
    """

    def __init__(
        self,
        *,
        path: Path | str | None = None,
        component: str = "kidledger",
        max_entries: int = 1000,
    ) -> None:
        self.path = Path(path) if path else None
        self.component = component
        self._max_entries = max_entries
        self._entries: list[dict] = []
        self._lock = threading.Lock()

    def child(self, component: str) -> "StructuredLogger":
        """Return a logger sharing this one's buffer but tagged with ``component``."""

        clone = StructuredLogger.__new__(StructuredLogger)
        clone.path = self.path
        clone.component = component
        clone._max_entries = self._max_entries
        clone._entries = self._entries
        clone._lock = self._lock
        return clone

    def log(self, event_type: str, *, level: str = "info", **fields: object) -> dict:
        entry = {
            "timestamp": utcnow().isoformat(),
            "level": level,
            "component": self.component,
            "event": event_type,
            **fields,
        }
        with self._lock:
            self._entries.append(entry)
            if len(self._entries) > self._max_entries:
                del self._entries[: len(self._entries) - self._max_entries]
            if self.path:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(entry, default=str) + "\n")
        return entry

    def warning(self, event_type: str, **fields: object) -> dict:
        return self.log(event_type, level="warning", **fields)

    def error(self, event_type: str, **fields: object) -> dict:
        return self.log(event_type, level="error", **fields)

    def tail(self, limit: int = 50, *, event: Optional[str] = None) -> tuple[dict, ...]:
        with self._lock:
            entries = list(self._entries)
        if event is not None:
            entries = [entry for entry in entries if entry["event"] == event]
        return tuple(entries[-limit:])


__all__ = ["StructuredLogger", "utcnow"]

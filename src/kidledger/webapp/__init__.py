"""KidLedger HTTP API package.

``uvicorn kidledger.webapp:app`` serves a ledger backed by the database named
in ``KIDLEDGER_DATABASE_URL``. Tests build their own app with
:func:`create_app`.
"""
from __future__ import annotations

from typing import Any

from .application import ERROR_STATUS, create_app

__all__ = ["ERROR_STATUS", "app", "create_app"]


def __getattr__(name: str) -> Any:
    if name == "app":
        from . import application

        return application.app
    raise AttributeError(name)

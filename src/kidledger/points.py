"""Utilities for working with point amounts in KidLedger.

Points are whole numbers. Floats, decimals with a fractional part and booleans
are rejected rather than rounded so a client bug can never mint half a point.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Union

from .exceptions import InvariantViolationError

PointsLike = Union[int, str, Decimal]

# Largest amount or running total a ledger row accepts.
MAX_POINTS = 2**31 - 1


def to_points(value: PointsLike) -> int:
    """Convert ``value`` to an ``int`` number of points."""

    if isinstance(value, bool):
        raise InvariantViolationError("Point amounts must be integers, not booleans.")
    if isinstance(value, int):
        return value
    if isinstance(value, Decimal):
        if not value.is_finite() or value != value.to_integral_value():
            raise InvariantViolationError(f"Point amounts must be whole numbers: {value}")
        return int(value)
    if isinstance(value, str):
        cleaned = value.strip()
        digits = cleaned[1:] if cleaned.startswith("-") else cleaned
        if not digits.isdecimal():
            raise InvariantViolationError(f"Point amounts must be whole numbers: {value!r}")
        return int(cleaned)
    raise InvariantViolationError(f"Unsupported point amount type: {type(value)!r}")


def require_positive(amount: int, *, allow_zero: bool = False) -> int:
    """Ensure ``amount`` is positive (or non-negative when ``allow_zero`` is true).

    Amounts above ``MAX_POINTS`` are rejected as well.
    """

    if allow_zero:
        if amount < 0:
            raise InvariantViolationError("Amount must be zero or greater.")
    else:
        if amount <= 0:
            raise InvariantViolationError("Amount must be greater than zero.")
    if amount > MAX_POINTS:
        raise InvariantViolationError(f"Amount must not exceed {MAX_POINTS:,}.")
    return amount


def format_points(amount: int) -> str:
    """Return ``amount`` as a display string (e.g. ``1,250 pts``)."""

    unit = "pt" if abs(amount) == 1 else "pts"
    return f"{amount:,} {unit}"

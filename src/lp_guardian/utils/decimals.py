"""
Decimal and time helpers.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

MS_PER_MINUTE = 60_000


def safe_decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    """Safely convert a value to Decimal.

    Returns default for None, NaN, Infinity, and invalid values.
    """
    if value is None:
        return default
    if isinstance(value, Decimal):
        if value.is_nan() or value.is_infinite():
            return default
        return value
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return default
    if result.is_nan() or result.is_infinite():
        return default
    return result


def elapsed_ms(start: datetime, now: datetime) -> int:
    """Milliseconds between two datetimes (never negative)."""
    return max(0, int((now - start).total_seconds() * 1000))


def ms_to_minutes(ms: int | Decimal) -> Decimal:
    return Decimal(ms) / Decimal(MS_PER_MINUTE)

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Tuple

CENTS = Decimal("0.01")
COST_PLACES = Decimal("0.0001")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands timestamps back naive; treat those as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def money(value) -> Decimal:
    return to_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def unit_cost(value) -> Decimal:
    return to_decimal(value).quantize(COST_PLACES, rounding=ROUND_HALF_UP)


def days_between(start: datetime, end: datetime) -> int:
    return int((as_utc(end) - as_utc(start)).total_seconds() // 86400)


def day_range(now: datetime) -> Tuple[datetime, datetime]:
    now = as_utc(now)
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def month_range(now: datetime) -> Tuple[datetime, datetime]:
    """Start and end of the calendar month containing ``now``."""
    now = as_utc(now)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end

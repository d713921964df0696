"""Time and money helpers shared by the services."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, List, Optional, Tuple

from bson.decimal128 import Decimal128

CENTS = Decimal("0.01")
ZERO = Decimal("0")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def iso_now() -> str:
    return now_utc().isoformat()


def parse_iso(s: str) -> Optional[datetime]:
    """Parse an ISO 8601 date or datetime; naive values are taken as UTC."""
    if not isinstance(s, str) or not s.strip():
        return None
    try:
        dt = datetime.fromisoformat(s.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def month_key(iso_value: str) -> str:
    # Stored timestamps are UTC ISO strings, so the first seven characters are YYYY-MM.
    return (iso_value or "")[:7]


def month_start(dt: datetime) -> datetime:
    return dt.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def shift_month(year: int, month: int, delta: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def trailing_months(months: int, now: Optional[datetime] = None) -> List[Tuple[int, int]]:
    """Return ``months`` (year, month) pairs ending with the current month, oldest first."""
    now = now or now_utc()
    return [shift_month(now.year, now.month, -offset) for offset in range(months - 1, -1, -1)]


def month_bounds(now: Optional[datetime] = None) -> Tuple[str, str, str]:
    """ISO strings for the start of last month, this month and next month."""
    now = now or now_utc()
    start = month_start(now)
    last_y, last_m = shift_month(now.year, now.month, -1)
    next_y, next_m = shift_month(now.year, now.month, 1)
    return (
        to_iso(start.replace(year=last_y, month=last_m)),
        to_iso(start),
        to_iso(start.replace(year=next_y, month=next_m)),
    )


def start_of_day(now: Optional[datetime] = None) -> str:
    now = now or now_utc()
    return to_iso(now.replace(hour=0, minute=0, second=0, microsecond=0))


def to_decimal(value: Any) -> Decimal:
    """Read a stored monetary value as an exact Decimal."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # floats only arrive from JSON input; go through str to avoid binary artefacts
        return Decimal(str(value))
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return ZERO


def to_bson_money(value: Decimal) -> Decimal128:
    return Decimal128(value.quantize(CENTS, rounding=ROUND_HALF_UP))


def money_out(value: Decimal) -> float:
    """Round to cents at the output boundary."""
    return float(value.quantize(CENTS, rounding=ROUND_HALF_UP))

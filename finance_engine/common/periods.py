from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Tuple

from .errors import InvalidPeriodError

MIN_YEAR = 2000
MAX_YEAR = 9999


def as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        # Treat naive datetimes as UTC to avoid ambiguous math.
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_period(year: object, month: object) -> Tuple[int, int]:
    if isinstance(year, bool) or not isinstance(year, int):
        raise InvalidPeriodError(f"year must be an integer, got {year!r}")
    if isinstance(month, bool) or not isinstance(month, int):
        raise InvalidPeriodError(f"month must be an integer, got {month!r}")
    if year < MIN_YEAR or year > MAX_YEAR:
        raise InvalidPeriodError(f"year must be {MIN_YEAR}..{MAX_YEAR}, got {year}")
    if month < 1 or month > 12:
        raise InvalidPeriodError(f"month must be 1..12, got {month}")
    return year, month


def month_period_utc(*, year: int, month: int) -> Tuple[datetime, datetime]:
    """
    Returns [period_start, period_end) in UTC for the given year/month.
    """
    validate_period(year, month)
    start = datetime(year, month, 1, 0, 0, 0, tzinfo=timezone.utc)
    if month == 12:
        end = datetime(year + 1, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, 0, 0, 0, tzinfo=timezone.utc)
    return start, end


def period_key(year: int, month: int) -> str:
    """Example: "2025-12"."""
    validate_period(year, month)
    return f"{year:04d}-{month:02d}"


def parse_period_key(value: str) -> Tuple[int, int]:
    try:
        year_s, month_s = str(value).strip().split("-", 1)
        year, month = int(year_s), int(month_s)
    except Exception as e:
        raise InvalidPeriodError(f"expected YYYY-MM, got {value!r}") from e
    return validate_period(year, month)


def previous_month(now: Optional[datetime] = None) -> Tuple[int, int]:
    ref = as_utc(now or utc_now())
    if ref.month == 1:
        return ref.year - 1, 12
    return ref.year, ref.month - 1


def current_month(now: Optional[datetime] = None) -> Tuple[int, int]:
    ref = as_utc(now or utc_now())
    return ref.year, ref.month

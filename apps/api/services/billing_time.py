"""Calendar helpers anchored to the billing timezone."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from config import settings


def billing_tz() -> ZoneInfo:
    return ZoneInfo(settings.BILLING_TIMEZONE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_date(value: datetime) -> date:
    """Calendar date of a timestamp in the billing timezone."""
    return as_utc(value).astimezone(billing_tz()).date()


def local_today(now: Optional[datetime] = None) -> date:
    return local_date(now or utcnow())


def day_start_utc(day: date) -> datetime:
    """UTC instant at which ``day`` begins in the billing timezone."""
    return datetime.combine(day, time.min, tzinfo=billing_tz()).astimezone(timezone.utc)


def period_bounds_utc(start: date, end: date) -> Tuple[datetime, datetime]:
    """Half-open UTC window covering the inclusive local date range."""
    return day_start_utc(start), day_start_utc(end + timedelta(days=1))


def month_bounds_utc(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """UTC window of the billing-timezone calendar month containing ``now``."""
    today = local_today(now)
    first = today.replace(day=1)
    next_first = (first + timedelta(days=32)).replace(day=1)
    return day_start_utc(first), day_start_utc(next_first)


def last_day_of_previous_month(now: Optional[datetime] = None) -> date:
    return local_today(now).replace(day=1) - timedelta(days=1)

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC timestamp; every persisted datetime uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class Period:
    """Half-open range: ``start <= t < end``."""

    slug: str
    start: datetime
    end: datetime


def month_start(value: datetime) -> datetime:
    return datetime(value.year, value.month, 1)


def next_month_start(value: datetime) -> datetime:
    if value.month == 12:
        return datetime(value.year + 1, 1, 1)
    return datetime(value.year, value.month + 1, 1)


def previous_month_start(value: datetime) -> datetime:
    if value.month == 1:
        return datetime(value.year - 1, 12, 1)
    return datetime(value.year, value.month - 1, 1)


def current_month(now: Optional[datetime] = None) -> Period:
    now = now or utcnow()
    return Period("this_month", month_start(now), next_month_start(now))


def last_month(now: Optional[datetime] = None) -> Period:
    now = now or utcnow()
    first_this = month_start(now)
    return Period("last_month", previous_month_start(now), first_this)


def is_new_month(last: datetime, current: datetime) -> bool:
    """True when ``last`` falls in a strictly earlier calendar month than ``current``."""
    return (last.year, last.month) < (current.year, current.month)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)

"""UTC window arithmetic shared by the rate limiter and the quota service.

Every helper takes ``now`` explicitly so callers (and tests) control the clock.
Naive datetimes are interpreted as UTC, which is how SQLite hands timestamps
back to us.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from ..domain.quotas import QuotaWindow

SECONDS_PER_MINUTE = 60


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _minute_index(value: datetime) -> int:
    return int(ensure_utc(value).timestamp() // SECONDS_PER_MINUTE)


def is_new_day(last_reset: datetime | None, now: datetime) -> bool:
    """Whether ``now`` falls on a later UTC calendar day than ``last_reset``."""

    if last_reset is None:
        return True
    return ensure_utc(last_reset).date() != ensure_utc(now).date()


def is_new_minute(last_reset: datetime | None, now: datetime) -> bool:
    """Whether ``now`` has crossed into a later UTC minute than ``last_reset``."""

    if last_reset is None:
        return True
    return _minute_index(now) > _minute_index(last_reset)


def start_of_day(now: datetime) -> datetime:
    current = ensure_utc(now)
    return current.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_minute(now: datetime) -> datetime:
    return ensure_utc(now).replace(second=0, microsecond=0)


def next_daily_reset(now: datetime) -> datetime:
    return start_of_day(now) + timedelta(days=1)


def next_minute_reset(now: datetime) -> datetime:
    return start_of_minute(now) + timedelta(minutes=1)


def period_start(window: QuotaWindow, now: datetime) -> date:
    """Truncate ``now`` to the first day of the enclosing quota period."""

    current = ensure_utc(now).date()
    if window == QuotaWindow.MONTHLY:
        return current.replace(day=1)
    return current


def next_period_start(window: QuotaWindow, now: datetime) -> date:
    start = period_start(window, now)
    if window == QuotaWindow.MONTHLY:
        if start.month == 12:
            return start.replace(year=start.year + 1, month=1)
        return start.replace(month=start.month + 1)
    return start + timedelta(days=1)


def naive_utc(value: datetime) -> datetime:
    """Drop tzinfo after converting to UTC, matching the naive DateTime columns."""

    return ensure_utc(value).replace(tzinfo=None)


def naive_utcnow() -> datetime:
    return naive_utc(utcnow())

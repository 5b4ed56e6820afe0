"""
Property-based tests for the UTC window clock.

**Feature: quota-engine, Property 1: Window Rollover**

Property: a stored reset timestamp counts as belonging to a prior window exactly
when the current instant sits in a later UTC day (or minute), and the next reset
is always the first instant of the following window.
"""

from datetime import date, datetime, timedelta, timezone

from hypothesis import given, settings, strategies as st

from quota_engine.core.windows import (
    is_new_day,
    is_new_minute,
    naive_utc,
    next_daily_reset,
    next_minute_reset,
    next_period_start,
    period_start,
    start_of_minute,
)
from quota_engine.domain.quotas import QuotaWindow

instants = st.datetimes(
    min_value=datetime(2000, 1, 1),
    max_value=datetime(2100, 1, 1),
    timezones=st.just(timezone.utc),
)
offsets = st.timedeltas(min_value=timedelta(0), max_value=timedelta(days=3))


@settings(max_examples=100)
@given(last=instants, offset=offsets)
def test_new_day_matches_calendar_date_change(last: datetime, offset: timedelta):
    """
    **Feature: quota-engine, Property 1: Window Rollover**

    Property: is_new_day is true exactly when the UTC calendar date differs.
    """
    now = last + offset
    assert is_new_day(last, now) == (last.date() != now.date())


@settings(max_examples=100)
@given(last=instants, offset=offsets)
def test_new_minute_matches_minute_floor(last: datetime, offset: timedelta):
    """
    **Feature: quota-engine, Property 1: Window Rollover**

    Property: is_new_minute is true exactly when now is at or past the start of
    the minute after last.
    """
    now = last + offset
    assert is_new_minute(last, now) == (now >= start_of_minute(last) + timedelta(minutes=1))


@settings(max_examples=100)
@given(now=instants)
def test_next_resets_are_window_boundaries(now: datetime):
    """
    **Feature: quota-engine, Property 1: Window Rollover**

    Property: the next daily reset is a UTC midnight within 24h, the next minute
    reset is a whole minute within 60s, and both open a new window.
    """
    daily = next_daily_reset(now)
    minute = next_minute_reset(now)

    assert (daily.hour, daily.minute, daily.second, daily.microsecond) == (0, 0, 0, 0)
    assert now < daily <= now + timedelta(days=1)
    assert (minute.second, minute.microsecond) == (0, 0)
    assert now < minute <= now + timedelta(minutes=1)
    assert is_new_day(now, daily)
    assert is_new_minute(now, minute)


@settings(max_examples=100)
@given(now=instants)
def test_naive_timestamps_are_read_as_utc(now: datetime):
    """
    **Feature: quota-engine, Property 1: Window Rollover**

    Property: a naive value read back from the database compares the same as
    its aware original.
    """
    stored = naive_utc(now)
    assert not is_new_day(stored, now)
    assert not is_new_minute(stored, now)


def test_missing_reset_always_starts_new_window():
    now = datetime(2025, 6, 15, 12, 30, tzinfo=timezone.utc)
    assert is_new_day(None, now)
    assert is_new_minute(None, now)


def test_period_start_truncates_to_day_or_month():
    now = datetime(2025, 6, 15, 23, 59, 59, tzinfo=timezone.utc)
    assert period_start(QuotaWindow.DAILY, now) == date(2025, 6, 15)
    assert period_start(QuotaWindow.MONTHLY, now) == date(2025, 6, 1)


def test_next_period_start_rolls_over_year_end():
    now = datetime(2025, 12, 31, 8, 0, tzinfo=timezone.utc)
    assert next_period_start(QuotaWindow.DAILY, now) == date(2026, 1, 1)
    assert next_period_start(QuotaWindow.MONTHLY, now) == date(2026, 1, 1)


def test_period_start_uses_utc_not_local_offset():
    # 2025-07-01 01:00 at UTC+3 is still June 30 in UTC.
    local = datetime(2025, 7, 1, 1, 0, tzinfo=timezone(timedelta(hours=3)))
    assert period_start(QuotaWindow.MONTHLY, local) == date(2025, 6, 1)

"""Monthly billing-period arithmetic anchored to account creation.

A user's period starts on the day-of-month their account was created, at
00:00 UTC.  In months that are too short for that day, the period starts
on the last day of the month instead.
"""

from __future__ import annotations

import calendar
from datetime import UTC, datetime


def _anchor(year: int, month: int, day: int) -> datetime:
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, min(day, last_day), tzinfo=UTC)


def _previous_month(year: int, month: int) -> tuple[int, int]:
    if month == 1:
        return year - 1, 12
    return year, month - 1


def _next_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def current_period_start(account_created_at: datetime, now: datetime) -> datetime:
    """Return the start of the period containing *now*.

    Parameters
    ----------
    account_created_at:
        Account creation time; only its UTC day-of-month is used.
    now:
        Reference time (UTC-aware).

    Returns
    -------
    datetime
        The most recent anchor date at or before *now*.
    """
    anchor_day = account_created_at.astimezone(UTC).day
    now = now.astimezone(UTC)
    start = _anchor(now.year, now.month, anchor_day)
    if now < start:
        year, month = _previous_month(now.year, now.month)
        start = _anchor(year, month, anchor_day)
    return start


def period_end(account_created_at: datetime, period_start: datetime) -> datetime:
    """Return the exclusive end of the period beginning at *period_start*."""
    anchor_day = account_created_at.astimezone(UTC).day
    year, month = _next_month(period_start.year, period_start.month)
    return _anchor(year, month, anchor_day)


def is_new_period(
    account_created_at: datetime,
    period_start: datetime | None,
    now: datetime,
) -> bool:
    """Return ``True`` if *period_start* belongs to an elapsed period.

    An unset *period_start* always counts as a new period.
    """
    if period_start is None:
        return True
    return period_start < current_period_start(account_created_at, now)

"""
Billing-cycle arithmetic.

Billing cycles recur monthly but are anchored on the day the subscription
started, not on the first of the month.
"""

import calendar
from datetime import date, datetime, timezone
from typing import Union


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def shift_months(moment: datetime, months: int) -> datetime:
    """Move ``moment`` by whole months, clamping the day to the month length."""
    index = moment.year * 12 + (moment.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _anchored(year: int, month: int, anchor: datetime) -> datetime:
    day = min(anchor.day, calendar.monthrange(year, month)[1])
    return anchor.replace(year=year, month=month, day=day)


def cycle_start_for(moment: datetime, anchor: datetime) -> datetime:
    """Start of the billing cycle containing ``moment``.

    Args:
        moment: Any instant
        anchor: Start of any known billing cycle of the account

    Returns:
        The latest instant at or before ``moment`` falling on the anchor's
        day of month (clamped) at the anchor's time of day
    """
    moment = as_utc(moment)
    anchor = as_utc(anchor)
    candidate = _anchored(moment.year, moment.month, anchor)
    if candidate > moment:
        previous = shift_months(candidate.replace(day=1), -1)
        candidate = _anchored(previous.year, previous.month, anchor)
    return candidate


def cycle_end(start: datetime) -> datetime:
    """Exclusive end of the cycle beginning at ``start``."""
    return shift_months(as_utc(start), 1)


def cycle_label(start: Union[datetime, date]) -> str:
    """Storage key for a billing cycle (``YYYY-MM-DD`` of its start)."""
    if isinstance(start, datetime):
        start = as_utc(start)
    return start.strftime("%Y-%m-%d")


def to_millis(moment: datetime) -> int:
    """Milliseconds since the epoch, as the remote API expects."""
    return int(as_utc(moment).timestamp() * 1000)

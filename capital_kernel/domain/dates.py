"""
Date/Time Utility.

Responsibility:
    Normalizes timestamps to calendar dates in a configured time zone and
    does the date arithmetic behind due dates, reminders, overdue checks
    and calendar grouping.

Architecture position:
    Kernel > Domain -- pure functions, zero I/O.  The current time is never
    read here; callers pass ``as_of`` obtained from a Clock.

Conventions:
    - A naive ``datetime`` is interpreted as UTC.
    - A bare ``date`` is a calendar date and is never shifted by time zones.
    - "Normalized" timestamps sit at a fixed hour (12:00 UTC by default), so
      the calendar date survives conversion to any zone within +/-11 hours.
"""

import calendar
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable
from zoneinfo import ZoneInfo

from capital_kernel.exceptions import InvalidDateError

UTC = timezone.utc


def to_utc(value: date | datetime) -> datetime:
    """Timezone-aware UTC datetime; a bare date becomes midnight UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    return datetime.combine(value, time(0, 0), tzinfo=UTC)


def calendar_date(value: date | datetime, tz: str = "UTC") -> date:
    """The calendar date of ``value`` as observed in ``tz``."""
    if isinstance(value, datetime):
        return to_utc(value).astimezone(ZoneInfo(tz)).date()
    return value


def normalize_to_noon_utc(
    value: date | datetime, tz: str = "UTC", hour: int = 12
) -> datetime:
    """Pin ``value``'s calendar date (in ``tz``) to ``hour``:00 UTC."""
    return datetime.combine(calendar_date(value, tz), time(hour, 0), tzinfo=UTC)


def same_calendar_day(a: date | datetime, b: date | datetime, tz: str = "UTC") -> bool:
    return calendar_date(a, tz) == calendar_date(b, tz)


def add_days(value: date, days: int) -> date:
    return value + timedelta(days=days)


def add_months(value: date, months: int) -> date:
    """Shift by whole months, clamping to the last day of the target month.

    2024-01-31 + 1 month -> 2024-02-29.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def compute_due_date(call_date: date, lead_days: int) -> date:
    """``call_date + lead_days``."""
    if lead_days < 0:
        raise InvalidDateError("lead_days", f"must be >= 0, got {lead_days}")
    return add_days(call_date, lead_days)


def reminder_dates(
    due_date: date,
    days_before: Iterable[int],
    not_before: date | None = None,
) -> list[date]:
    """Reminder dates ahead of ``due_date``, ascending, deduplicated.

    Dates earlier than ``not_before`` (typically the call date) are dropped.
    """
    dates = {add_days(due_date, -d) for d in days_before}
    if not_before is not None:
        dates = {d for d in dates if d >= not_before}
    return sorted(dates)


def is_overdue(due_date: date, as_of: date, grace_days: int = 0) -> bool:
    """True once ``as_of`` is past the due date plus the grace period."""
    return as_of > add_days(due_date, grace_days)


def month_key(value: date) -> str:
    """Sortable month key, e.g. ``2024-02``."""
    return f"{value.year:04d}-{value.month:02d}"


def month_label(value: date) -> str:
    """Display label, e.g. ``February 2024``."""
    return f"{calendar.month_name[value.month]} {value.year}"


def is_business_day(value: date) -> bool:
    return value.weekday() < 5


def next_business_day(value: date) -> date:
    """``value`` itself if a weekday, else the following Monday."""
    while not is_business_day(value):
        value = add_days(value, 1)
    return value


def business_days_between(start: date, end: date) -> int:
    """Weekdays in ``[start, end)``; negative when ``end`` precedes ``start``."""
    if end < start:
        return -business_days_between(end, start)
    full_weeks, remainder = divmod((end - start).days, 7)
    count = full_weeks * 5
    for offset in range(remainder):
        if is_business_day(add_days(start, full_weeks * 7 + offset)):
            count += 1
    return count

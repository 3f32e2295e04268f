"""Canonical date/time handling for booking windows.

Dates are ``datetime.date`` and times are ``datetime.time`` everywhere inside
the domain. Strings are only accepted here, at the boundary:

* ``YYYY-MM-DD`` (canonical)
* ``DDMMYYYY`` (legacy compact form sent by older mobile clients)
* ``HH:MM`` / ``HH:MM:SS`` 24-hour times

Anything else raises :class:`hallbook.errors.ValidationError`.
"""
from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta

from .config import get_settings
from .errors import ValidationError

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_COMPACT_DATE = re.compile(r"^\d{8}$")
_CLOCK_TIME = re.compile(r"^\d{2}:\d{2}(:\d{2})?$")

DateLike = Union[date, str]
TimeLike = Union[time, str]


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in DateTime columns."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def local_now() -> datetime:
    """Naive wall-clock time on campus; booking windows are expressed in it."""

    tz_name = get_settings().timezone
    try:
        tz = ZoneInfo(tz_name)
    except ZoneInfoNotFoundError:
        tz = ZoneInfo("UTC")
    return datetime.now(tz).replace(tzinfo=None)


def parse_date(value: DateLike, field: str = "booking_date") -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a date string", {"field": field})

    text = value.strip()
    if _ISO_DATE.match(text):
        fmt = "%Y-%m-%d"
    elif _COMPACT_DATE.match(text):
        fmt = "%d%m%Y"
    else:
        raise ValidationError(f"{field} must be YYYY-MM-DD", {"field": field, "value": value})
    try:
        return datetime.strptime(text, fmt).date()
    except ValueError as exc:
        raise ValidationError(f"{field} is not a real calendar date", {"field": field, "value": value}) from exc


def parse_time(value: TimeLike, field: str = "time") -> time:
    if isinstance(value, time):
        return value.replace(microsecond=0, tzinfo=None)
    if not isinstance(value, str) or not _CLOCK_TIME.match(value.strip()):
        raise ValidationError(f"{field} must be HH:MM (24-hour)", {"field": field, "value": value})

    text = value.strip()
    fmt = "%H:%M:%S" if text.count(":") == 2 else "%H:%M"
    try:
        return datetime.strptime(text, fmt).time()
    except ValueError as exc:
        raise ValidationError(f"{field} is not a valid time of day", {"field": field, "value": value}) from exc


def format_date(value: date) -> str:
    return value.isoformat()


def format_time(value: time) -> str:
    return value.strftime("%H:%M")


def minutes_of(value: time) -> int:
    return value.hour * 60 + value.minute


def duration_minutes(start: time, end: time) -> int:
    return minutes_of(end) - minutes_of(start)


def time_from_minutes(minutes: int) -> time:
    minutes = max(0, min(minutes, 24 * 60 - 1))
    return time(minutes // 60, minutes % 60)


def shift_time(value: time, minutes: int) -> time:
    """Move a time of day by ``minutes``, clamped to the same day."""

    return time_from_minutes(minutes_of(value) + minutes)


def windows_overlap(start_a: time, end_a: time, start_b: time, end_b: time) -> bool:
    """Half-open ``[start, end)`` overlap test."""

    return start_a < end_b and start_b < end_a


def window_end(booking_date: date, end: time) -> datetime:
    return datetime.combine(booking_date, end)


def window_start(booking_date: date, start: time) -> datetime:
    return datetime.combine(booking_date, start)


def month_bounds(day: date) -> Tuple[date, date]:
    """First day of ``day``'s month and first day of the following month."""

    first = day.replace(day=1)
    return first, first + relativedelta(months=1)


def week_start(day: date) -> date:
    # weeks start on Sunday, as on the mobile calendar
    return day - timedelta(days=(day.weekday() + 1) % 7)

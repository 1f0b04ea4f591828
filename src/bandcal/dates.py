"""
Calendar-date helpers for band availability.

A calendar date is a timezone-agnostic day held as a ``YYYY-MM-DD``
string. The same logical date reaches this package as a plain string,
as an ISO timestamp from the backend, or as a ``date``/``datetime``
built somewhere in view code; :func:`normalize_date` folds all of them
into one canonical string so dictionary lookups agree.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta, timezone
from email.utils import parsedate_to_datetime
import re
from typing import Any, Iterable, List, Optional, Union

CalendarDate = str
DateInput = Union[str, date, datetime]

DEFAULT_WINDOW_MONTHS = 6

# date.weekday(): Monday == 0 ... Sunday == 6
WEEKEND_NIGHT_WEEKDAYS = {4, 5, 6}

_DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}")
_DAY_ABBREVIATIONS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
# Human-written forms seen in imported calendars and pasted dates
_TEXT_DATE_FORMATS = (
    "%B %d, %Y",
    "%b %d, %Y",
    "%A, %B %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
    "%m/%d/%Y",
)


def _datetime_calendar_day(value: datetime) -> date:
    """
    Pick the calendar day a datetime stands for.

    Aware values sitting exactly on UTC midnight came from the database
    (date columns serialize as UTC midnight) and keep their UTC day. Other
    aware values are read in the local timezone, and naive values are
    already local wall-clock time.
    """
    if value.tzinfo is None or value.utcoffset() is None:
        return value.date()
    as_utc = value.astimezone(timezone.utc)
    if as_utc.time() == time(0, 0):
        return as_utc.date()
    return value.astimezone().date()


def _parse_text_datetime(value: str) -> Optional[datetime]:
    """Parse an RFC 2822 timestamp or a spelled-out date; None if neither fits."""
    text = value.strip()
    try:
        return parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        pass
    for fmt in _TEXT_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def normalize_date(value: Any) -> CalendarDate:
    """
    Return the canonical ``YYYY-MM-DD`` form of ``value``.

    Never raises: input that holds no recognizable date is returned as
    ``str(value)`` so callers degrade to a missed lookup instead of a crash.
    """
    if isinstance(value, str):
        if _DATE_PATTERN.fullmatch(value):
            return value
        if "T" in value:
            head = value.split("T", 1)[0]
            if _DATE_PATTERN.fullmatch(head):
                return head
        match = _DATE_PATTERN.search(value)
        if match:
            return match.group(0)
        parsed = _parse_text_datetime(value)
        if parsed is not None:
            return _datetime_calendar_day(parsed).isoformat()
        return value
    # datetime first: it is a subclass of date
    if isinstance(value, datetime):
        return _datetime_calendar_day(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def parse_calendar_date(value: DateInput) -> date:
    """Turn any date input into a ``date`` without shifting the day."""
    return date.fromisoformat(normalize_date(value))


def _as_day(now: Optional[Union[date, datetime]]) -> date:
    if now is None:
        return datetime.now().date()
    if isinstance(now, datetime):
        return now.date()
    return now


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def compute_window(
    now: Optional[Union[date, datetime]] = None, months: int = DEFAULT_WINDOW_MONTHS
) -> List[CalendarDate]:
    """
    Every calendar day in the rolling scheduling window.

    The window runs from the 1st of ``now``'s month through the last day of
    the month ``months`` months later, inclusive.
    """
    if months < 0:
        raise ValueError("months must be non-negative")
    start = _as_day(now).replace(day=1)
    end_year, end_month = _add_months(start.year, start.month, months)
    end = date(end_year, end_month, calendar.monthrange(end_year, end_month)[1])
    return [(start + timedelta(days=offset)).isoformat() for offset in range((end - start).days + 1)]


def is_weekend_night(value: DateInput) -> bool:
    """True for Friday, Saturday and Sunday nights."""
    return parse_calendar_date(value).weekday() in WEEKEND_NIGHT_WEEKDAYS


def weekend_nights(dates: Iterable[DateInput]) -> List[CalendarDate]:
    return [normalize_date(d) for d in dates if is_weekend_night(d)]


def format_date_for_display(value: DateInput) -> str:
    """e.g. ``Friday, March 1, 2024``."""
    day = parse_calendar_date(value)
    return f"{day:%A}, {day:%B} {day.day}, {day.year}"


def format_date_for_grid(value: DateInput) -> str:
    """e.g. ``Mar 1``."""
    day = parse_calendar_date(value)
    return f"{day:%b} {day.day}"


def month_name(value: DateInput) -> str:
    """e.g. ``March 2024``."""
    day = parse_calendar_date(value)
    return f"{day:%B} {day.year}"


def day_name(value: DateInput) -> str:
    return _DAY_ABBREVIATIONS[parse_calendar_date(value).weekday()]

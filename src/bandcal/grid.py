"""Month and week layout of calendar dates for grid views."""

from __future__ import annotations

from datetime import date, timedelta
from typing import Dict, Iterable, List, NamedTuple, Optional

from .dates import CalendarDate, DateInput, month_name, normalize_date, parse_calendar_date

DAYS_PER_WEEK = 7

WeekRow = List[Optional[CalendarDate]]


class MonthGrid(NamedTuple):
    key: str
    label: str
    dates: List[CalendarDate]
    weeks: List[WeekRow]


def _sunday_index(day: date) -> int:
    """Column of ``day`` in a Sunday-first week (Sunday == 0)."""
    return (day.weekday() + 1) % DAYS_PER_WEEK


def group_by_month(dates: Iterable[DateInput]) -> Dict[str, List[CalendarDate]]:
    """Bucket dates by ``YYYY-MM`` key, keeping first-seen (chronological) order."""
    grouped: Dict[str, List[CalendarDate]] = {}
    for value in dates:
        normalized = normalize_date(value)
        grouped.setdefault(normalized[:7], []).append(normalized)
    return grouped


def group_by_weeks(dates: Iterable[DateInput]) -> List[WeekRow]:
    """
    Lay dates out as Sunday-first rows of exactly seven cells.

    The rows cover the Sunday on or before the first date through the
    Saturday on or after the last one. Days in that span that are not in
    ``dates`` come out as ``None``.
    """
    normalized = [normalize_date(value) for value in dates]
    if not normalized:
        return []

    members = set(normalized)
    days = sorted(parse_calendar_date(value) for value in members)
    first = days[0] - timedelta(days=_sunday_index(days[0]))
    last = days[-1] + timedelta(days=DAYS_PER_WEEK - 1 - _sunday_index(days[-1]))

    rows: List[WeekRow] = []
    row: WeekRow = []
    current = first
    while current <= last:
        key = current.isoformat()
        row.append(key if key in members else None)
        if len(row) == DAYS_PER_WEEK:
            rows.append(row)
            row = []
        current += timedelta(days=1)

    if row:
        row.extend([None] * (DAYS_PER_WEEK - len(row)))
        rows.append(row)
    return rows


def build_month_grids(dates: Iterable[DateInput]) -> List[MonthGrid]:
    """Month-by-month grids ready for rendering."""
    grids: List[MonthGrid] = []
    for key, month_dates in group_by_month(dates).items():
        grids.append(
            MonthGrid(
                key=key,
                label=month_name(month_dates[0]),
                dates=month_dates,
                weeks=group_by_weeks(month_dates),
            )
        )
    return grids

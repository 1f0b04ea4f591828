from __future__ import annotations

from datetime import date

from bandcal.dates import compute_window, weekend_nights
from bandcal.grid import build_month_grids, group_by_month, group_by_weeks


def test_single_friday_lands_in_friday_column():
    rows = group_by_weeks(["2024-03-01"])

    assert rows == [[None, None, None, None, None, "2024-03-01", None]]


def test_full_month_rows_are_seven_wide_and_reproduce_input():
    march = [f"2024-03-{day:02d}" for day in range(1, 32)]
    rows = group_by_weeks(march)

    assert all(len(row) == 7 for row in rows)
    assert [cell for row in rows for cell in row if cell is not None] == march
    # Mar 1 2024 is a Friday, Mar 31 a Sunday
    assert rows[0][:5] == [None] * 5
    assert rows[-1] == ["2024-03-31", None, None, None, None, None, None]
    assert len(rows) == 6


def test_sparse_dates_pad_the_gaps():
    fridays_and_sundays = ["2024-03-01", "2024-03-03", "2024-03-08"]
    rows = group_by_weeks(fridays_and_sundays)

    assert rows == [
        [None, None, None, None, None, "2024-03-01", None],
        ["2024-03-03", None, None, None, None, "2024-03-08", None],
    ]


def test_group_by_weeks_normalizes_input():
    assert group_by_weeks(["2024-03-02T00:00:00Z"]) == [
        [None, None, None, None, None, None, "2024-03-02"]
    ]


def test_group_by_weeks_empty():
    assert group_by_weeks([]) == []


def test_group_by_month_is_chronological():
    window = compute_window(date(2024, 1, 15))
    grouped = group_by_month(window)

    assert list(grouped) == ["2024-01", "2024-02", "2024-03", "2024-04", "2024-05", "2024-06", "2024-07"]
    assert grouped["2024-02"][-1] == "2024-02-29"
    assert sum(len(dates) for dates in grouped.values()) == len(window)


def test_build_month_grids_labels_each_month():
    dates = weekend_nights([f"2024-03-{day:02d}" for day in range(1, 32)] + ["2024-04-05"])
    grids = build_month_grids(dates)

    assert [grid.key for grid in grids] == ["2024-03", "2024-04"]
    assert grids[0].label == "March 2024"
    assert grids[1].weeks == [[None, None, None, None, None, "2024-04-05", None]]

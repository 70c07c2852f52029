from dataclasses import dataclass
from datetime import date, time

import pytest

from fieldops.services.calendar import build_calendar, check_range


@dataclass
class Job:
    intervention_code: str
    scheduled_date: date
    scheduled_start_time: time
    scheduled_end_time: time


def codes(cell):
    return [i.intervention_code for i in cell.interventions]


def test_month_view_has_one_cell_per_day_including_empty_ones():
    cells = build_calendar(date(2024, 6, 1), date(2024, 6, 30), [], "month")
    assert len(cells) == 30
    assert cells[0].date == date(2024, 6, 1)
    assert cells[-1].date == date(2024, 6, 30)
    assert all(c.hour is None and c.interventions == [] for c in cells)


def test_cells_are_ordered_by_start_then_code():
    jobs = [
        Job("INT-B", date(2024, 6, 1), time(9, 0), time(10, 0)),
        Job("INT-C", date(2024, 6, 1), time(7, 0), time(8, 0)),
        Job("INT-A", date(2024, 6, 1), time(9, 0), time(11, 0)),
    ]
    cells = build_calendar(date(2024, 6, 1), date(2024, 6, 1), jobs, "week")
    assert codes(cells[0]) == ["INT-C", "INT-A", "INT-B"]


def test_overnight_job_lands_in_both_days():
    night = Job("INT-N", date(2024, 6, 1), time(22, 0), time(2, 0))
    cells = build_calendar(date(2024, 6, 1), date(2024, 6, 3), [night], "week")
    assert [codes(c) for c in cells] == [["INT-N"], ["INT-N"], []]


def test_overnight_job_from_the_day_before_the_range_is_included():
    night = Job("INT-N", date(2024, 5, 31), time(22, 0), time(2, 0))
    cells = build_calendar(date(2024, 6, 1), date(2024, 6, 1), [night], "month")
    assert codes(cells[0]) == ["INT-N"]


def test_day_view_has_hourly_cells():
    job = Job("INT-1", date(2024, 6, 1), time(8, 30), time(10, 0))
    cells = build_calendar(date(2024, 6, 1), date(2024, 6, 1), [job], "day")

    assert len(cells) == 24
    assert [c.hour for c in cells] == list(range(24))
    assert [c.hour for c in cells if c.interventions] == [8, 9]


def test_day_view_overnight_wraps_into_next_day_hours():
    job = Job("INT-N", date(2024, 6, 1), time(23, 0), time(1, 0))
    cells = build_calendar(date(2024, 6, 1), date(2024, 6, 2), [job], "day")
    assert [(c.date.day, c.hour) for c in cells if c.interventions] == [(1, 23), (2, 0)]


def test_jobs_outside_the_range_are_ignored():
    job = Job("INT-1", date(2024, 7, 1), time(8, 0), time(9, 0))
    cells = build_calendar(date(2024, 6, 1), date(2024, 6, 7), [job], "week")
    assert not any(c.interventions for c in cells)


def test_invalid_ranges_and_views_are_rejected():
    with pytest.raises(ValueError):
        build_calendar(date(2024, 6, 2), date(2024, 6, 1), [], "month")
    with pytest.raises(ValueError):
        build_calendar(date(2024, 6, 1), date(2024, 9, 1), [], "month", max_days=62)
    with pytest.raises(ValueError):
        build_calendar(date(2024, 6, 1), date(2024, 6, 1), [], "year")


def test_check_range_counts_inclusive_days():
    assert check_range(date(2024, 6, 1), date(2024, 6, 1)) == 1
    assert check_range(date(2024, 6, 1), date(2024, 8, 1), max_days=62) == 62
    with pytest.raises(ValueError):
        check_range(date(2024, 6, 1), date(2024, 8, 2), max_days=62)

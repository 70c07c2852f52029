"""
Scheduling calendar builder.
Buckets interventions into day cells (month/week views) or hourly cells
(day view) using each intervention's site-local scheduled window.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, List, Optional, Sequence, Tuple

VIEWS = ("month", "week", "day")


@dataclass
class CalendarCell:
    date: date
    start: datetime  # site-local, naive
    end: datetime
    hour: Any = None  # 0-23 in day view
    interventions: List[Any] = field(default_factory=list)


def local_window(item) -> Tuple[datetime, datetime]:
    """Scheduled window in site-local wall time; an end not after the start wraps to the next day."""
    start = datetime.combine(item.scheduled_date, item.scheduled_start_time)
    end_date = item.scheduled_date
    if item.scheduled_end_time <= item.scheduled_start_time:
        end_date = end_date + timedelta(days=1)
    return start, datetime.combine(end_date, item.scheduled_end_time)


def check_range(start_date: date, end_date: date, view: str = "month", max_days: Optional[int] = None) -> int:
    """Reject unknown views and reversed or over-long ranges. Returns the number of days."""
    if view not in VIEWS:
        raise ValueError(f"Unknown calendar view: {view}")
    if end_date < start_date:
        raise ValueError("end_date must not be before start_date")
    days = (end_date - start_date).days + 1
    if max_days is not None and days > max_days:
        raise ValueError(f"Calendar range cannot exceed {max_days} days")
    return days


def build_calendar(
    start_date: date,
    end_date: date,
    interventions: Sequence[Any],
    view: str = "month",
    max_days: Optional[int] = None,
) -> List[CalendarCell]:
    """
    Args:
        start_date: First day of the range (inclusive)
        end_date: Last day of the range (inclusive)
        interventions: Objects with scheduled_date, scheduled_start_time,
            scheduled_end_time and intervention_code
        view: month|week|day
        max_days: Longest accepted range

    Returns:
        Every cell in the range, empty ones included, each holding the
        interventions whose window overlaps it ordered by start then code.
    """
    check_range(start_date, end_date, view, max_days)

    step = timedelta(hours=1) if view == "day" else timedelta(days=1)
    origin = datetime.combine(start_date, time.min)
    limit = datetime.combine(end_date + timedelta(days=1), time.min)
    count = (limit - origin) // step

    cells = []
    for i in range(count):
        cell_start = origin + i * step
        cells.append(CalendarCell(
            date=cell_start.date(),
            start=cell_start,
            end=cell_start + step,
            hour=cell_start.hour if view == "day" else None,
        ))

    windows = sorted(
        ((local_window(item), item) for item in interventions),
        key=lambda pair: (pair[0][0], pair[1].intervention_code or ""),
    )
    for (start, end), item in windows:
        if end <= origin or start >= limit:
            continue
        first = max((start - origin) // step, 0)
        # end is exclusive
        last = min((end - origin - timedelta(microseconds=1)) // step, count - 1)
        for i in range(first, last + 1):
            cells[i].interventions.append(item)
    return cells

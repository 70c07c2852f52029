"""
Shift ledger.
Owns attendance records: clock-in/out, breaks, heartbeats, and the derived
daily summary. One open (active or paused) shift per agent.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple
import uuid

import structlog
from sqlalchemy.orm import Session

from ..models.models import Shift, ShiftBreak
from .clock import Clock
from .errors import (
    InvalidShiftState,
    NotFound,
    ShiftAlreadyOpen,
    commit_or_raise,
)
from .time_rules import day_bounds_utc, local_today, whole_minutes

logger = structlog.get_logger(__name__)

OPEN_STATES = ("active", "paused")
BREAK_REASONS = ("break", "lunch", "meeting", "personal", "other")


@dataclass
class DailySummary:
    date: date
    total_shifts: int = 0
    total_hours_worked: float = 0.0
    total_break_minutes: int = 0
    net_work_minutes: int = 0
    current_status: str = "off"  # on_shift|on_break|off
    shifts: List[Shift] = field(default_factory=list)


def get_shift(db: Session, shift_id: uuid.UUID) -> Shift:
    shift = db.query(Shift).filter(Shift.id == shift_id).populate_existing().first()
    if not shift:
        raise NotFound("Shift not found")
    return shift


def find_open_shift(db: Session, agent_id: uuid.UUID, at: Optional[datetime] = None) -> Optional[Shift]:
    """
    The agent's open shift, re-read from the database.
    With `at`, only a shift that had already started at that instant matches.
    """
    query = db.query(Shift).filter(
        Shift.agent_id == agent_id,
        Shift.status.in_(OPEN_STATES),
    )
    if at is not None:
        query = query.filter(Shift.clock_in <= at)
    return query.order_by(Shift.clock_in.desc()).populate_existing().first()


def open_shift(
    db: Session,
    clock: Clock,
    agent_id: uuid.UUID,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    notes: Optional[str] = None,
    device_id: Optional[str] = None,
) -> Shift:
    """
    Add a new active shift to the session without committing.
    Used directly by callers that commit it together with other writes.
    """
    if find_open_shift(db, agent_id) is not None:
        raise ShiftAlreadyOpen()

    now = clock.now()
    shift = Shift(
        agent_id=agent_id,
        status="active",
        clock_in=now,
        last_heartbeat=now,
        device_id=device_id,
        notes=notes,
        clock_in_lat=lat if lat is not None and lng is not None else None,
        clock_in_lng=lng if lat is not None and lng is not None else None,
        break_minutes=0,
        forced_clock_out=False,
    )
    db.add(shift)
    return shift


def clock_in(
    db: Session,
    clock: Clock,
    agent_id: uuid.UUID,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    notes: Optional[str] = None,
    device_id: Optional[str] = None,
) -> Shift:
    shift = open_shift(db, clock, agent_id, lat=lat, lng=lng, notes=notes, device_id=device_id)
    commit_or_raise(db, on_integrity_error=ShiftAlreadyOpen())
    db.refresh(shift)
    logger.info("shift_clocked_in", shift_id=str(shift.id), agent_id=str(agent_id), clock_in=shift.clock_in.isoformat())
    return shift


def close_open_break(shift: Shift, at: datetime) -> Optional[ShiftBreak]:
    """Close the open break at `at` and fold its duration into the shift's break total."""
    open_break = shift.open_break
    if open_break is None:
        return None
    open_break.break_end = max(at, open_break.break_start)
    open_break.duration_minutes = whole_minutes(open_break.break_start, open_break.break_end)
    shift.break_minutes = (shift.break_minutes or 0) + open_break.duration_minutes
    return open_break


def close_shift(shift: Shift, at: datetime, forced: bool = False) -> Shift:
    """Mark a shift completed at `at`, closing any open break first."""
    close_open_break(shift, at)
    shift.clock_out = at
    shift.status = "completed"
    shift.forced_clock_out = forced
    worked = max(whole_minutes(shift.clock_in, at) - (shift.break_minutes or 0), 0)
    shift.hours_worked = round(worked / 60, 2)
    return shift


def clock_out(
    db: Session,
    clock: Clock,
    shift_id: uuid.UUID,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    notes: Optional[str] = None,
) -> Shift:
    shift = get_shift(db, shift_id)
    if shift.status not in OPEN_STATES:
        raise InvalidShiftState("No active shift found. Please clock in first.")

    close_shift(shift, clock.now())
    if lat is not None and lng is not None:
        shift.clock_out_lat = lat
        shift.clock_out_lng = lng
    if notes:
        shift.notes = f"{shift.notes}\n{notes}" if shift.notes else notes

    commit_or_raise(db)
    db.refresh(shift)
    logger.info(
        "shift_clocked_out",
        shift_id=str(shift.id),
        agent_id=str(shift.agent_id),
        hours_worked=float(shift.hours_worked or 0),
        break_minutes=shift.break_minutes,
    )
    return shift


def pause(
    db: Session,
    clock: Clock,
    shift_id: uuid.UUID,
    reason: str = "break",
    notes: Optional[str] = None,
) -> Shift:
    """Start a break. Only an active shift can be paused."""
    shift = get_shift(db, shift_id)
    if shift.status != "active":
        raise InvalidShiftState("Only an active shift can be paused")
    if shift.open_break is not None:
        raise InvalidShiftState("A break is already in progress")
    if reason not in BREAK_REASONS:
        reason = "other"

    now = clock.now()
    shift.breaks.append(ShiftBreak(break_start=now, break_type="manual", reason=reason, notes=notes))
    shift.status = "paused"
    # A pause is a signal from the device too
    shift.last_heartbeat = now

    commit_or_raise(db)
    db.refresh(shift)
    logger.info("shift_paused", shift_id=str(shift.id), agent_id=str(shift.agent_id), reason=reason)
    return shift


def resume(
    db: Session,
    clock: Clock,
    shift_id: uuid.UUID,
    notes: Optional[str] = None,
) -> Shift:
    """End the open break. Only a paused shift can be resumed."""
    shift = get_shift(db, shift_id)
    if shift.status != "paused":
        raise InvalidShiftState("Only a paused shift can be resumed")

    now = clock.now()
    closed = close_open_break(shift, now)
    if closed is not None and notes:
        closed.notes = f"{closed.notes}\n{notes}" if closed.notes else notes
    shift.status = "active"
    shift.last_heartbeat = now

    commit_or_raise(db)
    db.refresh(shift)
    logger.info(
        "shift_resumed",
        shift_id=str(shift.id),
        agent_id=str(shift.agent_id),
        break_minutes=shift.break_minutes,
    )
    return shift


def heartbeat(
    db: Session,
    clock: Clock,
    shift_id: uuid.UUID,
    device_id: Optional[str] = None,
) -> Shift:
    """Record a liveness signal. Never changes the shift's state."""
    shift = get_shift(db, shift_id)
    if shift.status not in OPEN_STATES:
        raise InvalidShiftState("Shift is already closed")

    shift.last_heartbeat = clock.now()
    if device_id:
        shift.device_id = device_id

    commit_or_raise(db)
    db.refresh(shift)
    logger.debug("shift_heartbeat", shift_id=str(shift.id), agent_id=str(shift.agent_id))
    return shift


def _shift_minutes(shift: Shift, now: datetime) -> Tuple[int, int]:
    """(gross minutes, break minutes), counting an open shift and an open break up to now."""
    end = shift.clock_out or now
    break_minutes = shift.break_minutes or 0
    open_break = shift.open_break
    if shift.status != "completed" and open_break is not None:
        break_minutes += whole_minutes(open_break.break_start, now)
    return whole_minutes(shift.clock_in, end), break_minutes


def shifts_for_day(db: Session, agent_id: uuid.UUID, day: date, timezone_str: Optional[str] = None) -> List[Shift]:
    start, end = day_bounds_utc(day, timezone_str)
    return (
        db.query(Shift)
        .filter(Shift.agent_id == agent_id, Shift.clock_in >= start, Shift.clock_in < end)
        .order_by(Shift.clock_in.asc())
        .all()
    )


def daily_summary(
    db: Session,
    clock: Clock,
    agent_id: uuid.UUID,
    day: Optional[date] = None,
    timezone_str: Optional[str] = None,
) -> DailySummary:
    now = clock.now()
    day = day or local_today(now, timezone_str)
    shifts = shifts_for_day(db, agent_id, day, timezone_str)

    summary = DailySummary(date=day, total_shifts=len(shifts), shifts=shifts)
    for shift in shifts:
        gross, breaks = _shift_minutes(shift, now)
        summary.total_break_minutes += breaks
        summary.net_work_minutes += max(gross - breaks, 0)
    summary.total_hours_worked = round(summary.net_work_minutes / 60, 2)

    statuses = {s.status for s in shifts}
    if "paused" in statuses:
        summary.current_status = "on_break"
    elif "active" in statuses:
        summary.current_status = "on_shift"
    return summary


def get_shift_status(db: Session, agent_id: uuid.UUID) -> Tuple[bool, Optional[Shift]]:
    current = find_open_shift(db, agent_id)
    return current is not None, current


def get_history(
    db: Session,
    agent_id: uuid.UUID,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    timezone_str: Optional[str] = None,
) -> List[Shift]:
    query = db.query(Shift).filter(Shift.agent_id == agent_id)
    if start_date:
        query = query.filter(Shift.clock_in >= day_bounds_utc(start_date, timezone_str)[0])
    if end_date:
        query = query.filter(Shift.clock_in < day_bounds_utc(end_date, timezone_str)[1])
    return query.order_by(Shift.clock_in.desc()).all()


def get_today(db: Session, clock: Clock, agent_id: uuid.UUID, timezone_str: Optional[str] = None) -> List[Shift]:
    return shifts_for_day(db, agent_id, local_today(clock.now(), timezone_str), timezone_str)


def weekly_hours(db: Session, clock: Clock, agent_id: uuid.UUID, timezone_str: Optional[str] = None) -> float:
    """Hours worked on closed shifts since the start of the week (Sunday)."""
    today = local_today(clock.now(), timezone_str)
    # date.weekday(): Monday=0 ... Sunday=6
    week_start = today - timedelta(days=(today.weekday() + 1) % 7)
    start = day_bounds_utc(week_start, timezone_str)[0]
    end = day_bounds_utc(week_start + timedelta(days=6), timezone_str)[1]
    shifts = (
        db.query(Shift)
        .filter(
            Shift.agent_id == agent_id,
            Shift.status == "completed",
            Shift.clock_in >= start,
            Shift.clock_in < end,
        )
        .all()
    )
    return round(sum(float(s.hours_worked or 0) for s in shifts), 2)

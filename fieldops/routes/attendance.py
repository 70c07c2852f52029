"""
Attendance API routes.
Clock-in/out, breaks and heartbeats act on the caller's own open shift.
"""
from datetime import date
from typing import List, Optional
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_roles
from ..db import get_db
from ..models.models import Shift, User
from ..schemas.attendance import (
    ClockInRequest,
    ClockOutRequest,
    DailySummaryResponse,
    HeartbeatRequest,
    HeartbeatResponse,
    PauseShiftRequest,
    ResumeShiftRequest,
    ShiftResponse,
    ShiftStatusResponse,
    SweepReportResponse,
    WeeklyHoursResponse,
)
from ..services import shift_ledger as ledger
from ..services.clock import Clock, get_clock
from ..services.errors import InvalidShiftState
from ..services.idle_monitor import sweep
from ..services.permissions import is_supervisor

router = APIRouter(prefix="/attendance", tags=["attendance"])


def _own_open_shift(db: Session, user: User) -> Shift:
    shift = ledger.find_open_shift(db, user.id)
    if shift is None:
        raise InvalidShiftState("No active shift found. Please clock in first.")
    return shift


@router.post("/clock-in", response_model=ShiftResponse)
def clock_in(
    payload: Optional[ClockInRequest] = None,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    payload = payload or ClockInRequest()
    return ledger.clock_in(
        db,
        clock,
        user.id,
        lat=payload.latitude,
        lng=payload.longitude,
        notes=payload.notes,
        device_id=payload.device_id,
    )


@router.post("/clock-out", response_model=ShiftResponse)
def clock_out(
    payload: Optional[ClockOutRequest] = None,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    payload = payload or ClockOutRequest()
    shift = _own_open_shift(db, user)
    return ledger.clock_out(db, clock, shift.id, lat=payload.latitude, lng=payload.longitude, notes=payload.notes)


@router.post("/pause", response_model=ShiftResponse)
def pause_shift(
    payload: Optional[PauseShiftRequest] = None,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    payload = payload or PauseShiftRequest()
    shift = _own_open_shift(db, user)
    return ledger.pause(db, clock, shift.id, reason=payload.reason.value, notes=payload.notes)


@router.post("/resume", response_model=ShiftResponse)
def resume_shift(
    payload: Optional[ResumeShiftRequest] = None,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    notes = payload.notes if payload else None
    shift = _own_open_shift(db, user)
    return ledger.resume(db, clock, shift.id, notes=notes)


@router.post("/heartbeat", response_model=HeartbeatResponse)
def heartbeat(
    payload: Optional[HeartbeatRequest] = None,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    device_id = payload.device_id if payload else None
    shift = _own_open_shift(db, user)
    return {"success": True, "shift": ledger.heartbeat(db, clock, shift.id, device_id=device_id)}


@router.get("/status", response_model=ShiftStatusResponse)
def shift_status(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    is_on_shift, current = ledger.get_shift_status(db, user.id)
    return {"is_on_shift": is_on_shift, "current_shift": current}


@router.get("/daily-summary", response_model=DailySummaryResponse)
def daily_summary(
    day: Optional[date] = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    return DailySummaryResponse.model_validate(ledger.daily_summary(db, clock, user.id, day=day))


@router.get("/agents/{agent_id}/daily-summary", response_model=DailySummaryResponse)
def agent_daily_summary(
    agent_id: uuid.UUID,
    day: Optional[date] = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    if not is_supervisor(user) and agent_id != user.id:
        raise HTTPException(status_code=403, detail="Only supervisors can view other agents' attendance")
    return DailySummaryResponse.model_validate(ledger.daily_summary(db, clock, agent_id, day=day))


@router.get("/history", response_model=List[ShiftResponse])
def history(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return ledger.get_history(db, user.id, start_date=start_date, end_date=end_date)


@router.get("/today", response_model=List[ShiftResponse])
def today(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    return ledger.get_today(db, clock, user.id)


@router.get("/weekly-hours", response_model=WeeklyHoursResponse)
def weekly_hours(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    return {"hours": ledger.weekly_hours(db, clock, user.id)}


@router.post("/idle-sweep", response_model=SweepReportResponse)
def idle_sweep(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(require_roles("admin", "super_admin")),
):
    """Run the auto clock-out sweep now instead of waiting for the scheduler."""
    return SweepReportResponse.model_validate(sweep(db, clock))

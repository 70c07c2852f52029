import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from enum import Enum

from pydantic import BaseModel, Field


class ShiftStatus(str, Enum):
    active = "active"
    paused = "paused"
    completed = "completed"


class BreakReason(str, Enum):
    break_ = "break"
    lunch = "lunch"
    meeting = "meeting"
    personal = "personal"
    other = "other"


class ClockInRequest(BaseModel):
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    notes: Optional[str] = None
    device_id: Optional[str] = None


class ClockOutRequest(BaseModel):
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    notes: Optional[str] = None


class PauseShiftRequest(BaseModel):
    reason: BreakReason = BreakReason.break_
    notes: Optional[str] = None


class ResumeShiftRequest(BaseModel):
    notes: Optional[str] = None


class HeartbeatRequest(BaseModel):
    device_id: Optional[str] = None


class ShiftBreakResponse(BaseModel):
    id: uuid.UUID
    break_start: datetime
    break_end: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    break_type: str
    reason: Optional[str] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class ShiftResponse(BaseModel):
    id: uuid.UUID
    agent_id: uuid.UUID
    status: ShiftStatus
    clock_in: datetime
    clock_out: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None
    device_id: Optional[str] = None
    break_minutes: int = 0
    hours_worked: Optional[float] = None
    forced_clock_out: bool = False
    notes: Optional[str] = None
    breaks: List[ShiftBreakResponse] = Field(default_factory=list)
    version: int

    class Config:
        from_attributes = True


class ShiftStatusResponse(BaseModel):
    is_on_shift: bool
    current_shift: Optional[ShiftResponse] = None


class HeartbeatResponse(BaseModel):
    success: bool = True
    shift: ShiftResponse


class DailySummaryResponse(BaseModel):
    date: date
    total_shifts: int
    total_hours_worked: float
    total_break_minutes: int
    net_work_minutes: int
    current_status: str  # on_shift|on_break|off
    shifts: List[ShiftResponse] = Field(default_factory=list)

    class Config:
        from_attributes = True


class WeeklyHoursResponse(BaseModel):
    hours: float


class SweepReportResponse(BaseModel):
    started_at: datetime
    checked: int
    closed: List[uuid.UUID]
    skipped: List[uuid.UUID]
    failures: List[Dict[str, Any]]

    class Config:
        from_attributes = True

import uuid
from datetime import date, datetime, time
from typing import List, Optional
from enum import Enum

from pydantic import BaseModel, Field, ValidationInfo, field_validator


class InterventionStatus(str, Enum):
    scheduled = "SCHEDULED"
    in_progress = "IN_PROGRESS"
    completed = "COMPLETED"
    cancelled = "CANCELLED"
    rescheduled = "RESCHEDULED"


class CalendarView(str, Enum):
    month = "month"
    week = "week"
    day = "day"


class InterventionCreate(BaseModel):
    intervention_code: Optional[str] = None  # Generated (INT-YYYY-NNNNN) when omitted
    contract_id: Optional[uuid.UUID] = None
    site_id: uuid.UUID
    scheduled_date: date
    scheduled_start_time: time
    scheduled_end_time: time  # An end before the start runs past midnight
    assigned_agent_ids: List[uuid.UUID] = Field(default_factory=list)
    assigned_team_chief_id: Optional[uuid.UUID] = None
    assigned_zone_chief_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None

    @field_validator("scheduled_end_time")
    @classmethod
    def end_differs_from_start(cls, v, info: ValidationInfo):
        start = info.data.get("scheduled_start_time")
        if start is not None and v == start:
            raise ValueError("scheduled_end_time must differ from scheduled_start_time")
        return v

    @field_validator("intervention_code", "notes", mode="before")
    @classmethod
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class InterventionUpdate(BaseModel):
    contract_id: Optional[uuid.UUID] = None
    assigned_agent_ids: Optional[List[uuid.UUID]] = None
    assigned_team_chief_id: Optional[uuid.UUID] = None
    assigned_zone_chief_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None


class StartInterventionRequest(BaseModel):
    agent_id: Optional[uuid.UUID] = None  # Supervisors only: start on behalf of an assigned agent


class GpsCheckpointRequest(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0)  # meters


class CancelInterventionRequest(BaseModel):
    reason: Optional[str] = None


class RescheduleInterventionRequest(BaseModel):
    new_date: date
    new_start_time: Optional[time] = None
    new_end_time: Optional[time] = None
    reason: Optional[str] = None


class PhotoRequest(BaseModel):
    photo_url: str = Field(min_length=1)


class NoteRequest(BaseModel):
    note: str = Field(min_length=1)


class RatingRequest(BaseModel):
    quality_score: Optional[int] = Field(default=None, ge=0, le=100)
    client_rating: Optional[int] = Field(default=None, ge=1, le=5)
    client_feedback: Optional[str] = None


class SiteSummary(BaseModel):
    id: uuid.UUID
    name: str
    address: Optional[str] = None
    timezone: Optional[str] = None

    class Config:
        from_attributes = True


class InterventionResponse(BaseModel):
    id: uuid.UUID
    intervention_code: str
    contract_id: Optional[uuid.UUID] = None
    site_id: uuid.UUID
    site: Optional[SiteSummary] = None
    scheduled_date: date
    scheduled_start_time: time
    scheduled_end_time: time
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    status: InterventionStatus
    assigned_agent_ids: List[uuid.UUID] = Field(default_factory=list)
    assigned_team_chief_id: Optional[uuid.UUID] = None
    assigned_zone_chief_id: Optional[uuid.UUID] = None
    gps_check_in_lat: Optional[float] = None
    gps_check_in_lng: Optional[float] = None
    gps_check_in_accuracy_m: Optional[float] = None
    gps_check_in_time: Optional[datetime] = None
    gps_check_out_lat: Optional[float] = None
    gps_check_out_lng: Optional[float] = None
    gps_check_out_accuracy_m: Optional[float] = None
    gps_check_out_time: Optional[datetime] = None
    photo_urls: List[str] = Field(default_factory=list)
    quality_score: Optional[int] = None
    client_rating: Optional[int] = None
    client_feedback: Optional[str] = None
    notes: Optional[str] = None
    rescheduled_from_id: Optional[uuid.UUID] = None
    reschedule_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    archived_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    version: int

    @field_validator("photo_urls", mode="before")
    @classmethod
    def none_to_list(cls, v):
        return v or []

    class Config:
        from_attributes = True


class PaginatedInterventions(BaseModel):
    data: List[InterventionResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class CalendarCellResponse(BaseModel):
    date: date
    hour: Optional[int] = None
    start: datetime  # Site-local wall time
    end: datetime
    interventions: List[InterventionResponse] = Field(default_factory=list)

    class Config:
        from_attributes = True


class CalendarResponse(BaseModel):
    start_date: date
    end_date: date
    view: CalendarView
    cells: List[CalendarCellResponse]

"""
Intervention API routes.
Scheduling, field execution (start, GPS check-in/out, complete) and history.
"""
from datetime import date
from typing import Optional
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..db import get_db
from ..models.models import User
from ..schemas.interventions import (
    CancelInterventionRequest,
    GpsCheckpointRequest,
    InterventionCreate,
    InterventionResponse,
    InterventionStatus,
    InterventionUpdate,
    NoteRequest,
    PaginatedInterventions,
    PhotoRequest,
    RatingRequest,
    RescheduleInterventionRequest,
    StartInterventionRequest,
)
from ..services import interventions as svc
from ..services.clock import Clock, get_clock
from ..services.geofence import GpsPoint
from ..services.permissions import can_manage_interventions, can_work_intervention

router = APIRouter(prefix="/interventions", tags=["interventions"])


def _gps(payload: GpsCheckpointRequest) -> GpsPoint:
    return GpsPoint(lat=payload.latitude, lng=payload.longitude, accuracy_m=payload.accuracy)


@router.post("", response_model=InterventionResponse, status_code=status.HTTP_201_CREATED)
def create_intervention(
    payload: InterventionCreate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    if not can_manage_interventions(user):
        raise HTTPException(status_code=403, detail="Only supervisors can schedule interventions")
    return svc.create_intervention(db, clock, created_by=user.id, **payload.dict())


@router.get("", response_model=PaginatedInterventions)
def list_interventions(
    site_id: Optional[uuid.UUID] = None,
    contract_id: Optional[uuid.UUID] = None,
    status_filter: Optional[InterventionStatus] = Query(default=None, alias="status"),
    agent_id: Optional[uuid.UUID] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    include_archived: bool = False,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    # Agents only see their own assignments
    if not can_manage_interventions(user):
        agent_id = user.id
    items, total = svc.list_interventions(
        db,
        site_id=site_id,
        contract_id=contract_id,
        status=status_filter.value if status_filter else None,
        agent_id=agent_id,
        start_date=start_date,
        end_date=end_date,
        include_archived=include_archived,
        page=page,
        limit=limit,
    )
    return {
        "data": items,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
    }


@router.get("/{intervention_id}", response_model=InterventionResponse)
def get_intervention(
    intervention_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    intervention = svc.get_intervention(db, intervention_id)
    if not can_work_intervention(user, intervention):
        raise HTTPException(status_code=403, detail="You do not have access to this intervention")
    return intervention


@router.patch("/{intervention_id}", response_model=InterventionResponse)
def update_intervention(
    intervention_id: uuid.UUID,
    payload: InterventionUpdate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    return svc.update_intervention(db, clock, intervention_id, user, payload.dict(exclude_unset=True))


@router.delete("/{intervention_id}", response_model=InterventionResponse)
def archive_intervention(
    intervention_id: uuid.UUID,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    return svc.archive_intervention(db, clock, intervention_id, user)


@router.post("/{intervention_id}/start", response_model=InterventionResponse)
def start_intervention(
    intervention_id: uuid.UUID,
    payload: Optional[StartInterventionRequest] = None,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    agent_id = payload.agent_id if payload else None
    return svc.start_intervention(db, clock, intervention_id, user, agent_id=agent_id)


@router.post("/{intervention_id}/checkin", response_model=InterventionResponse)
def check_in(
    intervention_id: uuid.UUID,
    payload: GpsCheckpointRequest,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    return svc.check_in(db, clock, intervention_id, user, _gps(payload))


@router.post("/{intervention_id}/checkout", response_model=InterventionResponse)
def check_out(
    intervention_id: uuid.UUID,
    payload: GpsCheckpointRequest,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    return svc.check_out(db, clock, intervention_id, user, _gps(payload))


@router.post("/{intervention_id}/complete", response_model=InterventionResponse)
def complete_intervention(
    intervention_id: uuid.UUID,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    return svc.complete_intervention(db, clock, intervention_id, user)


@router.post("/{intervention_id}/cancel", response_model=InterventionResponse)
def cancel_intervention(
    intervention_id: uuid.UUID,
    payload: Optional[CancelInterventionRequest] = None,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    reason = payload.reason if payload else None
    return svc.cancel_intervention(db, clock, intervention_id, user, reason=reason)


@router.post("/{intervention_id}/reschedule", response_model=InterventionResponse)
def reschedule_intervention(
    intervention_id: uuid.UUID,
    payload: RescheduleInterventionRequest,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    """Returns the new SCHEDULED intervention; the original is kept as RESCHEDULED."""
    _, replacement = svc.reschedule_intervention(
        db,
        clock,
        intervention_id,
        user,
        new_date=payload.new_date,
        new_start_time=payload.new_start_time,
        new_end_time=payload.new_end_time,
        reason=payload.reason,
    )
    return replacement


@router.post("/{intervention_id}/photos", response_model=InterventionResponse)
def add_photo(
    intervention_id: uuid.UUID,
    payload: PhotoRequest,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    return svc.add_photo(db, clock, intervention_id, user, payload.photo_url)


@router.post("/{intervention_id}/notes", response_model=InterventionResponse)
def add_note(
    intervention_id: uuid.UUID,
    payload: NoteRequest,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    return svc.add_note(db, clock, intervention_id, user, payload.note)


@router.post("/{intervention_id}/rating", response_model=InterventionResponse)
def rate_intervention(
    intervention_id: uuid.UUID,
    payload: RatingRequest,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user: User = Depends(get_current_user),
):
    return svc.rate_intervention(
        db,
        clock,
        intervention_id,
        user,
        quality_score=payload.quality_score,
        client_rating=payload.client_rating,
        client_feedback=payload.client_feedback,
    )

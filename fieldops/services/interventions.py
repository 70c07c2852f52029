"""
Intervention lifecycle controller.

State machine for a scheduled cleaning job:

    SCHEDULED --start--> IN_PROGRESS --complete--> COMPLETED
    SCHEDULED --cancel--> CANCELLED <--cancel (supervisor)-- IN_PROGRESS
    SCHEDULED --reschedule--> RESCHEDULED  (+ a new SCHEDULED copy)

GPS check-in/check-out happen while IN_PROGRESS. Every transition re-reads
the rows it depends on and commits through the version column, so a
racing write fails with ConcurrentModification instead of overwriting.
"""
from datetime import date, datetime, time, timedelta
from typing import Iterable, List, Optional, Tuple
import uuid

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Intervention, Site, User, intervention_agents
from .clock import Clock
from .errors import (
    ConcurrentActiveJob,
    DuplicateCheckpoint,
    FieldOpsError,
    GpsOutOfRange,
    InvalidShiftState,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    commit_or_raise,
)
from .geofence import GpsPoint, validate_checkpoint
from .notifications import send_intervention_notification
from .permissions import (
    can_cancel_in_progress,
    can_manage_interventions,
    can_work_intervention,
    is_assigned,
    is_supervisor,
    role_names,
)
from .shift_ledger import find_open_shift, open_shift
from .time_rules import combine_date_time

logger = structlog.get_logger(__name__)

SCHEDULED = "SCHEDULED"
IN_PROGRESS = "IN_PROGRESS"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"
RESCHEDULED = "RESCHEDULED"

STATUSES = (SCHEDULED, IN_PROGRESS, COMPLETED, CANCELLED, RESCHEDULED)
TERMINAL_STATUSES = (COMPLETED, CANCELLED, RESCHEDULED)


# Lookups

def get_intervention(db: Session, intervention_id: uuid.UUID) -> Intervention:
    intervention = (
        db.query(Intervention)
        .filter(Intervention.id == intervention_id)
        .populate_existing()
        .first()
    )
    if not intervention:
        raise NotFound("Intervention not found")
    return intervention


def site_timezone(site: Optional[Site]) -> str:
    return (site.timezone if site and site.timezone else None) or settings.tz_default


def scheduled_start_utc(intervention: Intervention) -> datetime:
    return combine_date_time(
        intervention.scheduled_date,
        intervention.scheduled_start_time,
        site_timezone(intervention.site),
    )


def active_interventions_for_agent(
    db: Session,
    agent_id: uuid.UUID,
    exclude_id: Optional[uuid.UUID] = None,
) -> List[Intervention]:
    """IN_PROGRESS interventions the agent is assigned to, re-read from the database."""
    query = (
        db.query(Intervention)
        .join(intervention_agents, intervention_agents.c.intervention_id == Intervention.id)
        .filter(
            intervention_agents.c.agent_id == agent_id,
            Intervention.status == IN_PROGRESS,
        )
    )
    if exclude_id is not None:
        query = query.filter(Intervention.id != exclude_id)
    return query.populate_existing().all()


def generate_intervention_code(db: Session, year: int) -> str:
    """Generate a unique intervention code, e.g. INT-2024-00042"""
    prefix = f"INT-{year}-"
    count = db.query(Intervention).filter(
        Intervention.intervention_code.like(f"{prefix}%")
    ).count()
    seq = count + 1
    code = f"{prefix}{seq:05d}"
    while db.query(Intervention.id).filter(Intervention.intervention_code == code).first():
        seq += 1
        code = f"{prefix}{seq:05d}"
    return code


def _load_users(db: Session, user_ids: Iterable[uuid.UUID]) -> List[User]:
    unique_ids = list(dict.fromkeys(user_ids))
    if not unique_ids:
        return []
    users = db.query(User).filter(User.id.in_(unique_ids)).all()
    found = {u.id for u in users}
    missing = [str(uid) for uid in unique_ids if uid not in found]
    if missing:
        raise NotFound(f"Agent not found: {', '.join(missing)}")
    by_id = {u.id: u for u in users}
    return [by_id[uid] for uid in unique_ids]


def _require_status(intervention: Intervention, action: str, *allowed: str) -> None:
    if intervention.status not in allowed:
        raise InvalidTransition(
            f"Cannot {action} an intervention that is {intervention.status}",
            status=intervention.status,
        )


def _require_not_archived(intervention: Intervention, action: str) -> None:
    if intervention.archived_at is not None:
        raise InvalidTransition(f"Cannot {action} an archived intervention")


def _require_field_access(actor: User, intervention: Intervention) -> None:
    if not can_work_intervention(actor, intervention):
        raise PermissionDenied("You are not assigned to this intervention")


def _touch(intervention: Intervention, now: datetime) -> None:
    intervention.updated_at = now


# Creation and editing

def create_intervention(
    db: Session,
    clock: Clock,
    *,
    site_id: uuid.UUID,
    scheduled_date: date,
    scheduled_start_time: time,
    scheduled_end_time: time,
    assigned_agent_ids: Iterable[uuid.UUID] = (),
    contract_id: Optional[uuid.UUID] = None,
    assigned_team_chief_id: Optional[uuid.UUID] = None,
    assigned_zone_chief_id: Optional[uuid.UUID] = None,
    notes: Optional[str] = None,
    intervention_code: Optional[str] = None,
    created_by: Optional[uuid.UUID] = None,
) -> Intervention:
    """Create a SCHEDULED intervention (called by the scheduler)."""
    site = db.query(Site).filter(Site.id == site_id).first()
    if not site:
        raise NotFound("Site not found")
    agents = _load_users(db, assigned_agent_ids)

    if intervention_code:
        exists = db.query(Intervention.id).filter(Intervention.intervention_code == intervention_code).first()
        if exists:
            raise FieldOpsError(f"Intervention code {intervention_code} already exists")
    else:
        intervention_code = generate_intervention_code(db, scheduled_date.year)

    now = clock.now()
    intervention = Intervention(
        intervention_code=intervention_code,
        contract_id=contract_id,
        site_id=site.id,
        scheduled_date=scheduled_date,
        scheduled_start_time=scheduled_start_time,
        scheduled_end_time=scheduled_end_time,
        status=SCHEDULED,
        assigned_team_chief_id=assigned_team_chief_id,
        assigned_zone_chief_id=assigned_zone_chief_id,
        notes=notes,
        photo_urls=[],
        created_by=created_by,
        created_at=now,
    )
    intervention.agents = agents
    db.add(intervention)
    commit_or_raise(db)
    db.refresh(intervention)

    logger.info(
        "intervention_created",
        intervention_id=str(intervention.id),
        code=intervention.intervention_code,
        site_id=str(site.id),
        scheduled_date=scheduled_date.isoformat(),
        agents=len(agents),
    )
    return intervention


def update_intervention(
    db: Session,
    clock: Clock,
    intervention_id: uuid.UUID,
    actor: User,
    changes: dict,
) -> Intervention:
    """
    Edit assignment and notes of a SCHEDULED intervention.
    Dates and times only change through reschedule.
    """
    if not can_manage_interventions(actor):
        raise PermissionDenied("Only supervisors can edit interventions")
    intervention = get_intervention(db, intervention_id)
    _require_status(intervention, "edit", SCHEDULED)

    if "assigned_agent_ids" in changes:
        intervention.agents = _load_users(db, changes["assigned_agent_ids"] or [])
    for key in ("contract_id", "assigned_team_chief_id", "assigned_zone_chief_id", "notes"):
        if key in changes:
            setattr(intervention, key, changes[key])
    _touch(intervention, clock.now())

    commit_or_raise(db)
    db.refresh(intervention)
    logger.info("intervention_updated", intervention_id=str(intervention.id), fields=sorted(changes))
    return intervention


def archive_intervention(db: Session, clock: Clock, intervention_id: uuid.UUID, actor: User) -> Intervention:
    """Soft delete: hide from lists and calendars, keep the record."""
    if not can_manage_interventions(actor):
        raise PermissionDenied("Only supervisors can archive interventions")
    intervention = get_intervention(db, intervention_id)
    if intervention.status == IN_PROGRESS:
        raise InvalidTransition("Cannot archive an intervention that is in progress")
    if intervention.archived_at is None:
        now = clock.now()
        intervention.archived_at = now
        _touch(intervention, now)
        commit_or_raise(db)
        db.refresh(intervention)
        logger.info("intervention_archived", intervention_id=str(intervention.id))
    return intervention


# Transitions

def start_intervention(
    db: Session,
    clock: Clock,
    intervention_id: uuid.UUID,
    actor: User,
    agent_id: Optional[uuid.UUID] = None,
) -> Intervention:
    """
    SCHEDULED -> IN_PROGRESS.
    Confirms the agent's open shift (or clocks them in) in the same transaction.
    """
    intervention = get_intervention(db, intervention_id)
    _require_status(intervention, "start", SCHEDULED)
    _require_not_archived(intervention, "start")
    _require_field_access(actor, intervention)

    agent_id = agent_id or actor.id
    if agent_id != actor.id and not is_supervisor(actor):
        raise PermissionDenied("Only supervisors can start an intervention for another agent")
    if not is_assigned(agent_id, intervention):
        raise PermissionDenied("Agent is not assigned to this intervention")

    now = clock.now()
    earliest = scheduled_start_utc(intervention) - timedelta(minutes=settings.early_start_window_min)
    if now < earliest:
        raise InvalidTransition(
            f"Intervention cannot be started before {earliest.isoformat()}",
            earliest=earliest.isoformat(),
        )

    shift = find_open_shift(db, agent_id)
    if shift is None:
        shift = open_shift(db, clock, agent_id)
        logger.info("shift_opened_by_intervention", intervention_id=str(intervention.id), agent_id=str(agent_id))
    elif shift.status == "paused":
        raise InvalidShiftState("Resume your shift before starting an intervention")
    else:
        # Writing the shared shift row serializes concurrent starts for the same agent
        shift.last_heartbeat = now

    # Re-read the agent's running jobs right before committing
    if active_interventions_for_agent(db, agent_id, exclude_id=intervention.id):
        db.rollback()
        raise ConcurrentActiveJob()

    intervention.status = IN_PROGRESS
    intervention.actual_start_time = now
    intervention.started_by = agent_id
    _touch(intervention, now)
    send_intervention_notification(db, intervention, "started")

    commit_or_raise(db)
    db.refresh(intervention)
    logger.info(
        "intervention_started",
        intervention_id=str(intervention.id),
        code=intervention.intervention_code,
        agent_id=str(agent_id),
        shift_id=str(shift.id),
    )
    return intervention


def _validate_against_site(intervention: Intervention, point: GpsPoint, action: str):
    site = intervention.site
    if site is None or site.lat is None or site.lng is None:
        raise GpsOutOfRange("The site has no registered location to check in against")
    result = validate_checkpoint(point, float(site.lat), float(site.lng), site.radius_m)
    if not result.accepted:
        logger.info(
            "gps_checkpoint_rejected",
            intervention_id=str(intervention.id),
            action=action,
            distance_m=round(result.distance_m, 1),
            allowed_m=round(result.allowed_m, 1),
        )
        raise GpsOutOfRange(
            f"You are too far from the site to {action} "
            f"({result.distance_m:.0f} m away, {result.allowed_m:.0f} m allowed)",
            distance_m=result.distance_m,
            allowed_m=result.allowed_m,
        )
    return result


def check_in(
    db: Session,
    clock: Clock,
    intervention_id: uuid.UUID,
    actor: User,
    point: GpsPoint,
) -> Intervention:
    intervention = get_intervention(db, intervention_id)
    _require_status(intervention, "check in to", IN_PROGRESS)
    _require_field_access(actor, intervention)
    if intervention.gps_check_in_time is not None:
        raise DuplicateCheckpoint("Check-in has already been recorded")

    result = _validate_against_site(intervention, point, "check in")

    now = clock.now()
    intervention.gps_check_in_lat = point.lat
    intervention.gps_check_in_lng = point.lng
    intervention.gps_check_in_accuracy_m = point.accuracy_m
    intervention.gps_check_in_time = now
    _touch(intervention, now)

    commit_or_raise(db)
    db.refresh(intervention)
    logger.info(
        "intervention_checked_in",
        intervention_id=str(intervention.id),
        distance_m=round(result.distance_m, 1),
        gps_risk=result.is_risk,
    )
    return intervention


def check_out(
    db: Session,
    clock: Clock,
    intervention_id: uuid.UUID,
    actor: User,
    point: GpsPoint,
) -> Intervention:
    intervention = get_intervention(db, intervention_id)
    _require_status(intervention, "check out of", IN_PROGRESS)
    _require_field_access(actor, intervention)
    if intervention.gps_check_in_time is None:
        raise InvalidTransition("Check-in must be recorded before check-out")
    if intervention.gps_check_out_time is not None:
        raise DuplicateCheckpoint("Check-out has already been recorded")

    result = _validate_against_site(intervention, point, "check out")

    now = clock.now()
    intervention.gps_check_out_lat = point.lat
    intervention.gps_check_out_lng = point.lng
    intervention.gps_check_out_accuracy_m = point.accuracy_m
    intervention.gps_check_out_time = now
    _touch(intervention, now)

    commit_or_raise(db)
    db.refresh(intervention)
    logger.info(
        "intervention_checked_out",
        intervention_id=str(intervention.id),
        distance_m=round(result.distance_m, 1),
        gps_risk=result.is_risk,
    )
    return intervention


def complete_intervention(
    db: Session,
    clock: Clock,
    intervention_id: uuid.UUID,
    actor: User,
) -> Intervention:
    """IN_PROGRESS -> COMPLETED. Missing checkpoints are tolerated (device failures)."""
    intervention = get_intervention(db, intervention_id)
    _require_status(intervention, "complete", IN_PROGRESS)
    _require_field_access(actor, intervention)

    now = clock.now()
    intervention.status = COMPLETED
    intervention.actual_end_time = now
    intervention.completed_by = actor.id
    _touch(intervention, now)
    send_intervention_notification(db, intervention, "completed")

    commit_or_raise(db)
    db.refresh(intervention)
    logger.info(
        "intervention_completed",
        intervention_id=str(intervention.id),
        code=intervention.intervention_code,
        checked_in=intervention.gps_check_in_time is not None,
        checked_out=intervention.gps_check_out_time is not None,
    )
    return intervention


def cancel_intervention(
    db: Session,
    clock: Clock,
    intervention_id: uuid.UUID,
    actor: User,
    reason: Optional[str] = None,
) -> Intervention:
    intervention = get_intervention(db, intervention_id)
    if intervention.status == SCHEDULED:
        _require_field_access(actor, intervention)
        if intervention.has_checkpoint:
            raise InvalidTransition("Cannot cancel an intervention with recorded GPS checkpoints")
    elif intervention.status == IN_PROGRESS:
        if not can_cancel_in_progress(actor):
            raise PermissionDenied("Only a supervisor can cancel an intervention in progress")
    else:
        _require_status(intervention, "cancel", SCHEDULED, IN_PROGRESS)

    now = clock.now()
    intervention.status = CANCELLED
    intervention.cancelled_at = now
    intervention.cancelled_by = actor.id
    intervention.cancel_reason = reason
    _touch(intervention, now)
    send_intervention_notification(db, intervention, "cancelled", {"reason": reason})

    commit_or_raise(db)
    db.refresh(intervention)
    logger.info("intervention_cancelled", intervention_id=str(intervention.id), actor_id=str(actor.id))
    return intervention


def reschedule_intervention(
    db: Session,
    clock: Clock,
    intervention_id: uuid.UUID,
    actor: User,
    new_date: date,
    new_start_time: Optional[time] = None,
    new_end_time: Optional[time] = None,
    reason: Optional[str] = None,
) -> Tuple[Intervention, Intervention]:
    """
    Terminate the original as RESCHEDULED and create its SCHEDULED replacement
    in one transaction. The original's date is never edited in place.

    Returns:
        (original, replacement)
    """
    if not can_manage_interventions(actor):
        raise PermissionDenied("Only supervisors can reschedule interventions")
    original = get_intervention(db, intervention_id)
    _require_status(original, "reschedule", SCHEDULED)
    _require_not_archived(original, "reschedule")

    start_time = new_start_time or original.scheduled_start_time
    end_time = new_end_time or original.scheduled_end_time
    if start_time == end_time:
        raise InvalidTransition("Start and end time cannot be equal")

    now = clock.now()
    new_start_utc = combine_date_time(new_date, start_time, site_timezone(original.site))
    if new_start_utc <= now:
        raise InvalidTransition("The new date and time must be in the future")

    original.status = RESCHEDULED
    original.reschedule_reason = reason
    _touch(original, now)

    replacement = Intervention(
        intervention_code=generate_intervention_code(db, new_date.year),
        contract_id=original.contract_id,
        site_id=original.site_id,
        scheduled_date=new_date,
        scheduled_start_time=start_time,
        scheduled_end_time=end_time,
        status=SCHEDULED,
        assigned_team_chief_id=original.assigned_team_chief_id,
        assigned_zone_chief_id=original.assigned_zone_chief_id,
        notes=original.notes,
        photo_urls=[],
        rescheduled_from_id=original.id,
        reschedule_reason=reason,
        created_by=actor.id,
        created_at=now,
    )
    replacement.agents = list(original.agents)
    db.add(replacement)
    send_intervention_notification(
        db, original, "rescheduled",
        {"new_date": new_date.isoformat(), "reason": reason},
    )

    commit_or_raise(db)
    db.refresh(original)
    db.refresh(replacement)
    logger.info(
        "intervention_rescheduled",
        intervention_id=str(original.id),
        replacement_id=str(replacement.id),
        new_date=new_date.isoformat(),
    )
    return original, replacement


# Append-only fields (allowed in every status)

def add_photo(db: Session, clock: Clock, intervention_id: uuid.UUID, actor: User, photo_url: str) -> Intervention:
    intervention = get_intervention(db, intervention_id)
    _require_field_access(actor, intervention)
    # Reassign so the JSON column is flagged dirty
    intervention.photo_urls = [*(intervention.photo_urls or []), photo_url]
    _touch(intervention, clock.now())
    commit_or_raise(db)
    db.refresh(intervention)
    return intervention


def add_note(db: Session, clock: Clock, intervention_id: uuid.UUID, actor: User, note: str) -> Intervention:
    intervention = get_intervention(db, intervention_id)
    _require_field_access(actor, intervention)
    now = clock.now()
    entry = f"[{now.strftime('%Y-%m-%d %H:%M')} UTC] {note.strip()}"
    intervention.notes = f"{intervention.notes}\n{entry}" if intervention.notes else entry
    _touch(intervention, now)
    commit_or_raise(db)
    db.refresh(intervention)
    return intervention


def rate_intervention(
    db: Session,
    clock: Clock,
    intervention_id: uuid.UUID,
    actor: User,
    quality_score: Optional[int] = None,
    client_rating: Optional[int] = None,
    client_feedback: Optional[str] = None,
) -> Intervention:
    """Record quality score / client rating once, after completion. Feedback is appended."""
    if not (is_supervisor(actor) or "client" in role_names(actor)):
        raise PermissionDenied("Only supervisors and clients can rate interventions")
    intervention = get_intervention(db, intervention_id)
    _require_status(intervention, "rate", COMPLETED)

    if quality_score is not None:
        if intervention.quality_score is not None:
            raise InvalidTransition("Quality score has already been recorded")
        intervention.quality_score = quality_score
    if client_rating is not None:
        if intervention.client_rating is not None:
            raise InvalidTransition("Client rating has already been recorded")
        intervention.client_rating = client_rating
    if client_feedback:
        intervention.client_feedback = (
            f"{intervention.client_feedback}\n{client_feedback}" if intervention.client_feedback else client_feedback
        )
    _touch(intervention, clock.now())

    commit_or_raise(db)
    db.refresh(intervention)
    return intervention


# Listing

def list_interventions(
    db: Session,
    *,
    site_id: Optional[uuid.UUID] = None,
    contract_id: Optional[uuid.UUID] = None,
    status: Optional[str] = None,
    agent_id: Optional[uuid.UUID] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    include_archived: bool = False,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Intervention], int]:
    query = db.query(Intervention)
    if not include_archived:
        query = query.filter(Intervention.archived_at.is_(None))
    if site_id:
        query = query.filter(Intervention.site_id == site_id)
    if contract_id:
        query = query.filter(Intervention.contract_id == contract_id)
    if status:
        query = query.filter(Intervention.status == status)
    if agent_id:
        query = query.join(
            intervention_agents, intervention_agents.c.intervention_id == Intervention.id
        ).filter(intervention_agents.c.agent_id == agent_id)
    if start_date:
        query = query.filter(Intervention.scheduled_date >= start_date)
    if end_date:
        query = query.filter(Intervention.scheduled_date <= end_date)

    total = query.count()
    items = (
        query.order_by(Intervention.scheduled_date.asc(), Intervention.scheduled_start_time.asc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total


def interventions_for_range(
    db: Session,
    start_date: date,
    end_date: date,
    agent_id: Optional[uuid.UUID] = None,
) -> List[Intervention]:
    """Calendar feed: includes the previous day so overnight jobs show up."""
    query = db.query(Intervention).filter(
        Intervention.archived_at.is_(None),
        Intervention.scheduled_date >= start_date - timedelta(days=1),
        Intervention.scheduled_date <= end_date,
    )
    if agent_id:
        query = query.join(
            intervention_agents, intervention_agents.c.intervention_id == Intervention.id
        ).filter(intervention_agents.c.agent_id == agent_id)
    return query.all()

"""
Idle / auto clock-out monitor.
Periodic reconciliation sweep: any open shift whose last heartbeat is older
than AUTO_CLOCK_OUT_HOURS is closed at that heartbeat. Each shift is handled
in its own transaction so one failure does not abort the pass.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional
import uuid

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from ..config import settings
from ..db import SessionLocal
from ..models.models import EmployeeProfile, Shift
from .clock import Clock, get_clock
from .errors import ConcurrentModification, commit_or_raise
from .notifications import send_auto_clock_out_notification
from .shift_ledger import OPEN_STATES, close_shift, get_shift

logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    started_at: datetime
    checked: int = 0
    closed: List[uuid.UUID] = field(default_factory=list)
    skipped: List[uuid.UUID] = field(default_factory=list)
    failures: List[Dict] = field(default_factory=list)


def idle_threshold(hours: Optional[float] = None) -> timedelta:
    return timedelta(hours=settings.auto_clock_out_hours if hours is None else hours)


def find_stale_shift_ids(db: Session, now: datetime, threshold: timedelta) -> List[uuid.UUID]:
    cutoff = now - threshold
    rows = (
        db.query(Shift.id)
        .filter(
            Shift.status.in_(OPEN_STATES),
            or_(
                Shift.last_heartbeat < cutoff,
                and_(Shift.last_heartbeat.is_(None), Shift.clock_in < cutoff),
            ),
        )
        .order_by(Shift.clock_in.asc())
        .all()
    )
    return [r[0] for r in rows]


def supervisor_for(db: Session, agent_id: uuid.UUID) -> Optional[uuid.UUID]:
    profile = db.query(EmployeeProfile).filter(EmployeeProfile.user_id == agent_id).first()
    if profile and profile.manager_user_id:
        return profile.manager_user_id
    return None


def close_stale_shift(db: Session, clock: Clock, shift_id: uuid.UUID, threshold: timedelta) -> bool:
    """
    Force-close one shift if it is still open and still stale.
    The clock-out is the last confirmed signal, not the time of detection.

    Returns:
        True if the shift was closed, False if it no longer qualifies
    """
    shift = get_shift(db, shift_id)
    if shift.status not in OPEN_STATES:
        return False
    last_signal = shift.last_heartbeat or shift.clock_in
    if clock.now() - last_signal <= threshold:
        return False

    close_shift(shift, last_signal, forced=True)

    if settings.notify_supervisor_auto_clock_out:
        recipient = supervisor_for(db, shift.agent_id) or shift.agent_id
        send_auto_clock_out_notification(db, recipient, shift)

    commit_or_raise(db)
    logger.warning(
        "shift_auto_clocked_out",
        shift_id=str(shift.id),
        agent_id=str(shift.agent_id),
        clock_out=last_signal.isoformat(),
        idle_minutes=int((clock.now() - last_signal).total_seconds() // 60),
    )
    return True


def sweep(db: Session, clock: Clock, threshold_hours: Optional[float] = None) -> SweepReport:
    """
    One reconciliation pass over all open shifts.
    Failures are logged and collected; the pass always continues.
    """
    threshold = idle_threshold(threshold_hours)
    report = SweepReport(started_at=clock.now())

    for shift_id in find_stale_shift_ids(db, report.started_at, threshold):
        report.checked += 1
        try:
            if close_stale_shift(db, clock, shift_id, threshold):
                report.closed.append(shift_id)
            else:
                report.skipped.append(shift_id)
        except ConcurrentModification:
            # Clocked out or heartbeat landed while we were closing it
            report.skipped.append(shift_id)
            logger.info("idle_sweep_shift_changed", shift_id=str(shift_id))
        except Exception as e:
            db.rollback()
            report.failures.append({"shift_id": shift_id, "error": str(e)})
            logger.exception("idle_sweep_shift_failed", shift_id=str(shift_id))

    logger.info(
        "idle_sweep_finished",
        checked=report.checked,
        closed=len(report.closed),
        skipped=len(report.skipped),
        failed=len(report.failures),
    )
    return report


def run_idle_sweep() -> None:
    """Scheduler entry point: own session, system clock."""
    db = SessionLocal()
    try:
        sweep(db, get_clock())
    finally:
        db.close()


def start_idle_monitor() -> BackgroundScheduler:
    """Start the background sweep every IDLE_SWEEP_INTERVAL_MIN minutes."""
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        run_idle_sweep,
        "interval",
        minutes=settings.idle_sweep_interval_min,
        id="idle_sweep_job",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
    )
    scheduler.start()
    logger.info("idle_monitor_started", interval_min=settings.idle_sweep_interval_min)
    return scheduler

"""
Notification sink.
Writes pending push/email records to the outbox; a separate delivery worker
sends them. Emission never fails the calling operation.
"""
from typing import Optional, Dict, List
import uuid
import structlog
from sqlalchemy.orm import Session

from ..models.models import Notification, Intervention, Shift
from ..config import settings

logger = structlog.get_logger(__name__)


def enabled_channels() -> List[str]:
    channels = []
    if settings.enable_push:
        channels.append("push")
    if settings.enable_email:
        channels.append("email")
    return channels


def emit_event(
    db: Session,
    user_id: uuid.UUID,
    event_kind: str,
    payload: Optional[Dict] = None,
) -> List[Notification]:
    """
    Queue an event for a user on every enabled channel.
    Records are added to the caller's session and committed with the
    caller's transaction.

    Args:
        db: Database session
        user_id: Recipient
        event_kind: Template key (e.g. auto_clock_out, intervention_started)
        payload: JSON-serializable event payload

    Returns:
        The queued Notification objects
    """
    created = []
    for channel in enabled_channels():
        notification = Notification(
            user_id=user_id,
            channel=channel,
            template_key=event_kind,
            payload_json=payload or {},
            status="pending",
        )
        db.add(notification)
        created.append(notification)
    logger.info("notification_queued", user_id=str(user_id), event_kind=event_kind, channels=len(created))
    return created


def send_intervention_notification(
    db: Session,
    intervention: Intervention,
    notification_type: str,  # "started"|"completed"|"cancelled"|"rescheduled"
    extra: Optional[Dict] = None,
):
    """Notify every assigned agent about an intervention status change."""
    payload = {
        "type": notification_type,
        "intervention": {
            "id": str(intervention.id),
            "code": intervention.intervention_code,
            "status": intervention.status,
            "scheduled_date": intervention.scheduled_date.isoformat(),
        },
    }
    if extra:
        payload.update(extra)
    for agent_id in intervention.assigned_agent_ids:
        emit_event(db, agent_id, f"intervention_{notification_type}", payload)


def send_auto_clock_out_notification(db: Session, recipient_id: uuid.UUID, shift: Shift):
    payload = {
        "type": "auto_clock_out",
        "agent_id": str(shift.agent_id),
        "shift": {
            "id": str(shift.id),
            "clock_in": shift.clock_in.isoformat(),
            "clock_out": shift.clock_out.isoformat() if shift.clock_out else None,
        },
    }
    emit_event(db, recipient_id, "auto_clock_out", payload)

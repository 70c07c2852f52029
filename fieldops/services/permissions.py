"""
Role checks for field operations.
Hierarchy: super_admin > admin > supervisor > agent.
"""
from typing import Set
import uuid

from ..models.models import User, Intervention


def role_names(user: User) -> Set[str]:
    return {(getattr(r, "name", None) or "").lower() for r in user.roles}


def is_admin(user: User) -> bool:
    """Check if user has admin or super_admin role."""
    return bool(role_names(user) & {"admin", "super_admin"})


def is_supervisor(user: User) -> bool:
    """Supervisors and anyone above them."""
    return is_admin(user) or "supervisor" in role_names(user)


def is_assigned(user_id: uuid.UUID, intervention: Intervention) -> bool:
    return user_id in intervention.assigned_agent_ids


def can_work_intervention(user: User, intervention: Intervention) -> bool:
    """
    Check if user can drive an intervention in the field (start, check-in/out, complete).
    - Supervisors and admins can act on any intervention
    - Team/zone chiefs can act on interventions they lead
    - Agents can act on interventions they are assigned to
    """
    if is_supervisor(user):
        return True
    if user.id in (intervention.assigned_team_chief_id, intervention.assigned_zone_chief_id):
        return True
    return is_assigned(user.id, intervention)


def can_manage_interventions(user: User) -> bool:
    """Create, edit, reschedule, archive."""
    return is_supervisor(user)


def can_cancel_in_progress(user: User) -> bool:
    return is_supervisor(user)

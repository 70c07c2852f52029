"""
Typed errors raised by the intervention and attendance services.
Each carries the HTTP status and a stable code; main.py renders them as
{"detail": ..., "code": ...}.
"""
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError


class FieldOpsError(Exception):
    status_code = 400
    code = "error"
    default_detail = "Request failed"

    def __init__(self, detail: Optional[str] = None, **context):
        self.detail = detail or self.default_detail
        self.context = context
        super().__init__(self.detail)


class InvalidTransition(FieldOpsError):
    status_code = 409
    code = "invalid_transition"
    default_detail = "This action is not allowed in the intervention's current status"


class DuplicateCheckpoint(FieldOpsError):
    status_code = 409
    code = "duplicate_checkpoint"
    default_detail = "This GPS checkpoint has already been recorded"


class GpsOutOfRange(FieldOpsError):
    status_code = 422
    code = "gps_out_of_range"
    default_detail = "You are too far from the site to check in"


class ConcurrentActiveJob(FieldOpsError):
    status_code = 409
    code = "concurrent_active_job"
    default_detail = "Agent already has another intervention in progress"


class ConcurrentModification(FieldOpsError):
    status_code = 409
    code = "concurrent_modification"
    default_detail = "The record was modified by another request. Reload and try again."


class ShiftAlreadyOpen(FieldOpsError):
    status_code = 409
    code = "shift_already_open"
    default_detail = "You already have an active shift. Please clock out first."


class InvalidShiftState(FieldOpsError):
    status_code = 409
    code = "invalid_shift_state"
    default_detail = "This action is not allowed in the shift's current state"


class NotFound(FieldOpsError):
    status_code = 404
    code = "not_found"
    default_detail = "Not found"


class PermissionDenied(FieldOpsError):
    status_code = 403
    code = "permission_denied"
    default_detail = "Forbidden"


def commit_or_raise(db: Session, on_integrity_error: Optional[FieldOpsError] = None) -> None:
    """
    Commit the unit of work.
    A versioned UPDATE that matched no row means someone else changed the
    record first; a uniqueness violation means someone else inserted first.
    Either way the session is rolled back and nothing is written.
    """
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        raise ConcurrentModification() from e
    except IntegrityError as e:
        db.rollback()
        raise (on_integrity_error or ConcurrentModification()) from e

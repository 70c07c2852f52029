from datetime import date
from typing import Optional
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..config import settings
from ..db import get_db
from ..models.models import User
from ..schemas.interventions import CalendarResponse, CalendarView
from ..services.calendar import build_calendar, check_range
from ..services.interventions import interventions_for_range
from ..services.permissions import is_supervisor


# Registered before the interventions router so /interventions/calendar is not read as an id
router = APIRouter(prefix="/interventions", tags=["calendar"])


def _calendar(db: Session, start_date: date, end_date: date, view: CalendarView, agent_id: Optional[uuid.UUID]):
    try:
        check_range(start_date, end_date, view.value, max_days=settings.calendar_max_days)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    items = interventions_for_range(db, start_date, end_date, agent_id=agent_id)
    cells = build_calendar(start_date, end_date, items, view.value)
    return {
        "start_date": start_date,
        "end_date": end_date,
        "view": view,
        "cells": [
            {"date": c.date, "hour": c.hour, "start": c.start, "end": c.end, "interventions": c.interventions}
            for c in cells
        ],
    }


@router.get("/calendar", response_model=CalendarResponse)
def calendar(
    start_date: date,
    end_date: date,
    view: CalendarView = CalendarView.month,
    agent_id: Optional[uuid.UUID] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if not is_supervisor(user):
        agent_id = user.id
    return _calendar(db, start_date, end_date, view, agent_id)


@router.get("/calendar/me", response_model=CalendarResponse)
def calendar_me(
    start_date: date,
    end_date: date,
    view: CalendarView = Query(default=CalendarView.week),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _calendar(db, start_date, end_date, view, user.id)

"""Recurring series API routes."""
import logging
from typing import Optional
from datetime import datetime
from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.orm import Session

from event_reminders.database import get_db
from event_reminders.deps import get_current_user, get_reminder_processor
from event_reminders.models.user import User
from event_reminders.schemas.recurring import (
    InstanceException,
    InstanceExceptionResult,
    InstanceList,
    RecurringSeriesCreate,
    RecurringSeriesDetail,
    RecurringSeriesList,
    RecurringSeriesUpdate,
)
from event_reminders.services import recurring_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=RecurringSeriesDetail, status_code=status.HTTP_201_CREATED)
def create_series(
    payload: RecurringSeriesCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Create a template event and its recurrence rule atomically."""
    series = recurring_service.create_series(db, user.user_id, payload)
    return recurring_service.series_detail(series)


@router.get("/", response_model=RecurringSeriesList)
def list_series(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """List the caller's active series."""
    return recurring_service.list_series(db, user.user_id, page=page, limit=limit)


@router.get("/{series_id}", response_model=RecurringSeriesDetail)
def get_series(series_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return recurring_service.series_detail(recurring_service.get_series(db, series_id, user.user_id))


@router.put("/{series_id}", response_model=RecurringSeriesDetail)
def update_series(
    series_id: str,
    payload: RecurringSeriesUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    processor=Depends(get_reminder_processor),
):
    """Update template fields and/or the rule (owner only)."""
    updates = payload.model_dump(exclude_unset=True, exclude={"recurrence"})
    series = recurring_service.update_series(db, series_id, user.user_id, updates, payload.recurrence)
    processor.invalidate_series(series_id)
    return recurring_service.series_detail(series)


@router.delete("/{series_id}", response_model=RecurringSeriesDetail)
def deactivate_series(
    series_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    processor=Depends(get_reminder_processor),
):
    """Deactivate a series (owner only); nothing is deleted."""
    series = recurring_service.deactivate_series(db, series_id, user.user_id)
    processor.invalidate_series(series_id)
    return recurring_service.series_detail(series)


@router.get("/{series_id}/instances", response_model=InstanceList)
def list_instances(
    series_id: str,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Expand the series over a window (default: the next year)."""
    return recurring_service.list_instances(db, series_id, user.user_id, start, end, limit, offset)


@router.post("/{series_id}/instances", response_model=InstanceExceptionResult)
def add_instance_exception(
    series_id: str,
    body: InstanceException = Body(...),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    processor=Depends(get_reminder_processor),
):
    """Cancel a single occurrence or replace it with a modified event."""
    result = recurring_service.add_instance_exception(db, series_id, user.user_id, body)
    processor.invalidate_series(series_id)
    return result

"""Reminder API routes, nested under an event."""
import logging
from typing import Optional
from datetime import datetime
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from event_reminders.database import get_db
from event_reminders.deps import get_current_user
from event_reminders.models.reminder import ReminderStatus, ReminderType
from event_reminders.models.user import User
from event_reminders.schemas.reminder import ReminderCreate, ReminderList, ReminderOut, ReminderUpdate
from event_reminders.services import reminder_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/{event_id}/reminders", response_model=ReminderList)
def list_reminders(
    event_id: str,
    type: Optional[ReminderType] = Query(None),
    status: Optional[ReminderStatus] = Query(None),
    start_date: Optional[datetime] = Query(None, description="Earliest trigger time"),
    end_date: Optional[datetime] = Query(None, description="Latest trigger time"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """List the caller's reminders for an event with aggregate counts."""
    return reminder_service.list_reminders(
        db, event_id, user.user_id,
        reminder_type=type, reminder_status=status,
        start_date=start_date, end_date=end_date,
        limit=limit, offset=offset,
    )


@router.post("/{event_id}/reminders", response_model=ReminderOut, status_code=201)
def create_reminder(
    event_id: str,
    payload: ReminderCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    metadata = payload.metadata.model_dump(mode="json") if payload.metadata else None
    return reminder_service.create_reminder(
        db, event_id, user.user_id, payload.type, payload.trigger_time, metadata,
    )


@router.get("/{event_id}/reminders/{reminder_id}", response_model=ReminderOut)
def get_reminder(
    event_id: str,
    reminder_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return reminder_service.get_reminder(db, event_id, reminder_id, user.user_id)


@router.put("/{event_id}/reminders/{reminder_id}", response_model=ReminderOut)
def update_reminder(
    event_id: str,
    reminder_id: str,
    payload: ReminderUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Reschedule or retype a pending reminder."""
    updates = payload.model_dump(exclude_unset=True, exclude={"metadata"})
    if "metadata" in payload.model_fields_set:
        updates["metadata"] = payload.metadata.model_dump(mode="json") if payload.metadata else None
    return reminder_service.update_reminder(db, event_id, reminder_id, user.user_id, updates)


@router.post("/{event_id}/reminders/{reminder_id}/cancel", response_model=ReminderOut)
def cancel_reminder(
    event_id: str,
    reminder_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return reminder_service.cancel_reminder(db, event_id, reminder_id, user.user_id)

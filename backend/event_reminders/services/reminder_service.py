"""Reminder service: user-authored reminders for a single event.

Rules enforced here:
- the caller must be able to see the event (creator, registered, or public)
- trigger_time must be strictly before the event start, on create and update
- at most MAX_REMINDERS_PER_EVENT non-canceled reminders per (user, event)
- only the reminder's owner may read, change or cancel it
- delivery metadata must be the variant for the reminder's type
"""
import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from event_reminders.config import settings
from event_reminders.database import ensure_utc, utcnow
from event_reminders.models.event import Event, EventStatus
from event_reminders.models.reminder import Reminder, ReminderStatus, ReminderType
from event_reminders.services.event_service import can_access_event, get_event_or_404

logger = logging.getLogger(__name__)


def _check_trigger(trigger_time: datetime, event: Event) -> datetime:
    trigger_time = ensure_utc(trigger_time)
    if trigger_time >= ensure_utc(event.start_time_utc):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Reminder trigger_time must be before the event start",
        )
    return trigger_time


def _check_metadata(reminder_type: ReminderType, metadata: Optional[dict]) -> None:
    if metadata is not None and metadata.get("kind") != ReminderType(reminder_type).value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"metadata kind {metadata.get('kind')} does not match reminder type {ReminderType(reminder_type).value}",
        )


def _visible_event(db: Session, event_id: str, user_id: str) -> Event:
    event = get_event_or_404(db, event_id)
    if not can_access_event(db, event, user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You do not have access to this event")
    return event


def active_reminder_count(db: Session, event_id: str, user_id: str) -> int:
    return (
        db.query(Reminder)
        .filter(
            Reminder.event_id == event_id,
            Reminder.user_id == user_id,
            Reminder.status != ReminderStatus.canceled,
        )
        .count()
    )


def list_reminders(
    db: Session,
    event_id: str,
    user_id: str,
    reminder_type: Optional[ReminderType] = None,
    reminder_status: Optional[ReminderStatus] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
) -> dict[str, Any]:
    """The caller's reminders for an event, with stats over the whole filtered set."""
    _visible_event(db, event_id, user_id)

    query = db.query(Reminder).filter(Reminder.event_id == event_id, Reminder.user_id == user_id)
    if reminder_type is not None:
        query = query.filter(Reminder.type == reminder_type)
    if reminder_status is not None:
        query = query.filter(Reminder.status == reminder_status)
    if start_date is not None:
        query = query.filter(Reminder.trigger_time >= ensure_utc(start_date))
    if end_date is not None:
        query = query.filter(Reminder.trigger_time <= ensure_utc(end_date))

    total = query.count()
    reminders = query.order_by(Reminder.trigger_time.asc()).offset(offset).limit(limit).all()

    by_status = dict(
        query.with_entities(Reminder.status, func.count(Reminder.reminder_id)).group_by(Reminder.status).all()
    )
    by_type = dict(
        query.with_entities(Reminder.type, func.count(Reminder.reminder_id)).group_by(Reminder.type).all()
    )

    return {
        "reminders": reminders,
        "stats": {
            "total": total,
            "pending": by_status.get(ReminderStatus.pending, 0),
            "sent": by_status.get(ReminderStatus.sent, 0),
            "failed": by_status.get(ReminderStatus.failed, 0),
            "cancelled": by_status.get(ReminderStatus.canceled, 0),
            "by_type": {
                "email": by_type.get(ReminderType.email, 0),
                "push": by_type.get(ReminderType.push, 0),
                "sms": by_type.get(ReminderType.sms, 0),
            },
        },
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + len(reminders) < total,
        },
    }


def create_reminder(
    db: Session,
    event_id: str,
    user_id: str,
    reminder_type: ReminderType,
    trigger_time: datetime,
    metadata: Optional[dict] = None,
) -> Reminder:
    event = _visible_event(db, event_id, user_id)
    if event.status == EventStatus.cancelled:
        raise HTTPException(status_code=400, detail="Cannot add reminders to a cancelled event")
    trigger_time = _check_trigger(trigger_time, event)
    _check_metadata(reminder_type, metadata)

    limit = settings.MAX_REMINDERS_PER_EVENT
    if active_reminder_count(db, event_id, user_id) >= limit:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Maximum of {limit} active reminders per event reached",
        )

    reminder = Reminder(
        event_id=event_id,
        user_id=user_id,
        type=reminder_type,
        trigger_time=trigger_time,
        status=ReminderStatus.pending,
        retry_count=0,
        delivery_metadata=metadata,
    )
    db.add(reminder)
    db.commit()
    db.refresh(reminder)
    logger.info("Created %s reminder %s for event %s at %s", reminder_type.value, reminder.reminder_id, event_id, trigger_time)
    return reminder


def get_reminder(db: Session, event_id: str, reminder_id: str, user_id: str) -> Reminder:
    reminder = db.query(Reminder).filter(Reminder.reminder_id == reminder_id).first()
    if not reminder:
        raise HTTPException(status_code=404, detail="Reminder not found")
    if reminder.user_id != user_id:
        raise HTTPException(status_code=403, detail="You do not own this reminder")
    if reminder.event_id != event_id:
        raise HTTPException(status_code=400, detail="Reminder does not belong to this event")
    return reminder


def update_reminder(db: Session, event_id: str, reminder_id: str, user_id: str, updates: dict[str, Any]) -> Reminder:
    reminder = get_reminder(db, event_id, reminder_id, user_id)
    if reminder.status != ReminderStatus.pending:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot modify a reminder in status {ReminderStatus(reminder.status).value}",
        )

    new_type = updates.get("type") or reminder.type
    if "metadata" in updates:
        metadata = updates["metadata"]
    else:
        metadata = reminder.delivery_metadata
    _check_metadata(new_type, metadata)

    if updates.get("trigger_time") is not None:
        reminder.trigger_time = _check_trigger(updates["trigger_time"], get_event_or_404(db, event_id))
    reminder.type = new_type
    reminder.delivery_metadata = metadata
    reminder.updated_at = utcnow()
    db.commit()
    db.refresh(reminder)
    logger.info("Updated reminder %s", reminder_id)
    return reminder


def cancel_reminder(db: Session, event_id: str, reminder_id: str, user_id: str) -> Reminder:
    """PENDING -> CANCELED; repeating the cancel is a no-op."""
    reminder = get_reminder(db, event_id, reminder_id, user_id)
    if reminder.status == ReminderStatus.canceled:
        return reminder
    if reminder.status != ReminderStatus.pending:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot cancel a reminder in status {ReminderStatus(reminder.status).value}",
        )
    reminder.status = ReminderStatus.canceled
    reminder.updated_at = utcnow()
    db.commit()
    db.refresh(reminder)
    logger.info("Cancelled reminder %s", reminder_id)
    return reminder

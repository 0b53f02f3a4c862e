"""Core event service: enforces event invariants.

Responsibilities:
- Field validation shared by standalone events and recurring templates
  (date ordering, timezone, access policy, mode-specific fields)
- Authorization hook: only the creator may update/cancel
- Visibility: creator, registered user, or public event
- Optimistic locking via version field
- Cancellation safety (soft delete + metadata, pending reminders cancelled)
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

import pytz
from sqlalchemy.orm import Session
from fastapi import HTTPException, status

from event_reminders.database import ensure_utc, utcnow
from event_reminders.models.event import Event, EventStatus, AccessType, EventMode
from event_reminders.models.registration import EventRegistration, RegistrationStatus
from event_reminders.models.reminder import Reminder, ReminderStatus

logger = logging.getLogger(__name__)


def event_field_errors(
    start_utc: datetime,
    end_utc: datetime,
    tz_name: str,
    mode: EventMode,
    location: Optional[str],
    virtual_link: Optional[str],
    access_type: AccessType,
    price: Optional[Decimal],
    free_tiers: Iterable[Any],
    require_future: bool = False,
) -> list[str]:
    """Collect every problem with an event's fields."""
    errors = []
    if ensure_utc(start_utc) >= ensure_utc(end_utc):
        errors.append("start_time_utc must be before end_time_utc")
    if require_future and ensure_utc(start_utc) < utcnow():
        errors.append("start_time_utc must be in the future")
    try:
        pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        errors.append(f"Unknown timezone: {tz_name}")
    if access_type == AccessType.paid and (price is None or price <= 0):
        errors.append("Paid events require a price greater than 0")
    if access_type == AccessType.tier and not list(free_tiers):
        errors.append("Tier-gated events require at least one tier with included access")
    if mode in (EventMode.in_person, EventMode.hybrid) and not location:
        errors.append("In-person events require a location")
    if mode in (EventMode.online, EventMode.hybrid) and not virtual_link:
        errors.append("Online events require a virtual link")
    return errors


def raise_validation(errors: list[str], message: str = "Invalid event") -> None:
    if errors:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": message, "errors": errors},
        )


def get_event_or_404(db: Session, event_id: str) -> Event:
    event = db.query(Event).filter(Event.event_id == event_id).first()
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


def is_registered(db: Session, event_id: str, user_id: str) -> bool:
    return (
        db.query(EventRegistration)
        .filter(
            EventRegistration.event_id == event_id,
            EventRegistration.user_id == user_id,
            EventRegistration.status == RegistrationStatus.registered,
        )
        .first()
        is not None
    )


def can_access_event(db: Session, event: Event, user_id: str) -> bool:
    """Creator, registered user, or public event."""
    return event.creator_id == user_id or event.is_public or is_registered(db, event.event_id, user_id)


def _check_authorization(event: Event, actor_user_id: str) -> None:
    """Only the creator may update/cancel."""
    if event.creator_id != actor_user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the creator may modify this event.",
        )


def build_event(creator_id: str, fields: Any, event_status: EventStatus) -> Event:
    """Instantiate (but do not persist) an Event from an ``EventFields`` payload."""
    return Event(
        title=fields.title,
        description=fields.description,
        start_time_utc=ensure_utc(fields.start_time_utc),
        end_time_utc=ensure_utc(fields.end_time_utc),
        timezone=fields.timezone,
        location=fields.location,
        virtual_link=fields.virtual_link,
        mode=fields.mode,
        is_public=fields.is_public,
        access_type=fields.access_type,
        price=fields.price,
        free_tiers=[t.value for t in fields.free_tiers],
        max_attendees=fields.max_attendees,
        tags=list(fields.tags),
        creator_id=creator_id,
        status=event_status,
        version=1,
    )


def validate_fields(fields: Any, require_future: bool = False) -> None:
    raise_validation(event_field_errors(
        fields.start_time_utc, fields.end_time_utc, fields.timezone, fields.mode,
        fields.location, fields.virtual_link, fields.access_type, fields.price,
        fields.free_tiers, require_future=require_future,
    ))


def create_event(db: Session, creator_id: str, payload: Any) -> Event:
    """Create a standalone event after field validation."""
    validate_fields(payload)
    event = build_event(creator_id, payload, payload.status)
    db.add(event)
    db.commit()
    db.refresh(event)
    logger.info("Created event '%s' (%s) by %s", event.title, event.event_id, creator_id)
    return event


def update_event(
    db: Session,
    event_id: str,
    actor_user_id: str,
    version: int,
    updates: dict[str, Any],
) -> Event:
    """Update an event with optimistic locking and authorization."""
    event = get_event_or_404(db, event_id)
    _check_authorization(event, actor_user_id)

    if event.version != version:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Version mismatch: expected {event.version}, got {version}. Re-fetch and retry.",
        )

    for field, value in updates.items():
        if field in ("start_time_utc", "end_time_utc") and value is not None:
            value = ensure_utc(value)
        if hasattr(event, field) and field not in ("event_id", "version", "created_at", "creator_id"):
            setattr(event, field, value)

    raise_validation(event_field_errors(
        event.start_time_utc, event.end_time_utc, event.timezone, event.mode,
        event.location, event.virtual_link, event.access_type, event.price, event.free_tiers or [],
    ))

    event.version += 1
    event.updated_at = utcnow()
    db.commit()
    db.refresh(event)
    logger.info("Updated event %s to version %d", event_id, event.version)
    return event


def cancel_event(
    db: Session,
    event_id: str,
    actor_user_id: str,
    version: int,
    cancel_reason: Optional[str] = None,
) -> Event:
    """Soft-cancel an event and cancel its pending reminders."""
    event = get_event_or_404(db, event_id)
    _check_authorization(event, actor_user_id)

    if event.status == EventStatus.cancelled:
        raise HTTPException(status_code=400, detail="Event is already cancelled")

    if event.version != version:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Version mismatch: expected {event.version}, got {version}. Re-fetch and retry.",
        )

    now = utcnow()
    event.status = EventStatus.cancelled
    event.cancelled_at = now
    event.cancel_reason = cancel_reason
    event.version += 1
    event.updated_at = now

    cancelled = (
        db.query(Reminder)
        .filter(Reminder.event_id == event_id, Reminder.status == ReminderStatus.pending)
        .update({Reminder.status: ReminderStatus.canceled, Reminder.updated_at: now}, synchronize_session=False)
    )
    db.commit()
    db.refresh(event)
    logger.info("Cancelled event %s (reason: %s), %d pending reminders cancelled", event_id, cancel_reason, cancelled)
    return event


def register(db: Session, event_id: str, user_id: str) -> EventRegistration:
    """Register ``user_id`` for an event (public events, or the creator)."""
    event = get_event_or_404(db, event_id)
    if event.status == EventStatus.cancelled:
        raise HTTPException(status_code=400, detail="Event is cancelled")
    if not event.is_public and event.creator_id != user_id:
        raise HTTPException(status_code=403, detail="Event is not open for registration")

    registration = (
        db.query(EventRegistration)
        .filter(EventRegistration.event_id == event_id, EventRegistration.user_id == user_id)
        .first()
    )
    if registration is None:
        registration = EventRegistration(event_id=event_id, user_id=user_id)
        db.add(registration)
    registration.status = RegistrationStatus.registered
    registration.registered_at = utcnow()
    db.commit()
    db.refresh(registration)
    logger.info("User %s registered for event %s", user_id, event_id)
    return registration


def unregister(db: Session, event_id: str, user_id: str) -> EventRegistration:
    get_event_or_404(db, event_id)
    registration = (
        db.query(EventRegistration)
        .filter(EventRegistration.event_id == event_id, EventRegistration.user_id == user_id)
        .first()
    )
    if registration is None:
        raise HTTPException(status_code=404, detail="User is not registered for this event")
    registration.status = RegistrationStatus.cancelled
    db.commit()
    db.refresh(registration)
    logger.info("User %s unregistered from event %s", user_id, event_id)
    return registration

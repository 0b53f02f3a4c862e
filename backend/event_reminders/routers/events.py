"""Event API routes: delegates to event_service for invariant enforcement."""
import logging
from typing import Optional
from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

from event_reminders.database import get_db
from event_reminders.deps import get_current_user
from event_reminders.models.event import Event, EventStatus
from event_reminders.models.registration import EventRegistration, RegistrationStatus
from event_reminders.models.user import User
from event_reminders.schemas.event import EventCreate, EventUpdate, EventOut, EventCancelRequest
from event_reminders.services import event_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=EventOut, status_code=status.HTTP_201_CREATED)
def create_event(
    payload: EventCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Create a standalone event owned by the caller."""
    return event_service.create_event(db=db, creator_id=user.user_id, payload=payload)


@router.get("/", response_model=list[EventOut])
def list_events(
    start_after: Optional[datetime] = Query(None),
    start_before: Optional[datetime] = Query(None),
    include_cancelled: bool = Query(False),
    mine: bool = Query(False, description="Only events created by the caller"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """List events visible to the caller with optional filters."""
    registered = (
        db.query(EventRegistration.event_id)
        .filter(EventRegistration.user_id == user.user_id, EventRegistration.status == RegistrationStatus.registered)
    )
    query = db.query(Event)
    if mine:
        query = query.filter(Event.creator_id == user.user_id)
    else:
        query = query.filter(or_(
            Event.creator_id == user.user_id,
            Event.is_public.is_(True),
            Event.event_id.in_(registered),
        ))
    if start_after:
        query = query.filter(Event.start_time_utc >= start_after)
    if start_before:
        query = query.filter(Event.start_time_utc <= start_before)
    if not include_cancelled:
        query = query.filter(Event.status != EventStatus.cancelled)
    return query.order_by(Event.start_time_utc).all()


@router.get("/{event_id}", response_model=EventOut)
def get_event(
    event_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Fetch a single event by ID."""
    event = event_service.get_event_or_404(db, event_id)
    if not event_service.can_access_event(db, event, user.user_id):
        raise HTTPException(status_code=403, detail="You do not have access to this event")
    return event


@router.put("/{event_id}", response_model=EventOut)
def update_event(
    event_id: str,
    payload: EventUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Update an event (creator only, optimistic locking enforced)."""
    updates = payload.model_dump(exclude_unset=True, exclude={"version"})
    return event_service.update_event(
        db=db,
        event_id=event_id,
        actor_user_id=user.user_id,
        version=payload.version,
        updates=updates,
    )


@router.post("/{event_id}/cancel", response_model=EventOut)
def cancel_event(
    event_id: str,
    payload: EventCancelRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Cancel an event (soft delete, creator only, optimistic locking enforced)."""
    return event_service.cancel_event(
        db=db,
        event_id=event_id,
        actor_user_id=user.user_id,
        version=payload.version,
        cancel_reason=payload.cancel_reason,
    )

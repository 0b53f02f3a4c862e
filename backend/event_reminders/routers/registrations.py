"""Event registration routes."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from event_reminders.database import get_db
from event_reminders.deps import get_current_user
from event_reminders.models.user import User
from event_reminders.schemas.event import RegistrationOut
from event_reminders.services import event_service

router = APIRouter()


@router.post("/{event_id}/register", response_model=RegistrationOut)
def register(event_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Register the caller for an event."""
    return event_service.register(db, event_id, user.user_id)


@router.post("/{event_id}/unregister", response_model=RegistrationOut)
def unregister(event_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return event_service.unregister(db, event_id, user.user_id)

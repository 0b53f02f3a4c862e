"""Shared FastAPI dependencies: caller identity and the reminder processor."""
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from event_reminders.database import get_db
from event_reminders.models.user import User


def get_current_user(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the caller from the ``X-User-Id`` header.

    Session handling lives in front of this service; it forwards the
    authenticated user id in that header.
    """
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    user = db.query(User).filter(User.user_id == x_user_id).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
    return user


def get_admin_user(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin privileges required")
    return user


def get_reminder_processor(request: Request):
    """The processor instance owned by the application (see ``main.py``)."""
    return request.app.state.reminder_processor


def get_realtime_broker(request: Request):
    return request.app.state.realtime_broker

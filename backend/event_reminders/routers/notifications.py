"""Notification routes: the caller's inbox and a server-sent events stream."""
import asyncio
import json
import logging
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from event_reminders.database import get_db
from event_reminders.deps import get_current_user, get_realtime_broker
from event_reminders.models.user import User
from event_reminders.models.notification import NotificationPriority
from event_reminders.schemas.notification import NotificationList, NotificationOut
from event_reminders.services import notification_service

logger = logging.getLogger(__name__)
router = APIRouter()

KEEPALIVE_SECONDS = 15


@router.get("/", response_model=NotificationList)
def list_notifications(
    unread_only: bool = Query(False),
    types: Optional[str] = Query(None, description="Comma-separated notification types"),
    priority: Optional[NotificationPriority] = Query(None),
    start_date: Optional[datetime] = Query(None, description="Earliest creation time"),
    end_date: Optional[datetime] = Query(None, description="Latest creation time"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """The caller's notifications, newest first, with unread and total counts."""
    return notification_service.list_notifications(
        db,
        user.user_id,
        unread_only=unread_only,
        types=notification_service.parse_types(types),
        priority=priority,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )


@router.post("/{notification_id}/read", response_model=NotificationOut)
def mark_read(notification_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return notification_service.mark_read(db, notification_id, user.user_id)


@router.get("/stream")
async def stream(request: Request, user: User = Depends(get_current_user), broker=Depends(get_realtime_broker)):
    """Server-sent events carrying the caller's realtime reminder payloads."""
    user_id = user.user_id
    queue = broker.subscribe(user_id)

    async def events():
        try:
            while not await request.is_disconnected():
                try:
                    payload = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: notification\ndata: {json.dumps(payload, default=str)}\n\n"
        finally:
            broker.unsubscribe(user_id, queue)
            logger.debug("Realtime stream closed for user %s", user_id)

    return StreamingResponse(events(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})

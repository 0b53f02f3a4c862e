"""Notification fan-out used by the reminder processor.

Two halves:
- ``create_persisted_notification`` writes a Notification row and may raise;
  the processor treats an exception here as a failed dispatch.
- ``push_realtime`` publishes to connected clients through the in-process
  ``RealtimeBroker``. Best effort: errors are logged here and never reach
  the caller.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from fastapi import HTTPException
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from event_reminders.database import ensure_utc, utcnow
from event_reminders.models.notification import Notification, NotificationPriority, NotificationType
from event_reminders.models.reminder import ReminderType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventSummary:
    """The event fields a notification needs, detached from any session."""
    event_id: str
    title: str
    start_time_utc: datetime
    timezone: str = "UTC"
    location: Optional[str] = None
    virtual_link: Optional[str] = None

    @classmethod
    def from_event(cls, event: Any) -> "EventSummary":
        return cls(
            event_id=event.event_id,
            title=event.title,
            start_time_utc=ensure_utc(event.start_time_utc),
            timezone=event.timezone or "UTC",
            location=event.location,
            virtual_link=event.virtual_link,
        )


class RealtimeBroker:
    """Per-user fan-out to in-process subscriber queues."""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = {}

    def subscribe(self, user_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.setdefault(user_id, set()).add(queue)
        logger.debug("Realtime subscriber added for user %s", user_id)
        return queue

    def unsubscribe(self, user_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(user_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[user_id]

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscribers.get(user_id, ()))

    def publish(self, user_id: str, payload: dict) -> int:
        """Deliver ``payload`` to every queue of ``user_id``; returns deliveries."""
        delivered = 0
        for queue in list(self._subscribers.get(user_id, ())):
            try:
                queue.put_nowait(payload)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("Realtime queue full for user %s, dropping payload", user_id)
        return delivered


def _minutes_until(start: datetime, now: datetime) -> int:
    return max(0, int((ensure_utc(start) - now).total_seconds() // 60))


def reminder_priority(reminder_type: ReminderType, minutes_until: int) -> NotificationPriority:
    if minutes_until < 60:
        return NotificationPriority.urgent
    if reminder_type in (ReminderType.push, ReminderType.sms):
        return NotificationPriority.high
    return NotificationPriority.medium


def reminder_message(event: EventSummary, minutes_until: int) -> str:
    if minutes_until <= 0:
        return f'"{event.title}" is starting now.'
    if minutes_until < 60:
        return f'"{event.title}" starts in {minutes_until} minutes.'
    hours = minutes_until // 60
    if hours < 24:
        return f'"{event.title}" starts in {hours} hour{"s" if hours != 1 else ""}.'
    days = hours // 24
    return f'"{event.title}" starts in {days} day{"s" if days != 1 else ""}.'


class NotificationFanout:
    def __init__(self, session_factory: Callable[[], Session], broker: Optional[RealtimeBroker] = None):
        self.session_factory = session_factory
        self.broker = broker or RealtimeBroker()

    async def create_persisted_notification(
        self,
        user_id: str,
        event: EventSummary,
        reminder_type: ReminderType,
        trigger_time: datetime,
    ) -> dict:
        """Store the reminder notification; returns the realtime payload for it."""
        now = utcnow()
        minutes_until = _minutes_until(event.start_time_utc, now)
        notification = Notification(
            user_id=user_id,
            type=NotificationType.event_reminder,
            title=f"Reminder: {event.title}",
            message=reminder_message(event, minutes_until),
            priority=reminder_priority(ReminderType(reminder_type), minutes_until),
            data={
                "event_id": event.event_id,
                "reminder_type": ReminderType(reminder_type).value,
                "trigger_time": ensure_utc(trigger_time).isoformat(),
                "event_start": event.start_time_utc.isoformat(),
                "location": event.location,
                "virtual_link": event.virtual_link,
            },
        )
        payload = await run_in_threadpool(self._store, notification)
        logger.debug("Stored reminder notification %s for user %s", payload["notification_id"], user_id)
        return payload

    def _store(self, notification: Notification) -> dict:
        db = self.session_factory()
        try:
            db.add(notification)
            db.commit()
            db.refresh(notification)
            return notification_payload(notification)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def push_realtime(self, user_id: str, payload: dict) -> None:
        try:
            delivered = self.broker.publish(user_id, payload)
            logger.debug("Realtime payload delivered to %d subscriber(s) of %s", delivered, user_id)
        except Exception:
            logger.exception("Realtime push to user %s failed", user_id)


def notification_payload(notification: Notification) -> dict:
    return {
        "notification_id": notification.notification_id,
        "type": NotificationType(notification.type).value,
        "title": notification.title,
        "message": notification.message,
        "priority": NotificationPriority(notification.priority).value,
        "data": notification.data or {},
        "created_at": ensure_utc(notification.created_at).isoformat(),
    }


def parse_types(raw: Optional[str]) -> Optional[list[NotificationType]]:
    """Comma-separated notification types; 400 on an unknown one."""
    if not raw:
        return None
    names = [name.strip().upper() for name in raw.split(",") if name.strip()]
    try:
        return [NotificationType(name) for name in names] or None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown notification type in '{raw}'")


def list_notifications(
    db: Session,
    user_id: str,
    unread_only: bool = False,
    types: Optional[list[NotificationType]] = None,
    priority: Optional[NotificationPriority] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = 20,
    offset: int = 0,
) -> dict[str, Any]:
    """The caller's notifications, newest first, with unread and total counts."""
    if start_date is not None and end_date is not None and ensure_utc(start_date) > ensure_utc(end_date):
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")

    query = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    if types:
        query = query.filter(Notification.type.in_(types))
    if priority is not None:
        query = query.filter(Notification.priority == priority)
    if start_date is not None:
        query = query.filter(Notification.created_at >= ensure_utc(start_date))
    if end_date is not None:
        query = query.filter(Notification.created_at <= ensure_utc(end_date))

    total = query.count()
    unread = query.filter(Notification.is_read.is_(False)).count()
    items = query.order_by(Notification.created_at.desc()).offset(offset).limit(limit).all()
    return {
        "notifications": items,
        "unread_count": unread,
        "total_count": total,
        "has_more": offset + limit < total,
        "pagination": {"limit": limit, "offset": offset, "total": total},
    }


def mark_read(db: Session, notification_id: str, user_id: str) -> Notification:
    notification = db.query(Notification).filter(Notification.notification_id == notification_id).first()
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    if notification.user_id != user_id:
        raise HTTPException(status_code=403, detail="Not your notification")
    notification.is_read = True
    db.commit()
    db.refresh(notification)
    return notification

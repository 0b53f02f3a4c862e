"""Notification ORM model: the persisted half of a reminder fan-out."""
import uuid
import enum
from sqlalchemy import Column, String, Text, Boolean, JSON, ForeignKey, Enum as SAEnum
from event_reminders.database import Base, UTCDateTime, utcnow


class NotificationType(str, enum.Enum):
    event_reminder = "EVENT_REMINDER"


class NotificationPriority(str, enum.Enum):
    low = "LOW"
    medium = "MEDIUM"
    high = "HIGH"
    urgent = "URGENT"


class Notification(Base):
    __tablename__ = "notifications"

    notification_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.user_id"), nullable=False, index=True)
    type = Column(SAEnum(NotificationType), nullable=False, default=NotificationType.event_reminder)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    priority = Column(SAEnum(NotificationPriority), nullable=False, default=NotificationPriority.medium)
    data = Column(JSON, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

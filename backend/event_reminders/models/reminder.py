"""Reminder ORM model: a user-scheduled notification for one event."""
import uuid
import enum
from sqlalchemy import Column, String, Integer, Text, JSON, ForeignKey, Index, Enum as SAEnum
from sqlalchemy.orm import relationship
from event_reminders.database import Base, UTCDateTime, utcnow


class ReminderType(str, enum.Enum):
    email = "EMAIL"
    push = "PUSH"
    sms = "SMS"


class ReminderStatus(str, enum.Enum):
    pending = "PENDING"
    sent = "SENT"
    failed = "FAILED"
    canceled = "CANCELED"


TERMINAL_STATUSES = (ReminderStatus.sent, ReminderStatus.failed)


class Reminder(Base):
    __tablename__ = "reminders"
    __table_args__ = (
        Index("ix_reminders_status_trigger", "status", "trigger_time"),
        Index("ix_reminders_event_user", "event_id", "user_id"),
    )

    reminder_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String(36), ForeignKey("events.event_id"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.user_id"), nullable=False)
    type = Column(SAEnum(ReminderType), nullable=False)
    trigger_time = Column(UTCDateTime, nullable=False)
    status = Column(SAEnum(ReminderStatus), nullable=False, default=ReminderStatus.pending)
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    sent_at = Column(UTCDateTime, nullable=True)
    # "metadata" is reserved on declarative classes
    delivery_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    event = relationship("Event")

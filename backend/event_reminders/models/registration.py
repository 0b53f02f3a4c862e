"""EventRegistration ORM model: a user's sign-up for an event."""
import enum
from sqlalchemy import Column, String, ForeignKey, Enum as SAEnum
from sqlalchemy.orm import relationship
from event_reminders.database import Base, UTCDateTime, utcnow


class RegistrationStatus(str, enum.Enum):
    registered = "REGISTERED"
    cancelled = "CANCELLED"


class EventRegistration(Base):
    __tablename__ = "event_registrations"

    event_id = Column(String(36), ForeignKey("events.event_id"), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.user_id"), primary_key=True)
    status = Column(SAEnum(RegistrationStatus), nullable=False, default=RegistrationStatus.registered)
    registered_at = Column(UTCDateTime, nullable=False, default=utcnow)

    event = relationship("Event", back_populates="registrations")

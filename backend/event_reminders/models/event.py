"""Event ORM model: the template for recurring series and standalone events."""
import uuid
import enum
from sqlalchemy import Column, String, Text, Integer, Boolean, Numeric, Date, JSON, ForeignKey, Enum as SAEnum
from sqlalchemy.orm import relationship
from event_reminders.database import Base, UTCDateTime, utcnow


class EventStatus(str, enum.Enum):
    draft = "DRAFT"
    published = "PUBLISHED"
    cancelled = "CANCELLED"
    completed = "COMPLETED"


class AccessType(str, enum.Enum):
    free = "FREE"
    paid = "PAID"
    tier = "TIER"


class SubscriptionTier(str, enum.Enum):
    basic = "BASIC"
    premium = "PREMIUM"
    vip = "VIP"


class EventMode(str, enum.Enum):
    online = "ONLINE"
    in_person = "IN_PERSON"
    hybrid = "HYBRID"


class Event(Base):
    __tablename__ = "events"

    event_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    start_time_utc = Column(UTCDateTime, nullable=False)
    end_time_utc = Column(UTCDateTime, nullable=False)
    timezone = Column(String(50), nullable=False, default="UTC")
    location = Column(String(500), nullable=True)
    virtual_link = Column(String(1000), nullable=True)
    mode = Column(SAEnum(EventMode), nullable=False, default=EventMode.online)
    is_public = Column(Boolean, nullable=False, default=True)
    access_type = Column(SAEnum(AccessType), nullable=False, default=AccessType.free)
    price = Column(Numeric(10, 2), nullable=True)
    free_tiers = Column(JSON, nullable=False, default=list)
    max_attendees = Column(Integer, nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    creator_id = Column(String(36), ForeignKey("users.user_id"), nullable=False)
    status = Column(SAEnum(EventStatus), nullable=False, default=EventStatus.draft)
    # Set only on standalone events that replace one occurrence of a series
    series_id = Column(String(36), nullable=True, index=True)
    original_date = Column(Date, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    cancel_reason = Column(String(500), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    registrations = relationship("EventRegistration", back_populates="event", cascade="all, delete-orphan")

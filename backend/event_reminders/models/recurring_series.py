"""RecurringSeries ORM model: a template Event plus its recurrence rule."""
import uuid
import enum
from sqlalchemy import Column, String, Integer, Boolean, JSON, ForeignKey, Enum as SAEnum
from sqlalchemy.orm import relationship
from event_reminders.database import Base, UTCDateTime, utcnow


class Frequency(str, enum.Enum):
    daily = "DAILY"
    weekly = "WEEKLY"
    monthly = "MONTHLY"
    yearly = "YEARLY"
    lunar = "LUNAR"


class LunarPhase(str, enum.Enum):
    full = "FULL"
    new = "NEW"


class RecurringSeries(Base):
    __tablename__ = "recurring_series"

    series_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    parent_event_id = Column(String(36), ForeignKey("events.event_id"), nullable=False, unique=True)
    frequency = Column(SAEnum(Frequency), nullable=False)
    interval = Column(Integer, nullable=False, default=1)
    until = Column(UTCDateTime, nullable=True)
    max_occurrences = Column(Integer, nullable=True)
    by_weekday = Column(JSON, nullable=True)     # 0=Monday .. 6=Sunday
    by_month_day = Column(JSON, nullable=True)   # 1..31
    by_month = Column(JSON, nullable=True)       # 1..12
    lunar_phase = Column(SAEnum(LunarPhase), nullable=True)
    # Sorted, deduplicated ISO dates (YYYY-MM-DD) in the template's timezone
    exceptions = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    parent_event = relationship("Event", foreign_keys=[parent_event_id])

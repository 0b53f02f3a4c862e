"""User ORM model."""
import uuid
from sqlalchemy import Column, String, Boolean
from event_reminders.database import Base, UTCDateTime, utcnow


class User(Base):
    __tablename__ = "users"

    user_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    display_name = Column(String(100), nullable=False, unique=True)
    email = Column(String(255), nullable=True)
    default_timezone = Column(String(50), nullable=False, default="UTC")  # IANA tz
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

"""Pydantic schemas for Events."""
from __future__ import annotations
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field

from event_reminders.models.event import AccessType, EventMode, EventStatus, SubscriptionTier
from event_reminders.models.registration import RegistrationStatus


class EventFields(BaseModel):
    """Fields shared by standalone events and recurring templates."""

    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    start_time_utc: datetime
    end_time_utc: datetime
    timezone: str = "UTC"
    location: Optional[str] = None
    virtual_link: Optional[str] = None
    mode: EventMode = EventMode.online
    is_public: bool = True
    access_type: AccessType = AccessType.free
    price: Optional[Decimal] = Field(default=None, ge=0)
    free_tiers: list[SubscriptionTier] = []
    max_attendees: Optional[int] = Field(default=None, gt=0)
    tags: list[str] = []


class EventCreate(EventFields):
    status: EventStatus = EventStatus.published


class EventUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    start_time_utc: Optional[datetime] = None
    end_time_utc: Optional[datetime] = None
    timezone: Optional[str] = None
    location: Optional[str] = None
    virtual_link: Optional[str] = None
    mode: Optional[EventMode] = None
    is_public: Optional[bool] = None
    status: Optional[EventStatus] = None
    max_attendees: Optional[int] = Field(default=None, gt=0)
    tags: Optional[list[str]] = None
    version: int  # required for optimistic locking


class EventOut(BaseModel):
    event_id: str
    title: str
    description: Optional[str] = None
    start_time_utc: datetime
    end_time_utc: datetime
    timezone: str
    location: Optional[str] = None
    virtual_link: Optional[str] = None
    mode: EventMode
    is_public: bool
    access_type: AccessType
    price: Optional[Decimal] = None
    free_tiers: list[SubscriptionTier] = []
    max_attendees: Optional[int] = None
    tags: list[str] = []
    creator_id: str
    status: EventStatus
    series_id: Optional[str] = None
    original_date: Optional[date] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    version: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class EventCancelRequest(BaseModel):
    cancel_reason: Optional[str] = None
    version: int  # required for optimistic locking


class RegistrationOut(BaseModel):
    event_id: str
    user_id: str
    status: RegistrationStatus
    registered_at: datetime

    model_config = {"from_attributes": True}

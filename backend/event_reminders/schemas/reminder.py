"""Pydantic schemas for Reminders.

Delivery metadata is a tagged union keyed by ``kind`` (EMAIL / PUSH / SMS);
each variant only carries the fields its channel uses. The geofence,
context and repeat settings are stored as given and are not evaluated
before dispatch.
"""
from __future__ import annotations
from datetime import datetime
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field

from event_reminders.models.reminder import ReminderStatus, ReminderType


class LocationTrigger(BaseModel):
    enabled: bool
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    radius: float = Field(gt=0)  # meters
    trigger_on_enter: bool = True
    trigger_on_exit: bool = False


class ContextTrigger(BaseModel):
    enabled: bool
    weather_condition: Optional[Literal["any", "sunny", "rainy", "cloudy", "snowy"]] = None
    traffic_condition: Optional[Literal["any", "light", "moderate", "heavy"]] = None
    time_of_day: Optional[Literal["any", "morning", "afternoon", "evening", "night"]] = None


class RepeatSettings(BaseModel):
    interval: int = Field(gt=0)  # minutes
    max_occurrences: Optional[int] = Field(default=None, gt=0)
    stop_on_response: bool = True


class _MetadataBase(BaseModel):
    location_based: Optional[LocationTrigger] = None
    context_based: Optional[ContextTrigger] = None
    repeat: Optional[RepeatSettings] = None


class EmailMetadata(_MetadataBase):
    kind: Literal["EMAIL"] = "EMAIL"
    email_subject: Optional[str] = None
    email_template: Optional[str] = None


class PushAction(BaseModel):
    action: str
    title: str
    icon: Optional[str] = None


class PushMetadata(_MetadataBase):
    kind: Literal["PUSH"] = "PUSH"
    push_title: Optional[str] = None
    push_body: Optional[str] = None
    push_icon: Optional[str] = None
    push_actions: list[PushAction] = []


class SmsMetadata(_MetadataBase):
    kind: Literal["SMS"] = "SMS"
    sms_template: Optional[str] = None


ReminderMetadata = Annotated[Union[EmailMetadata, PushMetadata, SmsMetadata], Field(discriminator="kind")]


class ReminderCreate(BaseModel):
    type: ReminderType
    trigger_time: datetime
    metadata: Optional[ReminderMetadata] = None


class ReminderUpdate(BaseModel):
    type: Optional[ReminderType] = None
    trigger_time: Optional[datetime] = None
    metadata: Optional[ReminderMetadata] = None


class ReminderOut(BaseModel):
    reminder_id: str
    event_id: str
    user_id: str
    type: ReminderType
    trigger_time: datetime
    status: ReminderStatus
    retry_count: int
    last_error: Optional[str] = None
    sent_at: Optional[datetime] = None
    metadata: Optional[dict] = Field(default=None, validation_alias="delivery_metadata")
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True, "populate_by_name": True}


class ReminderTypeCounts(BaseModel):
    email: int = 0
    push: int = 0
    sms: int = 0


class ReminderStats(BaseModel):
    total: int
    pending: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: int = 0
    by_type: ReminderTypeCounts


class ReminderPagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class ReminderList(BaseModel):
    reminders: list[ReminderOut]
    stats: ReminderStats
    pagination: ReminderPagination

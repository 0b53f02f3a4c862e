"""Pydantic schemas for recurring series and their instances."""
from __future__ import annotations
import datetime as dt
from datetime import datetime
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field

from event_reminders.models.recurring_series import Frequency, LunarPhase
from event_reminders.schemas.event import EventFields, EventOut


class RecurrenceIn(BaseModel):
    freq: Frequency
    interval: int = Field(default=1, ge=1, le=999)
    by_weekday: Optional[list[int]] = None     # 0=Monday .. 6=Sunday
    by_month_day: Optional[list[int]] = None
    by_month: Optional[list[int]] = None
    count: Optional[int] = Field(default=None, ge=1)
    until: Optional[datetime] = None
    lunar_phase: Optional[LunarPhase] = None


class RecurringSeriesCreate(EventFields):
    recurrence: RecurrenceIn


class RecurringSeriesUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    location: Optional[str] = None
    virtual_link: Optional[str] = None
    is_public: Optional[bool] = None
    max_attendees: Optional[int] = Field(default=None, gt=0)
    tags: Optional[list[str]] = None
    recurrence: Optional[RecurrenceIn] = None


class RecurringSeriesOut(BaseModel):
    series_id: str
    parent_event_id: str
    frequency: Frequency
    interval: int
    until: Optional[datetime] = None
    max_occurrences: Optional[int] = None
    by_weekday: Optional[list[int]] = None
    by_month_day: Optional[list[int]] = None
    by_month: Optional[list[int]] = None
    lunar_phase: Optional[LunarPhase] = None
    exceptions: list[str] = []
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class RecurringSeriesDetail(BaseModel):
    series: RecurringSeriesOut
    parent_event: EventOut
    description: str
    stats: dict[str, int | bool] = {}


class CancelInstance(BaseModel):
    action: Literal["cancel"]
    date: dt.date


class ModifyInstance(BaseModel):
    action: Literal["modify"]
    date: dt.date
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    start_time_utc: Optional[datetime] = None
    end_time_utc: Optional[datetime] = None
    location: Optional[str] = None
    virtual_link: Optional[str] = None


InstanceException = Annotated[Union[CancelInstance, ModifyInstance], Field(discriminator="action")]


class InstanceOut(BaseModel):
    series_id: Optional[str] = None
    event_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    start_time_utc: datetime
    end_time_utc: datetime
    date: dt.date
    timezone: str
    location: Optional[str] = None
    virtual_link: Optional[str] = None
    mode: Optional[str] = None
    is_public: bool
    status: str
    is_modified: bool = False


class InstanceCounts(BaseModel):
    total: int
    upcoming: int
    past: int
    exceptions: int
    cancelled: int


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class InstanceList(BaseModel):
    instances: list[InstanceOut]
    counts: InstanceCounts
    pagination: Pagination


class InstanceExceptionResult(BaseModel):
    action: str
    date: dt.date
    series: RecurringSeriesOut
    replacement_event: Optional[EventOut] = None


class SeriesPagination(BaseModel):
    page: int
    limit: int
    total: int
    has_more: bool


class RecurringSeriesList(BaseModel):
    items: list[RecurringSeriesDetail]
    pagination: SeriesPagination

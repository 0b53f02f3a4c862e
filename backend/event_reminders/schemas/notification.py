"""Pydantic schemas for Notifications."""
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel

from event_reminders.models.notification import NotificationPriority, NotificationType


class NotificationOut(BaseModel):
    notification_id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    priority: NotificationPriority
    data: Optional[dict[str, Any]] = None
    is_read: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class NotificationPagination(BaseModel):
    limit: int
    offset: int
    total: int


class NotificationList(BaseModel):
    notifications: list[NotificationOut]
    unread_count: int
    total_count: int
    has_more: bool
    pagination: NotificationPagination

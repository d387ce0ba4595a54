from __future__ import annotations

from datetime import datetime
from typing import List, Literal

from pydantic import BaseModel, Field


NotificationType = Literal["request", "accepted", "declined", "completed"]


class Notification(BaseModel):
    id: str = Field(alias="_id")
    user_id: str
    title: str
    message: str
    type: NotificationType | None = None
    related_request_id: str | None = None
    is_read: bool = False
    created_at: datetime | None = None

    model_config = {"populate_by_name": True}


class NotificationFeed(BaseModel):
    notifications: List[Notification]
    unread_count: int


class MarkedRead(BaseModel):
    updated: int

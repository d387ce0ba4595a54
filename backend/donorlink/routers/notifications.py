from __future__ import annotations

from fastapi import APIRouter

from ..database import settings
from ..models.notification import MarkedRead, NotificationFeed
from ..services.notifications import NotificationStore
from .auth import CurrentProfile, Database

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/", response_model=NotificationFeed)
async def list_notifications(profile: CurrentProfile, database: Database) -> NotificationFeed:
    return await NotificationStore(database).feed(profile["_id"], settings.notification_feed_limit)


@router.post("/read-all", response_model=MarkedRead)
async def mark_all_read(profile: CurrentProfile, database: Database) -> MarkedRead:
    return MarkedRead(updated=await NotificationStore(database).mark_all_read(profile["_id"]))


@router.post("/{notification_id}/read", response_model=MarkedRead)
async def mark_read(notification_id: str, profile: CurrentProfile, database: Database) -> MarkedRead:
    return MarkedRead(updated=await NotificationStore(database).mark_read(profile["_id"], notification_id))

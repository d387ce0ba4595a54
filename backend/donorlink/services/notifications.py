from __future__ import annotations

from datetime import datetime, timezone

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from ..errors import NotFound
from ..models.notification import Notification, NotificationFeed, NotificationType
from ..schemas.documents import object_id, serialize_document
from ..utils.logging import store_unavailable


class NotificationStore:
    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self.notifications = database.get_collection("notifications")

    async def create(
        self,
        user_id: ObjectId,
        title: str,
        message: str,
        kind: NotificationType,
        related_request_id: ObjectId | None = None,
    ) -> Notification:
        document = {
            "user_id": user_id,
            "title": title,
            "message": message,
            "type": kind,
            "related_request_id": related_request_id,
            "is_read": False,
            "created_at": datetime.now(timezone.utc),
        }
        result = await self.notifications.insert_one(document)
        document["_id"] = result.inserted_id
        return Notification(**serialize_document(document))

    async def discard(self, notification_id: str | ObjectId) -> None:
        await self.notifications.delete_one({"_id": object_id(notification_id, "notification")})

    async def feed(self, user_id: ObjectId, limit: int) -> NotificationFeed:
        try:
            cursor = self.notifications.find({"user_id": user_id}).sort([("created_at", -1), ("_id", -1)]).limit(limit)
            items = [Notification(**serialize_document(doc)) async for doc in cursor]
            unread = await self.notifications.count_documents({"user_id": user_id, "is_read": False})
        except PyMongoError as exc:
            raise store_unavailable("notification_feed", exc) from exc
        return NotificationFeed(notifications=items, unread_count=unread)

    async def mark_all_read(self, user_id: ObjectId) -> int:
        try:
            result = await self.notifications.update_many({"user_id": user_id, "is_read": False}, {"$set": {"is_read": True}})
        except PyMongoError as exc:
            raise store_unavailable("mark_all_read", exc) from exc
        return result.modified_count

    async def mark_read(self, user_id: ObjectId, notification_id: str) -> int:
        # scoped to the addressee; other profiles' rows look missing
        try:
            result = await self.notifications.update_one(
                {"_id": object_id(notification_id, "notification"), "user_id": user_id},
                {"$set": {"is_read": True}},
            )
        except PyMongoError as exc:
            raise store_unavailable("mark_read", exc) from exc
        if not result.matched_count:
            raise NotFound("Notification not found")
        return result.modified_count

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List

from bson import ObjectId
from loguru import logger
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from ..errors import NotFound, ValidationError
from ..models.profile import Area, District, OwnerProfile, ProfileAttributes, ProfileUpdate, State
from ..schemas.documents import object_id, optional_object_id, serialize_document
from ..utils.logging import store_unavailable


def owner_profile(document: Dict[str, Any], area: Dict[str, Any] | None = None) -> OwnerProfile:
    serialized = serialize_document(document)
    if area is not None:
        serialized["area"] = Area(**serialize_document(area))
    return OwnerProfile(**serialized)


class ProfileStore:
    """Adapter over the `profiles` collection and the read-only location tables."""

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self.db = database
        self.profiles = database.get_collection("profiles")

    async def create(self, user_id: ObjectId, attributes: ProfileAttributes) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        document = {
            **attributes.model_dump(),
            "user_id": user_id,
            "area_id": optional_object_id(attributes.area_id, "area"),
            "is_available": True,
            "last_donation_date": None,
            "created_at": now,
            "updated_at": now,
        }
        if not attributes.is_donor:
            # medical disclosure is only collected from donors
            document.update(
                is_on_medication=False,
                medication_details=None,
                has_medical_condition=False,
                medical_condition_details=None,
            )
        try:
            result = await self.profiles.insert_one(document)
        except PyMongoError as exc:
            raise store_unavailable("create_profile", exc) from exc
        document["_id"] = result.inserted_id
        logger.info("Profile {} created for account {}", result.inserted_id, user_id)
        return document

    async def get(self, profile_id: str | ObjectId) -> Dict[str, Any]:
        try:
            document = await self.profiles.find_one({"_id": object_id(profile_id, "profile")})
        except PyMongoError as exc:
            raise store_unavailable("get_profile", exc) from exc
        if not document:
            raise NotFound("Profile not found")
        return document

    async def get_for_user(self, user_id: str | ObjectId) -> Dict[str, Any]:
        try:
            document = await self.profiles.find_one({"user_id": object_id(user_id, "account")})
        except PyMongoError as exc:
            raise store_unavailable("get_profile_for_user", exc) from exc
        if not document:
            raise NotFound("Profile not found")
        return document

    async def find(self, query: Dict[str, Any], limit: int = 0) -> List[Dict[str, Any]]:
        try:
            cursor = self.profiles.find(query).sort("full_name", 1)
            if limit:
                cursor = cursor.limit(limit)
            return await cursor.to_list(length=None)
        except PyMongoError as exc:
            raise store_unavailable("find_profiles", exc) from exc

    async def update(self, profile_id: str | ObjectId, payload: ProfileUpdate) -> Dict[str, Any]:
        changes = payload.model_dump(exclude_unset=True)
        if "full_name" in changes and changes["full_name"] is None:
            raise ValidationError("Full name cannot be empty")
        if "area_id" in changes:
            changes["area_id"] = optional_object_id(changes["area_id"], "area")
            if changes["area_id"] is not None:
                await self.get_area(changes["area_id"])
        changes["updated_at"] = datetime.now(timezone.utc)
        try:
            updated = await self.profiles.find_one_and_update(
                {"_id": object_id(profile_id, "profile")},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise store_unavailable("update_profile", exc) from exc
        if not updated:
            raise NotFound("Profile not found")
        logger.info("Profile {} updated: {}", profile_id, sorted(key for key in changes if key != "updated_at"))
        return updated

    async def record_donation(self, donor_id: ObjectId, when: datetime) -> None:
        try:
            await self.profiles.update_one(
                {"_id": donor_id},
                {"$set": {"last_donation_date": when, "updated_at": when}},
            )
        except PyMongoError as exc:
            raise store_unavailable("record_donation", exc) from exc

    async def areas_by_id(self, area_ids: Iterable[ObjectId | None]) -> Dict[ObjectId, Dict[str, Any]]:
        wanted = list({area_id for area_id in area_ids if area_id is not None})
        if not wanted:
            return {}
        try:
            cursor = self.db.get_collection("areas").find({"_id": {"$in": wanted}})
            return {area["_id"]: area async for area in cursor}
        except PyMongoError as exc:
            raise store_unavailable("areas_by_id", exc) from exc

    async def with_area(self, document: Dict[str, Any]) -> OwnerProfile:
        areas = await self.areas_by_id([document.get("area_id")])
        return owner_profile(document, areas.get(document.get("area_id")))

    async def get_area(self, area_id: str | ObjectId) -> Dict[str, Any]:
        try:
            area = await self.db.get_collection("areas").find_one({"_id": object_id(area_id, "area")})
        except PyMongoError as exc:
            raise store_unavailable("get_area", exc) from exc
        if not area:
            raise NotFound("Area not found")
        return area

    async def list_states(self) -> List[State]:
        return [State(**serialize_document(doc)) for doc in await self._ordered("states", {})]

    async def list_districts(self, state_id: str | None = None) -> List[District]:
        query = {"state_id": object_id(state_id, "state")} if state_id else {}
        return [District(**serialize_document(doc)) for doc in await self._ordered("districts", query)]

    async def list_areas(self) -> List[Area]:
        return [Area(**serialize_document(doc)) for doc in await self._ordered("areas", {})]

    async def _ordered(self, collection: str, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            return await self.db.get_collection(collection).find(query).sort("name", 1).to_list(length=None)
        except PyMongoError as exc:
            raise store_unavailable(f"list_{collection}", exc) from exc

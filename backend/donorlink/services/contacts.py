from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Literal

from bson import ObjectId
from loguru import logger
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError, PyMongoError

from ..errors import AlreadyExists, DonorLinkError, SelfReference, ValidationError
from ..models.profile import ProfileView
from ..schemas.documents import object_id
from ..utils.logging import store_unavailable
from ..utils.phone import match_key, match_keys
from .profiles import ProfileStore
from .visibility import VisibilityResolver

ContactOutcome = Literal["added", "already_exists", "failed"]

SEARCH_LIMIT = 20


@dataclass
class BulkAddResult:
    outcomes: Dict[str, ContactOutcome] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    def count(self, outcome: ContactOutcome) -> int:
        return sum(1 for value in self.outcomes.values() if value == outcome)


class ContactGraph:
    """Directed owner -> contact edges stored in `user_contacts`."""

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self.edges = database.get_collection("user_contacts")
        self.store = ProfileStore(database)
        self.resolver = VisibilityResolver(database)

    async def add_contact(self, owner_id: ObjectId, target: str | ObjectId) -> Dict[str, Any]:
        target_id = object_id(target, "profile")
        if owner_id == target_id:
            raise SelfReference("You cannot add yourself as a contact")
        await self.store.get(target_id)
        edge = {
            "user_id": owner_id,
            "contact_user_id": target_id,
            "created_at": datetime.now(timezone.utc),
        }
        try:
            result = await self.edges.insert_one(edge)
        except DuplicateKeyError as exc:
            raise AlreadyExists("This profile is already in your contacts") from exc
        except PyMongoError as exc:
            raise store_unavailable("add_contact", exc) from exc
        edge["_id"] = result.inserted_id
        logger.info("Contact {} -> {} added", owner_id, target_id)
        return edge

    async def remove_contact(self, owner_id: ObjectId, target: str | ObjectId) -> bool:
        target_id = object_id(target, "profile")
        try:
            result = await self.edges.delete_one({"user_id": owner_id, "contact_user_id": target_id})
        except PyMongoError as exc:
            raise store_unavailable("remove_contact", exc) from exc
        if result.deleted_count:
            logger.info("Contact {} -> {} removed", owner_id, target_id)
        return bool(result.deleted_count)

    async def is_contact(self, owner_id: ObjectId, target: str | ObjectId) -> bool:
        target_id = object_id(target, "profile")
        try:
            edge = await self.edges.find_one({"user_id": owner_id, "contact_user_id": target_id})
        except PyMongoError as exc:
            raise store_unavailable("is_contact", exc) from exc
        return edge is not None

    async def contact_ids(self, owner_id: ObjectId) -> List[ObjectId]:
        try:
            return [edge["contact_user_id"] async for edge in self.edges.find({"user_id": owner_id})]
        except PyMongoError as exc:
            raise store_unavailable("contact_ids", exc) from exc

    async def list_contacts(self, owner_id: ObjectId) -> List[ProfileView]:
        ids = await self.contact_ids(owner_id)
        if not ids:
            return []
        profiles = await self.store.find({"_id": {"$in": ids}})
        return await self.resolver.view_many(owner_id, profiles)

    async def import_by_phone_match(self, owner_id: ObjectId, phone_numbers: Iterable[str]) -> List[ProfileView]:
        """Donors whose stored phone shares its last ten digits with any given number.

        No edges are created; callers pick from the result and add contacts.
        """
        wanted = match_keys(phone_numbers)
        if not wanted:
            return []
        donors = await self.store.find({"is_donor": True, "_id": {"$ne": owner_id}, "phone": {"$ne": None}})
        matches = [donor for donor in donors if match_key(donor.get("phone")) in wanted]
        logger.info("Phone import for {}: {} numbers, {} donor matches", owner_id, len(wanted), len(matches))
        return await self.resolver.view_many(owner_id, matches)

    async def bulk_add(self, owner_id: ObjectId, targets: Iterable[str]) -> BulkAddResult:
        result = BulkAddResult()
        for target in dict.fromkeys(targets):
            try:
                await self.add_contact(owner_id, target)
            except AlreadyExists:
                result.outcomes[target] = "already_exists"
            except DonorLinkError as exc:
                result.outcomes[target] = "failed"
                result.errors[target] = exc.detail
            else:
                result.outcomes[target] = "added"
        logger.info(
            "Bulk contact add for {}: {} added, {} existing, {} failed",
            owner_id,
            result.count("added"),
            result.count("already_exists"),
            result.count("failed"),
        )
        return result

    async def search_donors(self, owner_id: ObjectId, query: str) -> List[ProfileView]:
        query = query.strip()
        if not query:
            raise ValidationError("Please enter a name or phone number")
        pattern = re.escape(query)
        donors = await self.store.find(
            {
                "is_donor": True,
                "_id": {"$ne": owner_id},
                "$or": [
                    {"full_name": {"$regex": pattern, "$options": "i"}},
                    {"phone": {"$regex": pattern}},
                ],
            },
            limit=SEARCH_LIMIT,
        )
        return await self.resolver.view_many(owner_id, donors, listing=True)

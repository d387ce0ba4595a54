from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Set

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from ..models.profile import Area, ProfileView, PublicProfile, VisibilityReason
from ..models.request import CONNECTED_STATUSES
from ..schemas.documents import serialize_document
from ..utils.logging import store_unavailable
from .profiles import ProfileStore, owner_profile

PUBLIC_FIELDS = (
    "_id",
    "full_name",
    "blood_group",
    "is_donor",
    "is_available",
    "visibility",
    "area_id",
    "district",
    "state",
    "last_donation_date",
)


@dataclass(frozen=True)
class VisibilityDecision:
    masked_phone: bool
    reason: VisibilityReason


@dataclass
class Relationships:
    """Standing relationships between one viewer and a batch of candidates."""

    contact_of: Set[ObjectId] = field(default_factory=set)
    connected: Set[ObjectId] = field(default_factory=set)
    added_by_viewer: Set[ObjectId] = field(default_factory=set)


def resolve_visibility(
    viewer_id: ObjectId,
    candidate_id: ObjectId,
    viewer_is_contact: bool,
    has_connection: bool,
) -> VisibilityDecision:
    """Decide whether the candidate's phone is exposed to the viewer.

    The phone is masked for everyone except the candidate, profiles the
    candidate added as contacts, and profiles sharing an accepted or completed
    request with the candidate. The visibility policy does not relax this; it
    only controls whether the candidate is listed in area searches.
    """
    if viewer_id == candidate_id:
        return VisibilityDecision(masked_phone=False, reason="self")
    if has_connection:
        return VisibilityDecision(masked_phone=False, reason="accepted_request")
    if viewer_is_contact:
        return VisibilityDecision(masked_phone=False, reason="contact")
    return VisibilityDecision(masked_phone=True, reason="masked")


def is_listable(candidate: Dict[str, Any], decision: VisibilityDecision) -> bool:
    if candidate.get("visibility", "everyone") == "everyone":
        return True
    return not decision.masked_phone


def public_profile(
    candidate: Dict[str, Any],
    decision: VisibilityDecision,
    is_contact: bool = False,
    area: Dict[str, Any] | None = None,
) -> PublicProfile:
    serialized = serialize_document({key: candidate.get(key) for key in PUBLIC_FIELDS if key in candidate})
    return PublicProfile(
        **serialized,
        phone=None if decision.masked_phone else candidate.get("phone"),
        phone_masked=decision.masked_phone,
        visibility_reason=decision.reason,
        is_contact=is_contact,
        area=Area(**serialize_document(area)) if area else None,
    )


class VisibilityResolver:
    """Evaluates visibility per query; nothing is cached across calls."""

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self.contacts = database.get_collection("user_contacts")
        self.requests = database.get_collection("blood_requests")
        self.store = ProfileStore(database)

    async def relationships(self, viewer_id: ObjectId, candidate_ids: Iterable[ObjectId]) -> Relationships:
        ids = [candidate_id for candidate_id in set(candidate_ids) if candidate_id != viewer_id]
        found = Relationships()
        if not ids:
            return found
        try:
            async for edge in self.contacts.find({"user_id": {"$in": ids}, "contact_user_id": viewer_id}):
                found.contact_of.add(edge["user_id"])
            async for edge in self.contacts.find({"user_id": viewer_id, "contact_user_id": {"$in": ids}}):
                found.added_by_viewer.add(edge["contact_user_id"])
            cursor = self.requests.find(
                {
                    "status": {"$in": sorted(CONNECTED_STATUSES)},
                    "$or": [
                        {"patient_id": viewer_id, "donor_id": {"$in": ids}},
                        {"donor_id": viewer_id, "patient_id": {"$in": ids}},
                    ],
                }
            )
            async for request in cursor:
                other = request["donor_id"] if request["patient_id"] == viewer_id else request["patient_id"]
                found.connected.add(other)
        except PyMongoError as exc:
            raise store_unavailable("resolve_relationships", exc) from exc
        return found

    async def resolve(self, viewer_id: ObjectId, candidate: Dict[str, Any]) -> VisibilityDecision:
        candidate_id = candidate["_id"]
        found = await self.relationships(viewer_id, [candidate_id])
        return resolve_visibility(
            viewer_id,
            candidate_id,
            viewer_is_contact=candidate_id in found.contact_of,
            has_connection=candidate_id in found.connected,
        )

    async def view(self, viewer_id: ObjectId, candidate: Dict[str, Any]) -> ProfileView:
        profiles = await self.view_many(viewer_id, [candidate])
        return profiles[0]

    async def view_many(
        self,
        viewer_id: ObjectId,
        candidates: List[Dict[str, Any]],
        listing: bool = False,
    ) -> List[ProfileView]:
        """Project candidates for the viewer, joined with their areas.

        With ``listing`` set, contacts-only profiles without a standing
        relationship are dropped instead of returned masked.
        """
        found = await self.relationships(viewer_id, [candidate["_id"] for candidate in candidates])
        areas = await self.store.areas_by_id(candidate.get("area_id") for candidate in candidates)
        views: List[ProfileView] = []
        for candidate in candidates:
            candidate_id = candidate["_id"]
            area = areas.get(candidate.get("area_id"))
            decision = resolve_visibility(
                viewer_id,
                candidate_id,
                viewer_is_contact=candidate_id in found.contact_of,
                has_connection=candidate_id in found.connected,
            )
            if decision.reason == "self":
                views.append(owner_profile(candidate, area))
                continue
            if listing and not is_listable(candidate, decision):
                continue
            views.append(public_profile(candidate, decision, candidate_id in found.added_by_viewer, area))
        return views
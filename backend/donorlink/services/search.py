from __future__ import annotations

from typing import Any, Dict, List, Sequence

from motor.motor_asyncio import AsyncIOMotorDatabase

from ..database import settings
from ..errors import ValidationError
from ..models.profile import ProfileView
from ..schemas.documents import object_id
from .contacts import ContactGraph
from .profiles import ProfileStore
from .visibility import VisibilityResolver


def contacts_first(views: List[ProfileView]) -> List[ProfileView]:
    # stable sort keeps the store's name ordering inside each group
    return sorted(views, key=lambda view: not getattr(view, "is_contact", False))


def matches_query(view: ProfileView, query: str) -> bool:
    needle = query.lower()
    return (
        needle in view.full_name.lower()
        or (view.phone is not None and needle in view.phone)
        or needle in view.blood_group.lower()
    )


class DonorSearch:
    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self.store = ProfileStore(database)
        self.resolver = VisibilityResolver(database)
        self.contacts = ContactGraph(database)

    async def search_by_area(self, viewer: Dict[str, Any], area_id: str) -> List[ProfileView]:
        area = await self.store.get_area(area_id)
        donors = await self.store.find(
            {"is_donor": True, "is_available": True, "area_id": area["_id"], "_id": {"$ne": viewer["_id"]}}
        )
        return contacts_first(await self.resolver.view_many(viewer["_id"], donors, listing=True))

    async def search_by_districts(
        self,
        viewer: Dict[str, Any],
        districts: Sequence[str],
        query: str | None = None,
        contacts_only: bool = False,
    ) -> List[ProfileView]:
        names = list(dict.fromkeys(name for name in districts if name))
        if not names:
            raise ValidationError("Please select at least one district")
        if len(names) > settings.max_search_districts:
            raise ValidationError(f"Maximum {settings.max_search_districts} districts allowed")
        patients = await self.store.find({"is_donor": False, "district": {"$in": names}, "_id": {"$ne": viewer["_id"]}})
        views = await self.resolver.view_many(viewer["_id"], patients, listing=True)
        if query and query.strip():
            views = [view for view in views if matches_query(view, query.strip())]
        if contacts_only:
            views = [view for view in views if getattr(view, "is_contact", False)]
        return contacts_first(views)

    async def network_matches(self, viewer: Dict[str, Any]) -> List[ProfileView]:
        base = {
            "is_donor": True,
            "is_available": True,
            "blood_group": viewer["blood_group"],
            "_id": {"$ne": viewer["_id"]},
        }
        contact_ids = await self.contacts.contact_ids(viewer["_id"])
        if not contact_ids:
            donors = await self.store.find(base, limit=settings.network_suggestion_limit)
            return await self.resolver.view_many(viewer["_id"], donors, listing=True)
        donors = await self.store.find({**base, "_id": {"$in": contact_ids, "$ne": viewer["_id"]}})
        return await self.resolver.view_many(viewer["_id"], donors)

    async def get_profile(self, viewer: Dict[str, Any], profile_id: str) -> ProfileView:
        candidate = await self.store.get(object_id(profile_id, "profile"))
        return await self.resolver.view(viewer["_id"], candidate)

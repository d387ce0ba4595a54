from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List

from bson import ObjectId
from loguru import logger
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from ..database import CompletionAuthority, settings
from ..errors import Conflict, ExternalServiceError, IllegalTransition, NotFound, ValidationError
from ..models.notification import Notification
from ..models.request import (
    TRANSITIONS,
    BloodRequest,
    BloodRequestCreate,
    BloodRequestDetail,
    RequestParty,
    RequestStatus,
)
from ..schemas.documents import object_id, optional_object_id, serialize_document
from ..utils.logging import store_unavailable
from .notifications import NotificationStore
from .profiles import ProfileStore
from .realtime import NotificationDispatcher
from .storage import report_owner
from .visibility import VisibilityResolver

NEWEST_FIRST = [("created_at", -1), ("_id", -1)]

PATIENT_MESSAGES = {
    "accepted": ("Request accepted", "{donor} accepted your blood request. Contact details are now visible."),
    "declined": ("Request declined", "A donor declined your blood request."),
    "completed": ("Donation completed", "Your blood request has been marked as completed."),
}


def to_request(document: Dict[str, Any]) -> BloodRequest:
    return BloodRequest(**serialize_document(document))


class RequestLifecycle:
    """Creates blood requests and moves them through pending -> accepted/declined -> completed.

    Every status change is one conditional update on the current status, so a
    concurrent caller that loses the race gets ``Conflict`` instead of
    overwriting the winner.
    """

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        dispatcher: NotificationDispatcher | None = None,
        completion_authority: CompletionAuthority | None = None,
    ) -> None:
        self.requests = database.get_collection("blood_requests")
        self.profiles = ProfileStore(database)
        self.notifications = NotificationStore(database)
        self.resolver = VisibilityResolver(database)
        self.dispatcher = dispatcher
        self.completion_authority = completion_authority or settings.completion_authority

    async def create_request(self, patient_id: ObjectId, payload: BloodRequestCreate) -> BloodRequest:
        if payload.units_required < 1:
            raise ValidationError("At least one unit must be requested")
        patient = await self.profiles.get(patient_id)
        if payload.medical_report_path and report_owner(payload.medical_report_path) != str(patient["user_id"]):
            raise ValidationError("Only reports uploaded by your own account can be attached")
        donor_id = optional_object_id(payload.donor_id, "donor")
        donor = None
        if donor_id is not None:
            if donor_id == patient_id:
                raise ValidationError("A request cannot target the requesting profile")
            donor = await self.profiles.get(donor_id)
            if not donor.get("is_donor"):
                raise ValidationError("Requests can only be sent to donors")

        now = datetime.now(timezone.utc)
        document = {
            **payload.model_dump(),
            "patient_id": patient_id,
            "donor_id": donor_id,
            "area_id": optional_object_id(payload.area_id, "area"),
            "status": "pending",
            "created_at": now,
            "updated_at": now,
        }
        notification = None
        try:
            result = await self.requests.insert_one(document)
            document["_id"] = result.inserted_id
            if donor is not None:
                notification = await self.notifications.create(
                    donor_id,
                    "New blood request",
                    f"{patient['full_name']} needs {payload.units_required} unit(s) of "
                    f"{payload.blood_group} blood ({payload.urgency}).",
                    "request",
                    result.inserted_id,
                )
        except PyMongoError as exc:
            if "_id" in document:
                await self._discard(document["_id"])
            raise store_unavailable("create_request", exc) from exc

        request = to_request(document)
        logger.info(
            "Request {} created by {} for donor {} ({}, {} unit(s))",
            request.id,
            patient_id,
            request.donor_id or "any",
            request.urgency,
            request.units_required,
        )
        await self._dispatch_created(request, donor, notification)
        return request

    async def get(self, request_id: str | ObjectId) -> Dict[str, Any]:
        try:
            document = await self.requests.find_one({"_id": object_id(request_id, "request")})
        except PyMongoError as exc:
            raise store_unavailable("get_request", exc) from exc
        if not document:
            raise NotFound("Request not found")
        return document

    async def get_for_party(self, request_id: str, viewer_id: ObjectId) -> Dict[str, Any]:
        document = await self.get(request_id)
        if viewer_id in (document["patient_id"], document.get("donor_id")):
            return document
        if document.get("donor_id") is None and document["status"] == "pending":
            viewer = await self.profiles.get(viewer_id)
            if viewer.get("is_donor") and viewer.get("blood_group") == document["blood_group"]:
                return document
        raise NotFound("Request not found")

    async def transition(self, request_id: str | ObjectId, actor_id: ObjectId, new_status: RequestStatus) -> BloodRequest:
        document = await self.get(request_id)
        current = document["status"]
        role = TRANSITIONS.get((current, new_status))
        if role is None:
            raise IllegalTransition(f"Cannot move a {current} request to {new_status}")
        await self._authorize(role, document, actor_id, new_status)

        now = datetime.now(timezone.utc)
        assigned = document.get("donor_id")
        changes: Dict[str, Any] = {"status": new_status, "updated_at": now}
        if assigned is None:
            changes["donor_id"] = actor_id
        try:
            updated = await self.requests.find_one_and_update(
                {"_id": document["_id"], "status": current, "donor_id": assigned},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise store_unavailable("transition_request", exc) from exc
        if updated is None:
            raise Conflict("This request was already updated by someone else")

        notification = None
        try:
            notification = await self._notify_patient(updated)
            if new_status == "completed":
                await self.profiles.record_donation(updated["donor_id"], now)
        except (PyMongoError, ExternalServiceError) as exc:
            await self._revert(updated, document, notification)
            if isinstance(exc, ExternalServiceError):
                raise
            raise store_unavailable("transition_request", exc) from exc

        request = to_request(updated)
        logger.info("Request {} moved {} -> {} by {}", request.id, current, new_status, actor_id)
        if self.dispatcher is not None:
            await self.dispatcher.request_transitioned(request, current)
            await self.dispatcher.notification_created(notification)
        return request

    async def list_for_patient(self, patient_id: ObjectId) -> List[BloodRequest]:
        return await self._list({"patient_id": patient_id})

    async def list_pending_for_donor(self, donor_id: ObjectId) -> List[BloodRequest]:
        return await self._list({"donor_id": donor_id, "status": "pending"})

    async def list_for_donor(self, donor_id: ObjectId) -> List[BloodRequest]:
        return await self._list({"donor_id": donor_id})

    async def list_open_for_donor(self, donor: Dict[str, Any]) -> List[BloodRequest]:
        """Unassigned pending requests the donor's blood group can answer."""
        return await self._list(
            {
                "donor_id": None,
                "status": "pending",
                "blood_group": donor["blood_group"],
                "patient_id": {"$ne": donor["_id"]},
            }
        )

    async def with_parties(self, viewer_id: ObjectId, requests: List[BloodRequest]) -> List[BloodRequestDetail]:
        """Attach patient/donor summaries, each masked for the viewer."""
        party_ids = {object_id(pid) for request in requests for pid in (request.patient_id, request.donor_id) if pid}
        if not party_ids:
            return [BloodRequestDetail(**request.model_dump(by_alias=True)) for request in requests]
        profiles = await self.profiles.find({"_id": {"$in": list(party_ids)}})
        views = {view.id: view for view in await self.resolver.view_many(viewer_id, profiles)}
        details = []
        for request in requests:
            details.append(
                BloodRequestDetail(
                    **request.model_dump(by_alias=True),
                    patient=self._party(views.get(request.patient_id)),
                    donor=self._party(views.get(request.donor_id)) if request.donor_id else None,
                )
            )
        return details

    @staticmethod
    def _party(view) -> RequestParty | None:
        if view is None:
            return None
        return RequestParty(
            _id=view.id,
            full_name=view.full_name,
            phone=view.phone,
            phone_masked=getattr(view, "phone_masked", False),
        )

    async def _authorize(self, role: str, document: Dict[str, Any], actor_id: ObjectId, new_status: str) -> None:
        assigned = document.get("donor_id")
        if role == "donor":
            if assigned is None:
                if new_status != "accepted":
                    raise IllegalTransition("Only the assigned donor can decline a request")
                actor = await self.profiles.get(actor_id)
                if actor_id == document["patient_id"] or not actor.get("is_donor"):
                    raise IllegalTransition("Only a donor can accept this request")
                if actor.get("blood_group") != document["blood_group"]:
                    raise IllegalTransition("Your blood group does not match this request")
                return
            if assigned != actor_id:
                raise IllegalTransition("Only the assigned donor can respond to this request")
            return

        allowed = {
            "donor": {assigned},
            "patient": {document["patient_id"]},
            "either": {assigned, document["patient_id"]},
        }[self.completion_authority]
        if actor_id not in allowed:
            raise IllegalTransition(f"Only the {self.completion_authority} side can complete this request")

    async def _notify_patient(self, document: Dict[str, Any]) -> Notification:
        title, template = PATIENT_MESSAGES[document["status"]]
        donor_name = "The donor"
        if document.get("donor_id") is not None:
            donor = await self.profiles.get(document["donor_id"])
            donor_name = donor["full_name"]
        return await self.notifications.create(
            document["patient_id"],
            title,
            template.format(donor=donor_name),
            document["status"],
            document["_id"],
        )

    async def _revert(
        self,
        updated: Dict[str, Any],
        original: Dict[str, Any],
        notification: Notification | None = None,
    ) -> None:
        try:
            if notification is not None:
                await self.notifications.discard(notification.id)
            await self.requests.update_one(
                {"_id": updated["_id"], "status": updated["status"]},
                {
                    "$set": {
                        "status": original["status"],
                        "donor_id": original.get("donor_id"),
                        "updated_at": original.get("updated_at"),
                    }
                },
            )
            logger.warning("Request {} reverted to {} after a failed transition", updated["_id"], original["status"])
        except PyMongoError as exc:  # pragma: no cover - store down twice
            logger.error("Could not revert request {}: {}", updated["_id"], exc)

    async def _discard(self, request_id: ObjectId) -> None:
        try:
            await self.requests.delete_one({"_id": request_id, "status": "pending"})
        except PyMongoError as exc:  # pragma: no cover - store down twice
            logger.error("Could not discard request {}: {}", request_id, exc)

    async def _dispatch_created(
        self,
        request: BloodRequest,
        donor: Dict[str, Any] | None,
        notification: Notification | None,
    ) -> None:
        if self.dispatcher is None:
            return
        await self.dispatcher.request_created(request, donor.get("phone") if donor else None)
        if notification is not None:
            await self.dispatcher.notification_created(notification)

    async def _list(self, query: Dict[str, Any]) -> List[BloodRequest]:
        try:
            cursor = self.requests.find(query).sort(NEWEST_FIRST)
            return [to_request(doc) async for doc in cursor]
        except PyMongoError as exc:
            raise store_unavailable("list_requests", exc) from exc

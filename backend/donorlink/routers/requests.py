from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, status

from ..models.request import BloodRequestCreate, BloodRequestDetail, BloodRequestList, TransitionPayload
from ..services.realtime import NotificationDispatcher
from ..services.requests import RequestLifecycle, to_request
from .auth import CurrentProfile, Database

router = APIRouter(prefix="/requests", tags=["requests"])


def get_dispatcher(request: Request) -> NotificationDispatcher | None:
    return getattr(request.app.state, "dispatcher", None)


async def get_lifecycle(
    database: Database,
    dispatcher: Annotated[NotificationDispatcher | None, Depends(get_dispatcher)],
) -> RequestLifecycle:
    return RequestLifecycle(database, dispatcher)


Lifecycle = Annotated[RequestLifecycle, Depends(get_lifecycle)]


@router.post("/", response_model=BloodRequestDetail, status_code=status.HTTP_201_CREATED)
async def create_request(payload: BloodRequestCreate, profile: CurrentProfile, lifecycle: Lifecycle) -> BloodRequestDetail:
    created = await lifecycle.create_request(profile["_id"], payload)
    return (await lifecycle.with_parties(profile["_id"], [created]))[0]


@router.get("/mine", response_model=BloodRequestList)
async def list_my_requests(profile: CurrentProfile, lifecycle: Lifecycle) -> BloodRequestList:
    if profile.get("is_donor"):
        items = await lifecycle.list_for_donor(profile["_id"])
    else:
        items = await lifecycle.list_for_patient(profile["_id"])
    return BloodRequestList(requests=await lifecycle.with_parties(profile["_id"], items))


@router.get("/pending", response_model=BloodRequestList)
async def list_pending(profile: CurrentProfile, lifecycle: Lifecycle) -> BloodRequestList:
    items = await lifecycle.list_pending_for_donor(profile["_id"])
    return BloodRequestList(requests=await lifecycle.with_parties(profile["_id"], items))


@router.get("/open", response_model=BloodRequestList)
async def list_open(profile: CurrentProfile, lifecycle: Lifecycle) -> BloodRequestList:
    if not profile.get("is_donor"):
        return BloodRequestList(requests=[])
    items = await lifecycle.list_open_for_donor(profile)
    return BloodRequestList(requests=await lifecycle.with_parties(profile["_id"], items))


@router.get("/{request_id}", response_model=BloodRequestDetail)
async def get_request(request_id: str, profile: CurrentProfile, lifecycle: Lifecycle) -> BloodRequestDetail:
    document = await lifecycle.get_for_party(request_id, profile["_id"])
    return (await lifecycle.with_parties(profile["_id"], [to_request(document)]))[0]


@router.post("/{request_id}/transition", response_model=BloodRequestDetail)
async def transition_request(
    request_id: str,
    payload: TransitionPayload,
    profile: CurrentProfile,
    lifecycle: Lifecycle,
) -> BloodRequestDetail:
    updated = await lifecycle.transition(request_id, profile["_id"], payload.status)
    return (await lifecycle.with_parties(profile["_id"], [updated]))[0]

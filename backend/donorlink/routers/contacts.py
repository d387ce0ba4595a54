from __future__ import annotations

from typing import Dict, List

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from ..errors import AlreadyExists
from ..models.profile import ProfileList
from ..services.contacts import ContactGraph, ContactOutcome
from .auth import CurrentProfile, Database

router = APIRouter(prefix="/contacts", tags=["contacts"])


class AddContactPayload(BaseModel):
    contact_id: str


class BulkAddPayload(BaseModel):
    contact_ids: List[str] = Field(min_length=1)


class PhoneImportPayload(BaseModel):
    phone_numbers: List[str]


class ContactResult(BaseModel):
    contact_id: str
    outcome: ContactOutcome
    message: str


class BulkAddResponse(BaseModel):
    outcomes: Dict[str, ContactOutcome]
    errors: Dict[str, str]
    added: int
    already_existed: int
    failed: int


@router.get("/", response_model=ProfileList)
async def list_contacts(profile: CurrentProfile, database: Database) -> ProfileList:
    return ProfileList(profiles=await ContactGraph(database).list_contacts(profile["_id"]))


@router.post("/", response_model=ContactResult)
async def add_contact(payload: AddContactPayload, profile: CurrentProfile, database: Database) -> ContactResult:
    # an existing edge is informational, not a failure
    try:
        await ContactGraph(database).add_contact(profile["_id"], payload.contact_id)
    except AlreadyExists as exc:
        return ContactResult(contact_id=payload.contact_id, outcome="already_exists", message=exc.detail)
    return ContactResult(contact_id=payload.contact_id, outcome="added", message="Contact added successfully!")


@router.post("/bulk", response_model=BulkAddResponse)
async def bulk_add_contacts(payload: BulkAddPayload, profile: CurrentProfile, database: Database) -> BulkAddResponse:
    result = await ContactGraph(database).bulk_add(profile["_id"], payload.contact_ids)
    return BulkAddResponse(
        outcomes=result.outcomes,
        errors=result.errors,
        added=result.count("added"),
        already_existed=result.count("already_exists"),
        failed=result.count("failed"),
    )


@router.post("/import", response_model=ProfileList)
async def import_by_phone(payload: PhoneImportPayload, profile: CurrentProfile, database: Database) -> ProfileList:
    matches = await ContactGraph(database).import_by_phone_match(profile["_id"], payload.phone_numbers)
    return ProfileList(profiles=matches)


@router.get("/search", response_model=ProfileList)
async def search_donors(q: str, profile: CurrentProfile, database: Database) -> ProfileList:
    return ProfileList(profiles=await ContactGraph(database).search_donors(profile["_id"], q))


@router.get("/{contact_id}")
async def is_contact(contact_id: str, profile: CurrentProfile, database: Database) -> Dict[str, bool]:
    return {"is_contact": await ContactGraph(database).is_contact(profile["_id"], contact_id)}


@router.delete("/{contact_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_contact(contact_id: str, profile: CurrentProfile, database: Database) -> None:
    await ContactGraph(database).remove_contact(profile["_id"], contact_id)

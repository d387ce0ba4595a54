from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field


BloodGroup = Literal["A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-"]
Visibility = Literal["everyone", "contacts_only"]
VisibilityReason = Literal["self", "contact", "accepted_request", "masked"]


class State(BaseModel):
    id: str = Field(alias="_id")
    name: str


class District(BaseModel):
    id: str = Field(alias="_id")
    name: str
    state_id: str


class Area(BaseModel):
    id: str = Field(alias="_id")
    name: str
    city: str = ""


class MedicalDisclosure(BaseModel):
    is_on_medication: bool = False
    medication_details: str | None = None
    has_medical_condition: bool = False
    medical_condition_details: str | None = None


class OwnerProfile(MedicalDisclosure):
    """Full profile row, only ever returned to its owner."""

    id: str = Field(alias="_id")
    user_id: str
    full_name: str
    blood_group: BloodGroup
    is_donor: bool = False
    is_available: bool = True
    visibility: Visibility = "everyone"
    phone: str | None = None
    area_id: str | None = None
    district: str | None = None
    state: str | None = None
    last_donation_date: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    area: Optional[Area] = None

    model_config = {"populate_by_name": True}


class PublicProfile(BaseModel):
    """What another profile may see. Medical disclosure is never part of it."""

    id: str = Field(alias="_id")
    full_name: str
    blood_group: BloodGroup
    is_donor: bool = False
    is_available: bool = True
    visibility: Visibility = "everyone"
    phone: str | None = None
    phone_masked: bool = True
    visibility_reason: VisibilityReason = "masked"
    is_contact: bool = False
    area_id: str | None = None
    district: str | None = None
    state: str | None = None
    last_donation_date: datetime | None = None
    area: Optional[Area] = None

    model_config = {"populate_by_name": True}


ProfileView = Union[OwnerProfile, PublicProfile]


class ProfileAttributes(MedicalDisclosure):
    full_name: str = Field(min_length=1)
    phone: str | None = None
    blood_group: BloodGroup
    is_donor: bool = False
    area_id: str | None = None
    district: str | None = None
    state: str | None = None
    visibility: Visibility = "everyone"


class ProfileUpdate(BaseModel):
    full_name: str | None = Field(default=None, min_length=1)
    phone: str | None = None
    is_available: bool | None = None
    visibility: Visibility | None = None
    area_id: str | None = None
    district: str | None = None
    state: str | None = None
    last_donation_date: datetime | None = None
    is_on_medication: bool | None = None
    medication_details: str | None = None
    has_medical_condition: bool | None = None
    medical_condition_details: str | None = None


class ProfileList(BaseModel):
    profiles: List[ProfileView]

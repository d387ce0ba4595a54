from __future__ import annotations

from datetime import datetime
from typing import Dict, FrozenSet, List, Literal, Tuple

from pydantic import BaseModel, Field

from .profile import BloodGroup


Urgency = Literal["normal", "urgent", "critical"]
RequestStatus = Literal["pending", "accepted", "declined", "completed"]

CONNECTED_STATUSES: FrozenSet[str] = frozenset({"accepted", "completed"})

# (from, to) -> role allowed to perform it. "completion" is resolved from settings.
TRANSITIONS: Dict[Tuple[str, str], str] = {
    ("pending", "accepted"): "donor",
    ("pending", "declined"): "donor",
    ("accepted", "completed"): "completion",
}

# Position of each status along the request lifecycle, used to ignore stale events.
STATUS_RANK: Dict[str, int] = {"pending": 0, "accepted": 1, "declined": 1, "completed": 2}


class BloodRequest(BaseModel):
    id: str = Field(alias="_id")
    patient_id: str
    donor_id: str | None = None
    blood_group: BloodGroup
    urgency: Urgency = "normal"
    units_required: int = 1
    hospital_name: str | None = None
    message: str | None = None
    medical_report_path: str | None = None
    area_id: str | None = None
    status: RequestStatus = "pending"
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"populate_by_name": True}


class BloodRequestCreate(BaseModel):
    donor_id: str | None = None
    blood_group: BloodGroup
    urgency: Urgency = "normal"
    units_required: int = 1
    hospital_name: str | None = None
    message: str | None = None
    medical_report_path: str | None = None
    area_id: str | None = None


class TransitionPayload(BaseModel):
    status: RequestStatus


class RequestParty(BaseModel):
    """Counterparty summary shown next to a request."""

    id: str = Field(alias="_id")
    full_name: str
    phone: str | None = None
    phone_masked: bool = True

    model_config = {"populate_by_name": True}


class BloodRequestDetail(BloodRequest):
    patient: RequestParty | None = None
    donor: RequestParty | None = None


class BloodRequestList(BaseModel):
    requests: List[BloodRequestDetail]

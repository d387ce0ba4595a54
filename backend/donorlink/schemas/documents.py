from __future__ import annotations

from typing import Any, Dict

from bson import ObjectId
from bson.errors import InvalidId

from ..errors import NotFound

REFERENCE_FIELDS = (
    "_id",
    "user_id",
    "profile_id",
    "area_id",
    "state_id",
    "patient_id",
    "donor_id",
    "contact_user_id",
    "related_request_id",
)


def object_id(value: str | ObjectId, label: str = "record") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError) as exc:
        raise NotFound(f"{label.capitalize()} not found") from exc


def optional_object_id(value: str | ObjectId | None, label: str = "record") -> ObjectId | None:
    if value is None or value == "":
        return None
    return object_id(value, label)


def serialize_document(document: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a store document with every reference rendered as a string."""
    serialized = dict(document)
    for field in REFERENCE_FIELDS:
        if isinstance(serialized.get(field), ObjectId):
            serialized[field] = str(serialized[field])
    return serialized

from __future__ import annotations

from typing import Any, Dict

import pytest
import pytest_asyncio
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from donorlink.database import ensure_indexes
from donorlink.models.profile import ProfileAttributes
from donorlink.services.profiles import ProfileStore
from donorlink.services.realtime import NotificationDispatcher, RealtimeHub


@pytest_asyncio.fixture
async def database():
    client = AsyncMongoMockClient()
    db = client.get_database(f"donorlink_test_{ObjectId()}")
    await ensure_indexes(db)
    yield db


@pytest.fixture
def hub() -> RealtimeHub:
    return RealtimeHub()


class RecordingSms:
    def __init__(self) -> None:
        self.sent = []

    async def send_sms(self, message) -> bool:
        self.sent.append(message)
        return True


@pytest.fixture
def sms() -> RecordingSms:
    return RecordingSms()


@pytest.fixture
def dispatcher(hub, sms) -> NotificationDispatcher:
    return NotificationDispatcher(hub, sms)


@pytest.fixture
def make_profile(database):
    store = ProfileStore(database)

    async def _make(
        full_name: str,
        is_donor: bool = True,
        blood_group: str = "O+",
        phone: str | None = None,
        **extra: Any,
    ) -> Dict[str, Any]:
        attributes = ProfileAttributes(
            full_name=full_name,
            phone=phone,
            blood_group=blood_group,
            is_donor=is_donor,
            **{key: value for key, value in extra.items() if key in ProfileAttributes.model_fields},
        )
        profile = await store.create(ObjectId(), attributes)
        overrides = {key: value for key, value in extra.items() if key not in ProfileAttributes.model_fields}
        if overrides:
            await database.profiles.update_one({"_id": profile["_id"]}, {"$set": overrides})
            profile.update(overrides)
        return profile

    return _make

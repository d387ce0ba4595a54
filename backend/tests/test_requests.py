from __future__ import annotations

import asyncio

import pytest
from pymongo.errors import PyMongoError

from donorlink.errors import Conflict, ExternalServiceError, IllegalTransition, NotFound, ValidationError
from donorlink.models.request import BloodRequestCreate
from donorlink.services.notifications import NotificationStore
from donorlink.services.profiles import ProfileStore
from donorlink.services.requests import RequestLifecycle


def targeted(donor, **extra) -> BloodRequestCreate:
    return BloodRequestCreate(donor_id=str(donor["_id"]), blood_group=donor["blood_group"], **extra)


async def test_create_starts_pending_and_notifies_donor(database, make_profile):
    donor = await make_profile("Dana")
    patient = await make_profile("Pat", is_donor=False)

    request = await RequestLifecycle(database).create_request(patient["_id"], targeted(donor, units_required=2))

    assert request.status == "pending"
    assert request.donor_id == str(donor["_id"])
    notification = await database.notifications.find_one({"user_id": donor["_id"]})
    assert notification["type"] == "request"
    assert str(notification["related_request_id"]) == request.id


async def test_create_validates_units_and_parties(database, make_profile):
    donor = await make_profile("Dana")
    patient = await make_profile("Pat", is_donor=False)
    other_patient = await make_profile("Other", is_donor=False)
    lifecycle = RequestLifecycle(database)

    with pytest.raises(ValidationError):
        await lifecycle.create_request(patient["_id"], targeted(donor, units_required=0))
    with pytest.raises(ValidationError):
        await lifecycle.create_request(donor["_id"], targeted(donor))
    with pytest.raises(ValidationError):
        await lifecycle.create_request(patient["_id"], targeted(other_patient))
    assert await database.blood_requests.count_documents({}) == 0


async def test_broadcast_request_has_no_notification(database, make_profile):
    patient = await make_profile("Pat", is_donor=False)

    request = await RequestLifecycle(database).create_request(patient["_id"], BloodRequestCreate(blood_group="A-"))

    assert request.donor_id is None
    assert await database.notifications.count_documents({}) == 0


async def test_accept_then_complete_notifies_patient(database, make_profile):
    donor = await make_profile("Dana")
    patient = await make_profile("Pat", is_donor=False)
    lifecycle = RequestLifecycle(database)
    request = await lifecycle.create_request(patient["_id"], targeted(donor))

    accepted = await lifecycle.transition(request.id, donor["_id"], "accepted")
    completed = await lifecycle.transition(request.id, donor["_id"], "completed")

    assert accepted.status == "accepted"
    assert completed.status == "completed"
    kinds = [n["type"] async for n in database.notifications.find({"user_id": patient["_id"]}).sort("_id", 1)]
    assert kinds == ["accepted", "completed"]
    stored_donor = await database.profiles.find_one({"_id": donor["_id"]})
    assert stored_donor["last_donation_date"] is not None


async def test_declined_is_terminal(database, make_profile):
    donor = await make_profile("Dana")
    patient = await make_profile("Pat", is_donor=False)
    lifecycle = RequestLifecycle(database)
    request = await lifecycle.create_request(patient["_id"], targeted(donor))
    await lifecycle.transition(request.id, donor["_id"], "declined")

    for status in ("declined", "accepted", "completed"):
        with pytest.raises(IllegalTransition):
            await lifecycle.transition(request.id, donor["_id"], status)

    stored = await lifecycle.get(request.id)
    assert stored["status"] == "declined"


async def test_only_assigned_donor_responds(database, make_profile):
    donor = await make_profile("Dana")
    intruder = await make_profile("Ivan")
    patient = await make_profile("Pat", is_donor=False)
    lifecycle = RequestLifecycle(database)
    request = await lifecycle.create_request(patient["_id"], targeted(donor))

    with pytest.raises(IllegalTransition):
        await lifecycle.transition(request.id, intruder["_id"], "accepted")
    with pytest.raises(IllegalTransition):
        await lifecycle.transition(request.id, patient["_id"], "declined")
    assert (await lifecycle.get(request.id))["status"] == "pending"


async def test_completion_authority_is_configurable(database, make_profile):
    donor = await make_profile("Dana")
    patient = await make_profile("Pat", is_donor=False)
    donor_only = RequestLifecycle(database, completion_authority="donor")
    patient_only = RequestLifecycle(database, completion_authority="patient")
    request = await donor_only.create_request(patient["_id"], targeted(donor))
    await donor_only.transition(request.id, donor["_id"], "accepted")

    with pytest.raises(IllegalTransition):
        await donor_only.transition(request.id, patient["_id"], "completed")
    with pytest.raises(IllegalTransition):
        await patient_only.transition(request.id, donor["_id"], "completed")
    assert (await patient_only.transition(request.id, patient["_id"], "completed")).status == "completed"


async def test_concurrent_accepts_apply_once(database, make_profile):
    donor = await make_profile("Dana")
    patient = await make_profile("Pat", is_donor=False)
    lifecycle = RequestLifecycle(database)
    request = await lifecycle.create_request(patient["_id"], targeted(donor))

    results = await asyncio.gather(
        lifecycle.transition(request.id, donor["_id"], "accepted"),
        lifecycle.transition(request.id, donor["_id"], "accepted"),
        return_exceptions=True,
    )

    successes = [result for result in results if not isinstance(result, Exception)]
    failures = [result for result in results if isinstance(result, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], (Conflict, IllegalTransition))
    assert (await lifecycle.get(request.id))["status"] == "accepted"
    assert await database.notifications.count_documents({"user_id": patient["_id"]}) == 1


async def test_broadcast_accept_assigns_matching_donor(database, make_profile):
    patient = await make_profile("Pat", is_donor=False)
    match = await make_profile("Match", blood_group="B+")
    mismatch = await make_profile("Mismatch", blood_group="A+")
    lifecycle = RequestLifecycle(database)
    request = await lifecycle.create_request(patient["_id"], BloodRequestCreate(blood_group="B+"))

    assert [r.id for r in await lifecycle.list_open_for_donor(match)] == [request.id]
    with pytest.raises(IllegalTransition):
        await lifecycle.transition(request.id, mismatch["_id"], "accepted")
    with pytest.raises(IllegalTransition):
        await lifecycle.transition(request.id, match["_id"], "declined")

    accepted = await lifecycle.transition(request.id, match["_id"], "accepted")

    assert accepted.donor_id == str(match["_id"])
    assert await lifecycle.list_open_for_donor(match) == []


async def test_listings_are_newest_first(database, make_profile):
    donor = await make_profile("Dana")
    patient = await make_profile("Pat", is_donor=False)
    lifecycle = RequestLifecycle(database)
    first = await lifecycle.create_request(patient["_id"], targeted(donor))
    second = await lifecycle.create_request(patient["_id"], targeted(donor, urgency="urgent"))
    third = await lifecycle.create_request(patient["_id"], targeted(donor, urgency="critical"))
    await lifecycle.transition(second.id, donor["_id"], "declined")

    assert [r.id for r in await lifecycle.list_for_patient(patient["_id"])] == [third.id, second.id, first.id]
    assert [r.id for r in await lifecycle.list_pending_for_donor(donor["_id"])] == [third.id, first.id]


async def test_get_for_party_hides_unrelated_requests(database, make_profile):
    donor = await make_profile("Dana")
    stranger = await make_profile("Stranger", is_donor=False)
    patient = await make_profile("Pat", is_donor=False)
    lifecycle = RequestLifecycle(database)
    request = await lifecycle.create_request(patient["_id"], targeted(donor))

    assert (await lifecycle.get_for_party(request.id, donor["_id"]))["_id"] is not None
    with pytest.raises(NotFound):
        await lifecycle.get_for_party(request.id, stranger["_id"])
    with pytest.raises(NotFound):
        await lifecycle.get("not-an-id")


async def test_parties_are_masked_until_accepted(database, make_profile):
    donor = await make_profile("Dana", phone="5551234567")
    patient = await make_profile("Pat", is_donor=False, phone="5559876543")
    lifecycle = RequestLifecycle(database)
    request = await lifecycle.create_request(patient["_id"], targeted(donor))

    [pending] = await lifecycle.with_parties(donor["_id"], [request])
    assert pending.patient.full_name == "Pat"
    assert pending.patient.phone is None

    accepted = await lifecycle.transition(request.id, donor["_id"], "accepted")
    [detail] = await lifecycle.with_parties(patient["_id"], [accepted])
    assert detail.donor.phone == "5551234567"
    assert detail.patient.phone == "5559876543"


async def failing_write(*args, **kwargs):
    raise PyMongoError("connection reset")


async def test_failed_create_leaves_no_request(database, make_profile, monkeypatch):
    donor = await make_profile("Dana")
    patient = await make_profile("Pat", is_donor=False)
    monkeypatch.setattr(NotificationStore, "create", failing_write)

    with pytest.raises(ExternalServiceError):
        await RequestLifecycle(database).create_request(patient["_id"], targeted(donor))

    assert await database.blood_requests.count_documents({}) == 0


async def test_failed_accept_restores_broadcast_request(database, make_profile, monkeypatch):
    patient = await make_profile("Pat", is_donor=False)
    donor = await make_profile("Dana", blood_group="B+")
    lifecycle = RequestLifecycle(database)
    request = await lifecycle.create_request(patient["_id"], BloodRequestCreate(blood_group="B+"))
    monkeypatch.setattr(NotificationStore, "create", failing_write)

    with pytest.raises(ExternalServiceError):
        await lifecycle.transition(request.id, donor["_id"], "accepted")

    stored = await lifecycle.get(request.id)
    assert stored["status"] == "pending"
    assert stored["donor_id"] is None


async def test_failed_completion_leaves_donor_untouched(database, make_profile, monkeypatch):
    donor = await make_profile("Dana")
    patient = await make_profile("Pat", is_donor=False)
    lifecycle = RequestLifecycle(database)
    request = await lifecycle.create_request(patient["_id"], targeted(donor))
    await lifecycle.transition(request.id, donor["_id"], "accepted")
    monkeypatch.setattr(NotificationStore, "create", failing_write)

    with pytest.raises(ExternalServiceError):
        await lifecycle.transition(request.id, donor["_id"], "completed")

    stored = await lifecycle.get(request.id)
    assert stored["status"] == "accepted"
    assert stored["donor_id"] == donor["_id"]
    assert (await database.profiles.find_one({"_id": donor["_id"]}))["last_donation_date"] is None


async def test_failed_donation_stamp_drops_completion_notice(database, make_profile, monkeypatch):
    donor = await make_profile("Dana")
    patient = await make_profile("Pat", is_donor=False)
    lifecycle = RequestLifecycle(database)
    request = await lifecycle.create_request(patient["_id"], targeted(donor))
    await lifecycle.transition(request.id, donor["_id"], "accepted")

    async def store_down(self, *args, **kwargs):
        raise ExternalServiceError("Profile store is unavailable. Try again shortly.")

    monkeypatch.setattr(ProfileStore, "record_donation", store_down)

    with pytest.raises(ExternalServiceError):
        await lifecycle.transition(request.id, donor["_id"], "completed")

    assert (await lifecycle.get(request.id))["status"] == "accepted"
    kinds = [n["type"] async for n in database.notifications.find({"user_id": patient["_id"]})]
    assert kinds == ["accepted"]

from __future__ import annotations

import asyncio

from donorlink.models.request import BloodRequest, BloodRequestCreate
from donorlink.services.realtime import (
    NewRequestEvent,
    NotificationEvent,
    RequestUpdateEvent,
    new_request_alert,
)
from donorlink.services.requests import RequestLifecycle
from donorlink.services.visibility import VisibilityResolver


async def drain(subscription, expected: int, timeout: float = 1.0):
    events = []
    for _ in range(expected):
        events.append(await asyncio.wait_for(subscription.__anext__(), timeout))
    return events


async def test_critical_request_rings_alarm_and_texts_donor(database, dispatcher, hub, sms, make_profile):
    donor = await make_profile("Dana", phone="+15551234567")
    patient = await make_profile("Pat", is_donor=False)
    subscription = hub.subscribe(str(donor["_id"]))
    lifecycle = RequestLifecycle(database, dispatcher)

    request = await lifecycle.create_request(
        patient["_id"],
        BloodRequestCreate(donor_id=str(donor["_id"]), blood_group="O+", urgency="critical", units_required=2),
    )

    new_request, notification = await drain(subscription, 2)
    assert isinstance(new_request, NewRequestEvent)
    assert new_request.request.id == request.id
    assert new_request.alert.sound == "urgent_alarm"
    assert new_request.alert.title == "New CRITICAL blood request!"
    assert isinstance(notification, NotificationEvent)
    assert [message.to for message in sms.sent] == ["+15551234567"]
    assert "2 unit(s)" in sms.sent[0].body


async def test_normal_request_buzzes_without_sms(database, dispatcher, hub, sms, make_profile):
    donor = await make_profile("Dana", phone="+15551234567")
    patient = await make_profile("Pat", is_donor=False)
    subscription = hub.subscribe(str(donor["_id"]))

    await RequestLifecycle(database, dispatcher).create_request(
        patient["_id"], BloodRequestCreate(donor_id=str(donor["_id"]), blood_group="O+")
    )

    [event] = await drain(subscription, 1)
    assert event.alert.sound == "buzzer"
    assert sms.sent == []


async def test_accept_alerts_patient_and_donor_quietly(database, dispatcher, hub, make_profile):
    donor = await make_profile("Dana", phone="5551234567")
    patient = await make_profile("Pat", is_donor=False)
    lifecycle = RequestLifecycle(database, dispatcher)
    request = await lifecycle.create_request(
        patient["_id"],
        BloodRequestCreate(donor_id=str(donor["_id"]), blood_group="O+", urgency="critical", units_required=2),
    )
    patient_feed = hub.subscribe(str(patient["_id"]))
    donor_feed = hub.subscribe(str(donor["_id"]))

    await lifecycle.transition(request.id, donor["_id"], "accepted")

    update, notification = await drain(patient_feed, 2)
    assert isinstance(update, RequestUpdateEvent)
    assert update.previous_status == "pending"
    assert update.request.status == "accepted"
    assert update.alert.level == "success"
    assert update.alert.contact_visible is True
    assert notification.notification.type == "accepted"

    [donor_update] = await drain(donor_feed, 1)
    assert donor_update.alert.level == "silent"
    assert donor_update.alert.sound is None

    decision = await VisibilityResolver(database).resolve(patient["_id"], donor)
    assert decision.masked_phone is False


async def test_decline_is_informational(database, dispatcher, hub, make_profile):
    donor = await make_profile("Dana")
    patient = await make_profile("Pat", is_donor=False)
    lifecycle = RequestLifecycle(database, dispatcher)
    request = await lifecycle.create_request(
        patient["_id"], BloodRequestCreate(donor_id=str(donor["_id"]), blood_group="O+")
    )
    patient_feed = hub.subscribe(str(patient["_id"]))

    await lifecycle.transition(request.id, donor["_id"], "declined")

    update, _ = await drain(patient_feed, 2)
    assert update.alert.level == "info"
    assert update.alert.sound is None


async def test_events_only_reach_their_profile(database, dispatcher, hub, make_profile):
    donor = await make_profile("Dana")
    bystander = await make_profile("Bystander")
    patient = await make_profile("Pat", is_donor=False)
    bystander_feed = hub.subscribe(str(bystander["_id"]))

    await RequestLifecycle(database, dispatcher).create_request(
        patient["_id"], BloodRequestCreate(donor_id=str(donor["_id"]), blood_group="O+")
    )

    bystander_feed.close()
    assert [event async for event in bystander_feed] == []


async def test_duplicate_deliveries_are_dropped(database, dispatcher, hub, make_profile):
    donor = await make_profile("Dana")
    patient = await make_profile("Pat", is_donor=False)
    lifecycle = RequestLifecycle(database, dispatcher)
    request = await lifecycle.create_request(
        patient["_id"], BloodRequestCreate(donor_id=str(donor["_id"]), blood_group="O+")
    )
    feed = hub.subscribe(str(patient["_id"]))
    accepted = await lifecycle.transition(request.id, donor["_id"], "accepted")

    # redelivery of the same transition, then a stale pending snapshot
    await dispatcher.request_transitioned(accepted, "pending")
    await dispatcher.request_transitioned(request, "pending")
    feed.close()

    events = [event async for event in feed]
    assert [type(event) for event in events] == [RequestUpdateEvent, NotificationEvent]
    assert feed.cache.get(request.id).status == "accepted"


async def test_reconnect_resyncs_missed_requests(database, dispatcher, hub, make_profile):
    donor = await make_profile("Dana")
    patient = await make_profile("Pat", is_donor=False)
    lifecycle = RequestLifecycle(database, dispatcher)

    async def resync():
        return await lifecycle.list_pending_for_donor(donor["_id"])

    feed = hub.subscribe(str(donor["_id"]), resync=resync)
    first = await lifecycle.create_request(
        patient["_id"], BloodRequestCreate(donor_id=str(donor["_id"]), blood_group="O+")
    )
    resolved = await lifecycle.create_request(
        patient["_id"], BloodRequestCreate(donor_id=str(donor["_id"]), blood_group="O+")
    )
    await drain(feed, 4)

    # connection drops; one request is declined and another created meanwhile
    hub.detach(feed)
    await lifecycle.transition(resolved.id, donor["_id"], "declined")
    missed = await lifecycle.create_request(
        patient["_id"], BloodRequestCreate(donor_id=str(donor["_id"]), blood_group="O+", urgency="critical")
    )

    assert await feed.reconnect() == 1
    [event] = await drain(feed, 1)
    assert event.request.id == missed.id
    assert event.alert == new_request_alert(missed)
    assert feed.cache.get(first.id) is not None
    assert feed.cache.get(resolved.id) is None


async def test_handlers_run_per_event_type(database, dispatcher, hub, make_profile):
    donor = await make_profile("Dana")
    patient = await make_profile("Pat", is_donor=False)
    seen = []

    async def on_request(event):
        seen.append(("request", event.request.urgency))

    async def on_notification(event):
        seen.append(("notification", event.notification.type))

    feed = hub.subscribe(str(donor["_id"])).on(NewRequestEvent, on_request).on(NotificationEvent, on_notification)
    await RequestLifecycle(database, dispatcher).create_request(
        patient["_id"], BloodRequestCreate(donor_id=str(donor["_id"]), blood_group="O+", urgency="urgent")
    )
    feed.close()
    await feed.run()

    assert seen == [("request", "urgent"), ("notification", "request")]


async def test_close_detaches_from_hub(hub):
    feed = hub.subscribe("profile-1")
    feed.close()
    feed.close()

    assert "profile-1" not in hub.subscriptions
    feed.deliver(object())
    assert [event async for event in feed] == []


def test_event_message_shape():
    request = BloodRequest(_id="r1", patient_id="p1", donor_id="d1", blood_group="AB-", urgency="critical")
    event = NewRequestEvent(profile_id="d1", request=request, alert=new_request_alert(request))

    message = event.to_message()

    assert message["event"] == "new_request"
    assert message["payload"]["request"]["_id"] == "r1"
    assert message["payload"]["alert"]["sound"] == "urgent_alarm"
    assert message["payload"]["alert"]["description"] == "Someone needs AB- blood urgently!"

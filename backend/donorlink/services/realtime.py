from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, DefaultDict, Dict, List, Literal, Optional, Set, Type

import socketio
from loguru import logger

from ..models.notification import Notification
from ..models.request import STATUS_RANK, BloodRequest
from ..utils.notifications import NotificationService, SmsNotification

AlertSound = Literal["urgent_alarm", "buzzer"]
AlertLevel = Literal["error", "success", "info", "silent"]


@dataclass(frozen=True)
class Alert:
    sound: Optional[AlertSound]
    level: AlertLevel
    title: str
    description: str
    contact_visible: bool = False


@dataclass(frozen=True, kw_only=True)
class RealtimeEvent:
    profile_id: str
    kind: str = field(default="event", init=False)

    def payload(self) -> Dict[str, Any]:
        return {}

    def to_message(self) -> Dict[str, Any]:
        return {"event": self.kind, "payload": self.payload()}


@dataclass(frozen=True, kw_only=True)
class NewRequestEvent(RealtimeEvent):
    request: BloodRequest
    alert: Alert
    kind: str = field(default="new_request", init=False)

    def payload(self) -> Dict[str, Any]:
        return {"request": self.request.model_dump(mode="json", by_alias=True), "alert": asdict(self.alert)}


@dataclass(frozen=True, kw_only=True)
class RequestUpdateEvent(RealtimeEvent):
    request: BloodRequest
    previous_status: str = "pending"
    alert: Alert
    kind: str = field(default="request_update", init=False)

    def payload(self) -> Dict[str, Any]:
        return {
            "request": self.request.model_dump(mode="json", by_alias=True),
            "previous_status": self.previous_status,
            "alert": asdict(self.alert),
        }


@dataclass(frozen=True, kw_only=True)
class NotificationEvent(RealtimeEvent):
    notification: Notification
    kind: str = field(default="notification", init=False)

    def payload(self) -> Dict[str, Any]:
        return {"notification": self.notification.model_dump(mode="json", by_alias=True)}


def new_request_alert(request: BloodRequest) -> Alert:
    sound: AlertSound = "urgent_alarm" if request.urgency == "critical" else "buzzer"
    return Alert(
        sound=sound,
        level="error",
        title=f"New {request.urgency.upper()} blood request!",
        description=f"Someone needs {request.blood_group} blood urgently!",
    )


def patient_update_alert(previous_status: str, status: str) -> Alert:
    if previous_status == "pending" and status == "accepted":
        return Alert(
            sound="buzzer",
            level="success",
            title="Your blood request has been ACCEPTED!",
            description="The donor has agreed to help. Contact details are now available.",
            contact_visible=True,
        )
    if previous_status == "pending" and status == "declined":
        return Alert(
            sound=None,
            level="info",
            title="A donor has declined your request",
            description="Don't worry, we're still looking for other donors.",
        )
    return Alert(sound=None, level="info", title=f"Request {status}", description="Your request was updated.")


DONOR_SILENT_ALERT = Alert(sound=None, level="silent", title="Request updated", description="")


class RequestCache:
    """Client-side view of requests keyed by id; stale or repeated events are ignored."""

    def __init__(self) -> None:
        self._requests: Dict[str, BloodRequest] = {}

    def apply(self, request: BloodRequest) -> bool:
        current = self._requests.get(request.id)
        if current is not None:
            if current.status == request.status:
                return False
            if STATUS_RANK[current.status] >= STATUS_RANK[request.status]:
                return False
        self._requests[request.id] = request
        return True

    def get(self, request_id: str) -> BloodRequest | None:
        return self._requests.get(request_id)

    def invalidate(self, keep: Set[str]) -> int:
        """Forget cached pending requests missing from ``keep``; they were resolved while offline."""
        stale = [rid for rid, request in self._requests.items() if request.status == "pending" and rid not in keep]
        for request_id in stale:
            del self._requests[request_id]
        return len(stale)


Handler = Callable[[RealtimeEvent], Awaitable[None]]
Resync = Callable[[], Awaitable[List[BloodRequest]]]

_CLOSED = object()


class Subscription:
    """One logical subscription scoped to a single profile.

    Iterate it with ``async for`` or register handlers per event class with
    :meth:`on` and drive them with :meth:`run`. Duplicate deliveries of the
    same transition or notification are dropped before reaching consumers.
    """

    def __init__(self, hub: "RealtimeHub", profile_id: str, resync: Resync | None = None) -> None:
        self.hub = hub
        self.profile_id = profile_id
        self.cache = RequestCache()
        self.closed = False
        self._resync = resync
        self._queue: asyncio.Queue = asyncio.Queue()
        self._seen_notifications: Set[str] = set()
        self._handlers: DefaultDict[Type[RealtimeEvent], List[Handler]] = defaultdict(list)

    def deliver(self, event: RealtimeEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def on(self, event_type: Type[RealtimeEvent], handler: Handler) -> "Subscription":
        self._handlers[event_type].append(handler)
        return self

    def _is_fresh(self, event: RealtimeEvent) -> bool:
        if isinstance(event, NotificationEvent):
            if event.notification.id in self._seen_notifications:
                return False
            self._seen_notifications.add(event.notification.id)
            return True
        request = getattr(event, "request", None)
        if request is None:
            return True
        return self.cache.apply(request)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> RealtimeEvent:
        while True:
            event = await self._queue.get()
            if event is _CLOSED:
                raise StopAsyncIteration
            if self._is_fresh(event):
                return event

    async def run(self) -> None:
        async for event in self:
            for handler in self._handlers.get(type(event), []):
                await handler(event)

    async def reconnect(self) -> int:
        """Re-fetch pending requests after a dropped connection; returns how many were new."""
        if self._resync is None:
            return 0
        self.hub.attach(self)
        pending = await self._resync()
        self.cache.invalidate({request.id for request in pending})
        fresh = 0
        for request in pending:
            if self.cache.get(request.id) is None:
                self.deliver(NewRequestEvent(profile_id=self.profile_id, request=request, alert=new_request_alert(request)))
                fresh += 1
        logger.info("Subscription for {} resynced: {} pending, {} new", self.profile_id, len(pending), fresh)
        return fresh

    def close(self) -> None:
        if self.closed:
            return
        self.hub.detach(self)
        self.closed = True
        self._queue.put_nowait(_CLOSED)


class RealtimeHub:
    """Routes committed events to in-process subscriptions and Socket.IO rooms keyed by profile id."""

    def __init__(self, sio_server: socketio.AsyncServer | None = None) -> None:
        self.sio = sio_server
        self.subscriptions: DefaultDict[str, Set[Subscription]] = defaultdict(set)

    def subscribe(self, profile_id: str, resync: Resync | None = None) -> Subscription:
        subscription = Subscription(self, profile_id, resync)
        self.attach(subscription)
        return subscription

    def attach(self, subscription: Subscription) -> None:
        self.subscriptions[subscription.profile_id].add(subscription)

    def detach(self, subscription: Subscription) -> None:
        listeners = self.subscriptions.get(subscription.profile_id)
        if listeners is None:
            return
        listeners.discard(subscription)
        if not listeners:
            del self.subscriptions[subscription.profile_id]

    async def publish(self, event: RealtimeEvent) -> None:
        for subscription in list(self.subscriptions.get(event.profile_id, ())):
            subscription.deliver(event)
        if self.sio is not None:
            try:
                await self.sio.emit(event.kind, event.payload(), room=event.profile_id)
            except Exception as exc:  # pragma: no cover - transport failure
                logger.warning("Socket.IO emit of {} to {} failed: {}", event.kind, event.profile_id, exc)


class NotificationDispatcher:
    """Turns committed request changes into per-profile realtime events and alerts."""

    def __init__(self, hub: RealtimeHub, sms: NotificationService | None = None) -> None:
        self.hub = hub
        self.sms = sms

    async def request_created(self, request: BloodRequest, donor_phone: str | None = None) -> None:
        if request.donor_id is None or request.status != "pending":
            return
        alert = new_request_alert(request)
        await self.hub.publish(NewRequestEvent(profile_id=request.donor_id, request=request, alert=alert))
        if request.urgency == "critical" and donor_phone and self.sms is not None:
            body = f"CRITICAL: a patient needs {request.units_required} unit(s) of {request.blood_group} blood."
            if request.hospital_name:
                body += f" Hospital: {request.hospital_name}."
            await self.sms.send_sms(SmsNotification(to=donor_phone, body=body))

    async def request_transitioned(self, request: BloodRequest, previous_status: str) -> None:
        await self.hub.publish(
            RequestUpdateEvent(
                profile_id=request.patient_id,
                request=request,
                previous_status=previous_status,
                alert=patient_update_alert(previous_status, request.status),
            )
        )
        if request.donor_id is not None:
            await self.hub.publish(
                RequestUpdateEvent(
                    profile_id=request.donor_id,
                    request=request,
                    previous_status=previous_status,
                    alert=DONOR_SILENT_ALERT,
                )
            )

    async def notification_created(self, notification: Notification) -> None:
        await self.hub.publish(NotificationEvent(profile_id=notification.user_id, notification=notification))

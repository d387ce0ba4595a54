from __future__ import annotations

import asyncio
from typing import Any, Dict

import socketio
from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from motor.motor_asyncio import AsyncIOMotorDatabase

from .database import get_database, prepare_database, settings
from .errors import DonorLinkError, donorlink_error_handler
from .routers import auth, contacts, notifications, profiles, reports, requests
from .services.profiles import ProfileStore
from .services.realtime import NotificationDispatcher, RealtimeHub, Subscription
from .services.requests import RequestLifecycle
from .utils.notifications import notification_service

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=settings.cors_origins)
app = FastAPI(title="DonorLink API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_exception_handler(DonorLinkError, donorlink_error_handler)

hub = RealtimeHub(sio)
app.state.hub = hub
app.state.dispatcher = NotificationDispatcher(hub, notification_service)

app.include_router(auth.router)
app.include_router(profiles.router)
app.include_router(profiles.locations)
app.include_router(contacts.router)
app.include_router(requests.router)
app.include_router(notifications.router)
app.include_router(reports.router)


@app.get("/health")
async def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


async def _authenticate(database: AsyncIOMotorDatabase, token: str | None) -> Dict[str, Any] | None:
    if not token:
        return None
    try:
        user = await auth.user_from_token(database, token)
        return await ProfileStore(database).get_for_user(user["_id"])
    except (HTTPException, DonorLinkError) as exc:
        logger.info("Realtime connection rejected: {}", getattr(exc, "detail", exc))
        return None


async def _forward(websocket: WebSocket, subscription: Subscription) -> None:
    async for event in subscription:
        await websocket.send_json(event.to_message())


@app.websocket("/ws/notifications")
async def notifications_websocket(
    websocket: WebSocket,
    token: str | None = None,
    database: AsyncIOMotorDatabase = Depends(get_database),
) -> None:
    profile = await _authenticate(database, token)
    if profile is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()

    profile_id = profile["_id"]
    lifecycle = RequestLifecycle(database)
    subscription = hub.subscribe(str(profile_id), resync=lambda: lifecycle.list_pending_for_donor(profile_id))
    # a fresh connection re-fetches pending requests instead of replaying missed events
    pending = await lifecycle.list_pending_for_donor(profile_id)
    for request in pending:
        subscription.cache.apply(request)
    await websocket.send_json(
        {"event": "sync", "payload": {"pending_requests": [r.model_dump(mode="json", by_alias=True) for r in pending]}}
    )

    sender = asyncio.create_task(_forward(websocket, subscription))
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        subscription.close()
        try:
            await sender
        except Exception as exc:  # pragma: no cover - socket already gone
            logger.warning("Dropped realtime socket for {}: {}", profile_id, exc)


@sio.event
async def connect(sid, environ, auth_payload=None):  # pragma: no cover - socket handshake
    token = (auth_payload or {}).get("token")
    profile = await _authenticate(get_database(), token)
    if profile is None:
        return False
    await sio.enter_room(sid, str(profile["_id"]))
    await sio.save_session(sid, {"profile_id": str(profile["_id"])})
    logger.info("Socket {} joined room {}", sid, profile["_id"])


@sio.event
async def disconnect(sid):  # pragma: no cover - socket handshake
    logger.info("Socket {} disconnected", sid)


socket_app = socketio.ASGIApp(sio, other_asgi_app=app)


@app.on_event("startup")
async def create_indexes() -> None:
    await prepare_database(get_database())

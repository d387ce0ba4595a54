from __future__ import annotations

from pathlib import Path
from typing import List, Literal

import motor.motor_asyncio
from loguru import logger
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConfigurationError, PyMongoError
from pymongo.uri_parser import parse_uri


BASE_DIR = Path(__file__).resolve().parents[1]
ENV_FILES = [BASE_DIR / ".env.local", BASE_DIR / ".env"]

CompletionAuthority = Literal["donor", "patient", "either"]


class Settings(BaseSettings):
    mongodb_url: str = "mongodb://localhost:27017/donorlink"
    mongo_server_timeout_ms: int = 2000
    mongo_connect_timeout_ms: int = 2000
    mongo_socket_timeout_ms: int = 2000
    jwt_secret: str = "supersecret"
    jwt_algorithm: str = "HS256"
    jwt_expires_min: int = 60
    password_reset_expires_min: int = 60
    report_storage_dir: Path = BASE_DIR / "storage" / "medical-reports"
    report_max_bytes: int = 10 * 1024 * 1024
    report_url_ttl_seconds: int = 3600
    public_base_url: str = "http://localhost:8000"
    completion_authority: CompletionAuthority = "donor"
    max_search_districts: int = 3
    network_suggestion_limit: int = 10
    notification_feed_limit: int = 20
    twilio_sid: str | None = None
    twilio_token: str | None = None
    twilio_phone: str | None = None
    cors_origins: List[str] = ["*"]

    model_config = SettingsConfigDict(
        env_file=[str(path) for path in ENV_FILES],
        case_sensitive=False,
        env_prefix="",
    )


def get_settings() -> Settings:
    return Settings()


settings = get_settings()
FALLBACK_MONGO_URL = "mongodb://localhost:27017/donorlink"


def _create_client(uri: str) -> motor.motor_asyncio.AsyncIOMotorClient:
    connect_kwargs = {
        "serverSelectionTimeoutMS": settings.mongo_server_timeout_ms,
        "connectTimeoutMS": settings.mongo_connect_timeout_ms,
        "socketTimeoutMS": settings.mongo_socket_timeout_ms,
    }
    try:
        return motor.motor_asyncio.AsyncIOMotorClient(uri, **connect_kwargs)
    except ConfigurationError as exc:
        if uri == FALLBACK_MONGO_URL:
            raise
        logger.warning(
            "MongoDB DNS resolution failed for {} ({}). Falling back to local Mongo at {}.",
            uri,
            exc,
            FALLBACK_MONGO_URL,
        )
        return motor.motor_asyncio.AsyncIOMotorClient(FALLBACK_MONGO_URL, **connect_kwargs)


def _resolve_database_name(uri: str | None) -> str:
    if uri:
        try:
            parsed = parse_uri(uri)
            if parsed.get("database"):
                return parsed["database"]
        except Exception as exc:  # pragma: no cover - malformed URI
            logger.warning("Unable to parse Mongo URI {} ({}). Using fallback database name.", uri, exc)
    return "donorlink"


client = _create_client(settings.mongodb_url)
database_name = _resolve_database_name(settings.mongodb_url)
db = client.get_database(database_name)


def get_database() -> AsyncIOMotorDatabase:
    return db


async def ensure_indexes(database: AsyncIOMotorDatabase) -> None:
    """Create the indexes the services rely on for uniqueness and ordering."""
    await database.users.create_index("email", unique=True)
    await database.profiles.create_index("user_id", unique=True)
    await database.profiles.create_index([("is_donor", ASCENDING), ("is_available", ASCENDING), ("area_id", ASCENDING)])
    await database.user_contacts.create_index(
        [("user_id", ASCENDING), ("contact_user_id", ASCENDING)],
        unique=True,
    )
    await database.blood_requests.create_index([("patient_id", ASCENDING), ("created_at", DESCENDING)])
    await database.blood_requests.create_index([("donor_id", ASCENDING), ("status", ASCENDING)])
    await database.notifications.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])


async def prepare_database(database: AsyncIOMotorDatabase) -> None:
    try:
        await ensure_indexes(database)
    except PyMongoError as exc:  # pragma: no cover - external service
        logger.warning("MongoDB unavailable; skipping index creation: {}", exc)

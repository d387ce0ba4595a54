from __future__ import annotations

from loguru import logger
from pymongo.errors import PyMongoError

from ..errors import ExternalServiceError


def log_db_error(context: str, exc: Exception) -> None:
    logger.error("Database error in {}: {}", context, exc)


def store_unavailable(context: str, exc: PyMongoError) -> ExternalServiceError:
    log_db_error(context, exc)
    return ExternalServiceError("Profile store is unavailable. Try again shortly.")

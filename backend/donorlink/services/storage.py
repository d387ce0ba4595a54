from __future__ import annotations

import asyncio
import time
from pathlib import Path, PurePosixPath

from bson import ObjectId
from loguru import logger
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from ..database import settings
from ..errors import ExternalServiceError, NotFound, PermissionDenied, ValidationError
from ..utils.logging import store_unavailable
from ..utils.security import create_report_token, decode_token


def report_owner(path: str) -> str:
    """Account id a report path was uploaded under."""
    return path.split("/", 1)[0]


class ReportStore:
    """Medical reports kept by relative path; links are signed per view and expire."""

    def __init__(self, database: AsyncIOMotorDatabase, root: Path | None = None) -> None:
        self.root = Path(root or settings.report_storage_dir)
        self.requests = database.get_collection("blood_requests")
        self.profiles = database.get_collection("profiles")

    def _resolve(self, path: str) -> Path:
        relative = PurePosixPath(path)
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise NotFound("Report not found")
        return self.root.joinpath(*relative.parts)

    async def upload(self, account_id: str, filename: str, content: bytes) -> str:
        if not content:
            raise ValidationError("The uploaded file is empty")
        if len(content) > settings.report_max_bytes:
            raise ValidationError("File size must be less than 10MB")
        suffix = PurePosixPath(filename or "").suffix.lstrip(".") or "bin"
        path = f"{account_id}/{int(time.time() * 1000)}.{suffix}"
        target = self._resolve(path)
        if target.exists():
            raise ValidationError("A report with this name already exists; retry the upload")

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)

        try:
            await asyncio.get_running_loop().run_in_executor(None, _write)
        except OSError as exc:
            logger.error("Report upload to {} failed: {}", path, exc)
            raise ExternalServiceError("Failed to upload medical report") from exc
        logger.info("Stored medical report {} ({} bytes)", path, len(content))
        return path

    async def can_view(self, path: str, account_id: str, profile_id: ObjectId) -> bool:
        owner = report_owner(path)
        if owner == account_id:
            return True
        # a referencing request only counts when its patient uploaded the report
        try:
            cursor = self.requests.find(
                {"medical_report_path": path, "$or": [{"patient_id": profile_id}, {"donor_id": profile_id}]}
            )
            async for request in cursor:
                patient = await self.profiles.find_one({"_id": request["patient_id"]})
                if patient is not None and str(patient.get("user_id")) == owner:
                    return True
        except PyMongoError as exc:
            raise store_unavailable("report_access", exc) from exc
        return False

    async def create_signed_url(self, path: str, account_id: str, profile_id: ObjectId, ttl_seconds: int | None = None) -> str:
        if not await self.can_view(path, account_id, profile_id):
            raise PermissionDenied("Unable to access the medical report")
        if not self._resolve(path).is_file():
            raise NotFound("Report not found")
        token = create_report_token(path, ttl_seconds or settings.report_url_ttl_seconds)
        return f"{settings.public_base_url.rstrip('/')}/reports/download/{token}"

    def open_signed(self, token: str) -> Path:
        try:
            payload = decode_token(token, scope="report")
        except ValueError as exc:
            raise PermissionDenied("This report link is invalid or has expired") from exc
        target = self._resolve(payload.get("path", ""))
        if not target.is_file():
            raise NotFound("Report not found")
        return target

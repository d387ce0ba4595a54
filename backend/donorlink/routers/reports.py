from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, File, UploadFile, status
from fastapi.responses import FileResponse

from ..services.storage import ReportStore
from .auth import CurrentProfile, CurrentUser, Database

router = APIRouter(prefix="/reports", tags=["reports"])


@router.post("/", status_code=status.HTTP_201_CREATED)
async def upload_report(
    user: CurrentUser,
    _: CurrentProfile,
    database: Database,
    file: UploadFile = File(...),
) -> Dict[str, str]:
    content = await file.read()
    path = await ReportStore(database).upload(str(user["_id"]), file.filename or "", content)
    return {"path": path}


@router.get("/signed-url")
async def signed_url(path: str, user: CurrentUser, profile: CurrentProfile, database: Database) -> Dict[str, str]:
    url = await ReportStore(database).create_signed_url(path, str(user["_id"]), profile["_id"])
    return {"url": url}


@router.get("/download/{token}", include_in_schema=False)
async def download_report(token: str, database: Database) -> FileResponse:
    return FileResponse(ReportStore(database).open_signed(token))

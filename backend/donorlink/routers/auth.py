from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Annotated, Dict

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Security, status
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from loguru import logger
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError, PyMongoError

from ..database import get_database, settings
from ..errors import AlreadyExists, DonorLinkError
from ..models.user import (
    Account,
    AuthResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    UserCreate,
    UserPublic,
)
from ..schemas.documents import serialize_document
from ..services.profiles import ProfileStore, owner_profile
from ..utils.logging import store_unavailable
from ..utils.security import create_access_token, create_reset_token, decode_token, hash_password, verify_password

router = APIRouter(prefix="/auth", tags=["auth"])
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)

Database = Annotated[AsyncIOMotorDatabase, Depends(get_database)]


def user_public(user: Dict[str, Any]) -> UserPublic:
    return UserPublic(**serialize_document(user))


@router.post("/register", response_model=Account, status_code=status.HTTP_201_CREATED)
async def register_user(payload: UserCreate, database: Database) -> Account:
    users = database.get_collection("users")
    email = payload.email.lower()
    try:
        if await users.find_one({"email": email}):
            raise AlreadyExists("Email already registered")
        doc = {
            "email": email,
            "password": hash_password(payload.password),
            "profile_id": None,
            "created_at": datetime.now(timezone.utc),
        }
        result = await users.insert_one(doc)
    except DuplicateKeyError as exc:
        raise AlreadyExists("Email already registered") from exc
    except PyMongoError as exc:
        raise store_unavailable("register_user", exc) from exc
    doc["_id"] = result.inserted_id

    try:
        profile = await ProfileStore(database).create(result.inserted_id, payload.profile)
        await users.update_one({"_id": result.inserted_id}, {"$set": {"profile_id": profile["_id"]}})
    except (DonorLinkError, PyMongoError) as exc:
        await users.delete_one({"_id": result.inserted_id})
        if isinstance(exc, PyMongoError):
            raise store_unavailable("register_profile", exc) from exc
        raise
    doc["profile_id"] = profile["_id"]
    logger.info("Registered {} as {}", email, "donor" if payload.profile.is_donor else "patient")
    return Account(user=user_public(doc), profile=owner_profile(profile))


@router.post("/login", response_model=AuthResponse)
async def login_user(database: Database, form_data: OAuth2PasswordRequestForm = Depends()) -> AuthResponse:
    try:
        user = await database.get_collection("users").find_one({"email": form_data.username.lower()})
    except PyMongoError as exc:
        raise store_unavailable("login_user", exc) from exc
    if not user or not verify_password(form_data.password, user.get("password", "")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect email or password")
    token = create_access_token(str(user["_id"]))
    return AuthResponse(access_token=token, user=user_public(user), message="Welcome back")


async def get_current_user(database: Database, token: str | None = Security(oauth2_scheme)) -> Dict[str, Any]:
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing authorization token")
    return await user_from_token(database, token)


async def user_from_token(database: AsyncIOMotorDatabase, token: str) -> Dict[str, Any]:
    try:
        payload = decode_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token subject")
    try:
        user = await database.get_collection("users").find_one({"_id": ObjectId(user_id)})
    except PyMongoError as exc:
        raise store_unavailable("get_current_user", exc) from exc
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account no longer exists")
    return user


CurrentUser = Annotated[Dict[str, Any], Depends(get_current_user)]


async def get_current_profile(user: CurrentUser, database: Database) -> Dict[str, Any]:
    return await ProfileStore(database).get_for_user(user["_id"])


CurrentProfile = Annotated[Dict[str, Any], Depends(get_current_profile)]


@router.get("/me", response_model=Account)
async def read_current_account(user: CurrentUser, profile: CurrentProfile, database: Database) -> Account:
    return Account(user=user_public(user), profile=await ProfileStore(database).with_area(profile))


@router.post("/reset-password", status_code=status.HTTP_202_ACCEPTED)
async def request_password_reset(payload: PasswordResetRequest, database: Database) -> Dict[str, str]:
    try:
        user = await database.get_collection("users").find_one({"email": payload.email.lower()})
    except PyMongoError as exc:
        raise store_unavailable("request_password_reset", exc) from exc
    if user:
        token = create_reset_token(str(user["_id"]))
        base = payload.redirect_url or f"{settings.public_base_url.rstrip('/')}/reset-password"
        separator = "&" if "?" in base else "?"
        logger.info("Mock email: password reset link for {} -> {}{}token={}", user["email"], base, separator, token)
    else:
        logger.info("Password reset requested for unknown email {}", payload.email)
    return {"status": "sent"}


@router.post("/reset-password/confirm")
async def confirm_password_reset(payload: PasswordResetConfirm, database: Database) -> Dict[str, str]:
    try:
        claims = decode_token(payload.token, scope="reset")
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Reset link is invalid or has expired") from exc
    user_id = claims.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Reset link is invalid or has expired")
    try:
        result = await database.get_collection("users").update_one(
            {"_id": ObjectId(user_id)},
            {"$set": {"password": hash_password(payload.password)}},
        )
    except PyMongoError as exc:
        raise store_unavailable("confirm_password_reset", exc) from exc
    if not result.matched_count:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Reset link is invalid or has expired")
    return {"status": "updated"}

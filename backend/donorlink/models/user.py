from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, EmailStr, Field

from .profile import OwnerProfile, ProfileAttributes


class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    profile: ProfileAttributes


class UserPublic(BaseModel):
    id: str = Field(alias="_id")
    email: EmailStr
    profile_id: str | None = None
    created_at: datetime

    model_config = {"populate_by_name": True}


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class AuthResponse(Token):
    user: UserPublic
    message: str = "Authenticated"


class Account(BaseModel):
    user: UserPublic
    profile: OwnerProfile


class PasswordResetRequest(BaseModel):
    email: EmailStr
    redirect_url: str | None = None


class PasswordResetConfirm(BaseModel):
    token: str
    password: str = Field(min_length=8, max_length=128)

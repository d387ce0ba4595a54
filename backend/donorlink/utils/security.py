from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from jose import JWTError, jwt
from passlib.context import CryptContext

from ..database import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def _encode(claims: Dict[str, Any], expires_delta: timedelta) -> str:
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode: Dict[str, Any] = {**claims, "exp": expire}
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_access_token(subject: str, expires_delta: timedelta | None = None) -> str:
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.jwt_expires_min)
    return _encode({"sub": subject, "scope": "access"}, expires_delta)


def create_reset_token(subject: str) -> str:
    return _encode({"sub": subject, "scope": "reset"}, timedelta(minutes=settings.password_reset_expires_min))


def create_report_token(path: str, ttl_seconds: int) -> str:
    return _encode({"path": path, "scope": "report"}, timedelta(seconds=ttl_seconds))


def decode_token(token: str, scope: str = "access") -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise ValueError("Invalid token") from exc
    if payload.get("scope") != scope:
        raise ValueError("Invalid token scope")
    return payload

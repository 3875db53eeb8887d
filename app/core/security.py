from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from jose import JWTError, jwt
from passlib.context import CryptContext

from app.core.config import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.bcrypt_rounds)

ACCESS = "access"
REFRESH = "refresh"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def _encode(claims: dict[str, Any], token_type: str, lifetime: timedelta) -> str:
    payload = {**claims, "type": token_type, "exp": datetime.now(UTC) + lifetime}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def _decode(token: str, token_type: str) -> dict[str, Any] | None:
    """Verified payload of the given type, or None for anything else (bad signature, expired, wrong type)."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    if payload.get("type") != token_type or not payload.get("sub"):
        return None
    return payload


def create_access_token(subject: str, role: str) -> str:
    return _encode(
        {"sub": subject, "role": role},
        ACCESS,
        timedelta(minutes=settings.access_token_expire_minutes),
    )


def create_refresh_token(subject: str) -> str:
    # jti identifies the stored row so the token can be revoked and rotated
    return _encode(
        {"sub": subject, "jti": uuid4().hex},
        REFRESH,
        timedelta(days=settings.refresh_token_expire_days),
    )


def decode_access_token(token: str) -> str | None:
    """User id from a valid access token."""
    payload = _decode(token, ACCESS)
    return str(payload["sub"]) if payload else None


def decode_refresh_token(token: str) -> tuple[str | None, str | None]:
    """Returns (user_id, jti) or (None, None)."""
    payload = _decode(token, REFRESH)
    if payload is None:
        return None, None
    return str(payload["sub"]), payload.get("jti")

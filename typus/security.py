from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, Optional

import jwt
from passlib.context import CryptContext

from typus.config import get_settings
from typus.utils.time import utcnow


# pbkdf2_sha256 is pure python in passlib, no native backend required.
pwd_context = CryptContext(schemes=['pbkdf2_sha256'], deprecated='auto')


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(password, hashed_password)
    except ValueError:
        return False


def create_access_token(user_id: int, expires_delta: timedelta | None = None) -> str:
    settings = get_settings()
    now = utcnow()
    expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    payload = {'sub': str(user_id), 'iat': now, 'exp': expire}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Return the token payload, or None when it is invalid or expired."""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError:
        return None


def user_id_from_token(token: str) -> Optional[int]:
    payload = decode_access_token(token)
    if not payload:
        return None
    try:
        return int(payload.get('sub'))
    except (TypeError, ValueError):
        return None

from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from typus.db.models import User
from typus.security import hash_password, verify_password
from typus.utils.logging import get_logger
from typus.utils.time import utcnow


logger = get_logger('users')

MIN_PASSWORD_LENGTH = 8


def normalize_email(email: str | None) -> str:
    return (email or '').strip().lower()


def serialize_user(user: User) -> Dict[str, Any]:
    return {
        'id': user.id,
        'email': user.email,
        'fullName': user.full_name,
        'isStudent': user.is_student,
        'createdAt': user.created_at.isoformat() if user.created_at else None,
    }


class UsersService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_email(self, email: str) -> Optional[User]:
        result = await self.session.execute(select(User).where(User.email == normalize_email(email)))
        return result.scalar_one_or_none()

    async def register(self, email: str, password: str, full_name: str = '', is_student: bool = False) -> User:
        email = normalize_email(email)
        if '@' not in email or len(email) > 255:
            raise ValueError('invalid_email')
        if len(password or '') < MIN_PASSWORD_LENGTH:
            raise ValueError('password_too_short')
        if await self.get_by_email(email):
            raise ValueError('email_taken')
        now = utcnow()
        user = User(
            email=email,
            hashed_password=hash_password(password),
            full_name=(full_name or '').strip()[:255],
            is_student=bool(is_student),
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        self.session.add(user)
        await self.session.flush()
        logger.info('user_registered', user_id=user.id)
        return user

    async def authenticate(self, email: str, password: str) -> User:
        user = await self.get_by_email(email)
        if not user or not verify_password(password or '', user.hashed_password):
            raise ValueError('invalid_credentials')
        if not user.is_active:
            raise ValueError('account_disabled')
        return user

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from typus.db.models import CreditTransaction, Subscription, User
from typus.utils.logging import get_logger
from typus.utils.time import as_utc, utcnow


logger = get_logger('credits')

TRANSACTION_TYPES = {
    'SUBSCRIPTION_CREDIT',
    'IMAGE_CREATE',
    'IMAGE_TWEAK',
    'IMAGE_UPSCALE',
    'IMAGE_REFINE',
    'REFUND',
    'EXPIRY',
    'ADJUSTMENT',
}


def is_subscription_usable(subscription: Optional[Subscription], now: datetime | None = None) -> bool:
    if subscription is None:
        return False
    if subscription.status == 'ACTIVE':
        return True
    if subscription.status == 'CANCELLED_AT_PERIOD_END':
        period_end = as_utc(subscription.current_period_end)
        return period_end is not None and (now or utcnow()) <= period_end
    return False


def subscription_error(subscription: Optional[Subscription], now: datetime | None = None) -> str:
    now = now or utcnow()
    if subscription is not None:
        period_end = as_utc(subscription.current_period_end)
        if subscription.status == 'CANCELLED_AT_PERIOD_END' and period_end and now > period_end:
            return 'subscription_expired'
        if subscription.status == 'CANCELLED':
            return 'subscription_cancelled'
    return 'subscription_required'


def serialize_transaction(entry: CreditTransaction) -> dict:
    return {
        'id': entry.id,
        'amount': entry.amount,
        'type': entry.type,
        'status': entry.status,
        'description': entry.description,
        'batchId': entry.batch_id,
        'createdAt': entry.created_at.isoformat() if entry.created_at else None,
    }


class CreditsService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_user(self, user_id: int) -> Optional[User]:
        return await self.session.get(User, user_id)

    async def get_subscription(self, user_id: int) -> Optional[Subscription]:
        result = await self.session.execute(select(Subscription).where(Subscription.user_id == user_id))
        return result.scalar_one_or_none()

    async def ledger_sum(self, user_id: int) -> int:
        now = utcnow()
        result = await self.session.execute(
            select(func.coalesce(func.sum(CreditTransaction.amount), 0))
            .where(CreditTransaction.user_id == user_id)
            .where(CreditTransaction.status == 'COMPLETED')
            .where(or_(CreditTransaction.expires_at.is_(None), CreditTransaction.expires_at > now))
        )
        return int(result.scalar_one() or 0)

    async def available_credits(self, user_id: int) -> int:
        # Spent rows never expire, so an expired grant can leave the sum below zero.
        return max(0, await self.ledger_sum(user_id))

    async def find_by_key(self, idempotency_key: str) -> Optional[CreditTransaction]:
        result = await self.session.execute(
            select(CreditTransaction).where(CreditTransaction.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def add_transaction(
        self,
        user_id: int,
        amount: int,
        type: str,
        description: str = '',
        batch_id: int | None = None,
        expires_at: datetime | None = None,
        idempotency_key: str | None = None,
        status: str = 'COMPLETED',
    ) -> CreditTransaction:
        if type not in TRANSACTION_TYPES:
            raise ValueError('invalid_transaction_type')
        if idempotency_key:
            existing = await self.find_by_key(idempotency_key)
            if existing:
                return existing
        entry = CreditTransaction(
            user_id=user_id,
            amount=int(amount),
            type=type,
            status=status,
            description=description[:255],
            batch_id=batch_id,
            expires_at=expires_at,
            idempotency_key=idempotency_key,
            created_at=utcnow(),
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def _lock_user(self, user_id: int) -> None:
        # Serializes balance checks per user on PostgreSQL.
        await self.session.execute(select(User.id).where(User.id == user_id).with_for_update())

    async def deduct(
        self,
        user_id: int,
        amount: int,
        description: str,
        type: str = 'IMAGE_TWEAK',
        batch_id: int | None = None,
        idempotency_key: str | None = None,
    ) -> CreditTransaction:
        if amount <= 0:
            raise ValueError('invalid_amount')
        await self._lock_user(user_id)
        subscription = await self.get_subscription(user_id)
        if not is_subscription_usable(subscription):
            raise ValueError(subscription_error(subscription))
        available = await self.available_credits(user_id)
        if available < amount:
            logger.info('insufficient_credits', user_id=user_id, available=available, required=amount)
            raise ValueError('insufficient_credits')
        entry = await self.add_transaction(
            user_id,
            -amount,
            type,
            description=description,
            batch_id=batch_id,
            idempotency_key=idempotency_key,
        )
        logger.info('credits_deducted', user_id=user_id, amount=amount, remaining=available - amount)
        return entry

    async def refund(
        self,
        user_id: int,
        amount: int,
        description: str,
        batch_id: int | None = None,
        idempotency_key: str | None = None,
    ) -> CreditTransaction:
        if amount <= 0:
            raise ValueError('invalid_amount')
        entry = await self.add_transaction(
            user_id,
            amount,
            'REFUND',
            description=description,
            batch_id=batch_id,
            idempotency_key=idempotency_key,
        )
        logger.info('credits_refunded', user_id=user_id, amount=amount, key=idempotency_key)
        return entry

    async def reset_allocation(
        self,
        user_id: int,
        amount: int,
        description: str,
        idempotency_key: str,
    ) -> bool:
        """Replace the current balance with a fresh plan allocation.

        Leftover credits are expired with a balancing entry so the balance
        equals ``amount`` afterwards. Returns False when the allocation for
        this key was already applied.
        """
        if await self.find_by_key(idempotency_key):
            return False
        await self._lock_user(user_id)
        balance = await self.ledger_sum(user_id)
        if balance:
            await self.add_transaction(
                user_id,
                -balance,
                'EXPIRY',
                description='Credits reset on new allocation',
                idempotency_key=f'{idempotency_key}:expiry',
            )
        await self.add_transaction(
            user_id,
            amount,
            'SUBSCRIPTION_CREDIT',
            description=description,
            idempotency_key=idempotency_key,
        )
        logger.info('credits_allocated', user_id=user_id, amount=amount, expired=balance)
        return True

    async def list_transactions(self, user_id: int, limit: int = 50, offset: int = 0) -> List[CreditTransaction]:
        result = await self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

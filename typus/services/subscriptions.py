from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from typus.config import get_settings
from typus.db.models import Subscription, User
from typus.services.credits import CreditsService
from typus.services.plans import BILLING_CYCLES, PLAN_TYPES, PlansService, credit_allocation
from typus.utils.logging import get_logger
from typus.utils.time import as_utc, from_timestamp, utcnow


logger = get_logger('subscriptions')

STRIPE_STATUS_MAP = {
    'active': 'ACTIVE',
    'trialing': 'ACTIVE',
    'past_due': 'PAST_DUE',
    'unpaid': 'PAST_DUE',
    'canceled': 'CANCELLED',
    'incomplete': 'INCOMPLETE',
    'incomplete_expired': 'CANCELLED',
    'paused': 'PAST_DUE',
}


class StripeGatewayError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StripeGateway:
    """Thin async wrapper over the synchronous Stripe SDK."""

    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None) -> None:
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _call(self, fn, *args, **kwargs) -> Any:
        if not self.api_key:
            raise StripeGatewayError('stripe_not_configured', 503)
        try:
            return await asyncio.to_thread(fn, *args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as exc:
            logger.warning('stripe_call_failed', call=getattr(fn, '__qualname__', str(fn)), error=str(exc))
            raise StripeGatewayError(str(exc), exc.http_status or 502) from exc

    async def create_customer(self, email: str, name: str, user_id: int) -> str:
        customer = await self._call(
            stripe.Customer.create,
            email=email,
            name=name or None,
            metadata={'userId': str(user_id)},
        )
        return customer['id']

    async def create_checkout_session(self, **params: Any) -> Dict[str, Any]:
        session = await self._call(stripe.checkout.Session.create, **params)
        return {'id': session['id'], 'url': session['url']}

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        session = await self._call(stripe.billing_portal.Session.create, customer=customer_id, return_url=return_url)
        return session['url']

    async def cancel_subscription(self, subscription_id: str) -> None:
        await self._call(stripe.Subscription.cancel, subscription_id)

    async def set_cancel_at_period_end(self, subscription_id: str, value: bool = True) -> None:
        await self._call(stripe.Subscription.modify, subscription_id, cancel_at_period_end=value)

    def construct_event(self, payload: bytes, signature_header: str) -> Any:
        if not self.webhook_secret:
            raise StripeGatewayError('stripe_webhook_not_configured', 503)
        try:
            return stripe.Webhook.construct_event(payload, signature_header, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise StripeGatewayError('invalid_signature', 400) from exc


def serialize_subscription(subscription: Optional[Subscription]) -> Optional[Dict[str, Any]]:
    if subscription is None:
        return None
    period_start = as_utc(subscription.current_period_start)
    period_end = as_utc(subscription.current_period_end)
    return {
        'planType': subscription.plan_type,
        'billingCycle': subscription.billing_cycle,
        'status': subscription.status,
        'isEducational': subscription.is_educational,
        'creditsPerPeriod': subscription.credits_per_period,
        'currentPeriodStart': period_start.isoformat() if period_start else None,
        'currentPeriodEnd': period_end.isoformat() if period_end else None,
        'cancelAtPeriodEnd': subscription.cancel_at_period_end,
    }


def _first_item(stripe_subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (stripe_subscription.get('items') or {}).get('data') or []
    return items[0] if items and isinstance(items[0], dict) else {}


def _period(stripe_subscription: Dict[str, Any]) -> tuple[datetime | None, datetime | None]:
    # Newer API versions moved the period onto subscription items.
    item = _first_item(stripe_subscription)
    start = stripe_subscription.get('current_period_start') or item.get('current_period_start')
    end = stripe_subscription.get('current_period_end') or item.get('current_period_end')
    return from_timestamp(start), from_timestamp(end)


def _invoice_subscription_id(invoice: Dict[str, Any]) -> str:
    value = invoice.get('subscription')
    if isinstance(value, dict):
        value = value.get('id')
    if not value:
        details = ((invoice.get('parent') or {}).get('subscription_details') or {})
        value = details.get('subscription')
    return str(value or '')


class SubscriptionsService:
    def __init__(self, session: AsyncSession, gateway: StripeGateway | None = None) -> None:
        self.session = session
        self.gateway = gateway or StripeGateway()
        self.settings = get_settings()
        self.credits = CreditsService(session)
        self.plans = PlansService(session)

    async def get_subscription(self, user_id: int) -> Optional[Subscription]:
        return await self.credits.get_subscription(user_id)

    async def _by_stripe_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        if not stripe_subscription_id:
            return None
        result = await self.session.execute(
            select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
        )
        return result.scalar_one_or_none()

    async def ensure_customer(self, user: User) -> str:
        if user.stripe_customer_id:
            return user.stripe_customer_id
        customer_id = await self.gateway.create_customer(user.email, user.full_name, user.id)
        user.stripe_customer_id = customer_id
        user.updated_at = utcnow()
        await self.session.flush()
        return customer_id

    async def create_checkout_session(
        self,
        user: User,
        plan_type: str,
        billing_cycle: str,
        educational: bool,
        success_url: str,
        cancel_url: str,
        currency: str | None = None,
    ) -> Dict[str, Any]:
        if plan_type not in PLAN_TYPES:
            raise ValueError('invalid_plan_type')
        if billing_cycle not in BILLING_CYCLES:
            raise ValueError('invalid_billing_cycle')
        if educational and not user.is_student:
            raise ValueError('educational_requires_student')

        price = await self.plans.get_plan_price(plan_type, billing_cycle, educational, currency)
        if not price:
            raise ValueError('plan_price_not_found')

        customer_id = await self.ensure_customer(user)
        metadata = {
            'userId': str(user.id),
            'planType': plan_type,
            'billingCycle': billing_cycle,
            'isEducational': 'true' if educational else 'false',
        }
        session = await self.gateway.create_checkout_session(
            customer=customer_id,
            mode='subscription',
            line_items=[{'price': price.stripe_price_id, 'quantity': 1}],
            allow_promotion_codes=True,
            subscription_data={'metadata': metadata},
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url,
        )
        logger.info('checkout_created', user_id=user.id, plan=plan_type, cycle=billing_cycle, session_id=session['id'])
        return session

    async def create_portal_session(self, user: User, return_url: str) -> str:
        subscription = await self.get_subscription(user.id)
        customer_id = user.stripe_customer_id or (subscription.stripe_customer_id if subscription else None)
        if not customer_id:
            raise ValueError('no_billing_account')
        return await self.gateway.create_portal_session(customer_id, return_url)

    async def cancel(self, user: User, immediate: bool = False) -> Subscription:
        subscription = await self.get_subscription(user.id)
        if not subscription or subscription.status not in ('ACTIVE', 'PAST_DUE', 'CANCELLED_AT_PERIOD_END'):
            raise ValueError('subscription_not_found')
        if subscription.stripe_subscription_id:
            if immediate:
                await self.gateway.cancel_subscription(subscription.stripe_subscription_id)
            else:
                await self.gateway.set_cancel_at_period_end(subscription.stripe_subscription_id, True)
        if immediate:
            subscription.status = 'CANCELLED'
        else:
            subscription.status = 'CANCELLED_AT_PERIOD_END'
            subscription.cancel_at_period_end = True
        subscription.updated_at = utcnow()
        logger.info('subscription_cancelled', user_id=user.id, immediate=immediate)
        return subscription

    async def handle_event(self, event: Dict[str, Any]) -> str:
        event_type = str(event.get('type') or '')
        obj = ((event.get('data') or {}).get('object')) or {}
        if event_type in ('customer.subscription.created', 'customer.subscription.updated'):
            return await self.sync_subscription(obj)
        if event_type == 'customer.subscription.deleted':
            return await self._handle_deleted(obj)
        if event_type == 'invoice.payment_failed':
            return await self._handle_payment_failed(obj)
        if event_type == 'invoice.payment_succeeded':
            return await self._handle_payment_succeeded(obj)
        logger.info('stripe_event_ignored', type=event_type, event_id=event.get('id'))
        return 'ignored'

    async def _resolve_user(self, stripe_subscription: Dict[str, Any]) -> Optional[User]:
        metadata = stripe_subscription.get('metadata') or {}
        raw_user_id = str(metadata.get('userId') or '').strip()
        if raw_user_id.isdigit():
            user = await self.session.get(User, int(raw_user_id))
            if user:
                return user
        customer_id = stripe_subscription.get('customer')
        if customer_id:
            result = await self.session.execute(select(User).where(User.stripe_customer_id == customer_id))
            return result.scalar_one_or_none()
        return None

    async def _resolve_plan(self, stripe_subscription: Dict[str, Any]) -> Optional[tuple[str, str, bool]]:
        price_id = ((_first_item(stripe_subscription).get('price')) or {}).get('id')
        if price_id:
            found = await self.plans.plan_for_price_id(price_id)
            if found:
                plan, price = found
                return plan.plan_type, price.billing_cycle, plan.is_educational
        metadata = stripe_subscription.get('metadata') or {}
        plan_type = metadata.get('planType')
        billing_cycle = metadata.get('billingCycle')
        if plan_type in PLAN_TYPES and billing_cycle in BILLING_CYCLES:
            return plan_type, billing_cycle, metadata.get('isEducational') == 'true'
        return None

    async def sync_subscription(self, stripe_subscription: Dict[str, Any]) -> str:
        stripe_id = str(stripe_subscription.get('id') or '')
        user = await self._resolve_user(stripe_subscription)
        if not user:
            logger.warning('subscription_user_missing', stripe_subscription_id=stripe_id)
            return 'skipped'
        plan = await self._resolve_plan(stripe_subscription)
        if not plan:
            logger.warning('subscription_plan_missing', stripe_subscription_id=stripe_id, user_id=user.id)
            return 'skipped'
        plan_type, billing_cycle, educational = plan

        period_start, period_end = _period(stripe_subscription)
        period_start = period_start or utcnow()
        cancel_at_period_end = bool(stripe_subscription.get('cancel_at_period_end'))
        status = STRIPE_STATUS_MAP.get(str(stripe_subscription.get('status') or 'active'), 'ACTIVE')
        if status == 'ACTIVE' and cancel_at_period_end:
            status = 'CANCELLED_AT_PERIOD_END'

        subscription = await self.get_subscription(user.id)
        is_new = subscription is None or subscription.stripe_subscription_id != stripe_id
        plan_changed = False
        period_moved = False
        if subscription is not None and not is_new:
            plan_changed = subscription.plan_type != plan_type or subscription.billing_cycle != billing_cycle
            previous_start = as_utc(subscription.current_period_start)
            period_moved = previous_start is None or abs(previous_start - period_start) > timedelta(days=1)

        now = utcnow()
        if subscription is None:
            subscription = Subscription(user_id=user.id, created_at=now)
            self.session.add(subscription)
        subscription.plan_type = plan_type
        subscription.billing_cycle = billing_cycle
        subscription.is_educational = educational
        subscription.status = status
        subscription.stripe_subscription_id = stripe_id
        subscription.stripe_customer_id = stripe_subscription.get('customer') or subscription.stripe_customer_id
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.cancel_at_period_end = cancel_at_period_end
        subscription.credits_per_period = credit_allocation(plan_type, educational)
        subscription.updated_at = now
        if is_new:
            subscription.failed_payment_attempts = 0
        if subscription.stripe_customer_id and not user.stripe_customer_id:
            user.stripe_customer_id = subscription.stripe_customer_id
        await self.session.flush()

        if status != 'ACTIVE':
            logger.info('subscription_synced', user_id=user.id, status=status, allocated=False)
            return 'synced'
        if not (is_new or plan_changed or period_moved):
            return 'duplicate'

        allocated = await self._allocate(subscription, period_start)
        logger.info(
            'subscription_synced',
            user_id=user.id,
            plan=plan_type,
            cycle=billing_cycle,
            is_new=is_new,
            plan_changed=plan_changed,
            allocated=allocated,
        )
        return 'allocated' if allocated else 'duplicate'

    async def _allocate(self, subscription: Subscription, period_start: datetime) -> bool:
        amount = credit_allocation(subscription.plan_type, subscription.is_educational)
        key = (
            f'alloc:{subscription.stripe_subscription_id}:{subscription.plan_type}:'
            f'{subscription.billing_cycle}:{int(period_start.timestamp())}'
        )
        return await self.credits.reset_allocation(
            subscription.user_id,
            amount,
            f'{subscription.plan_type} plan credits ({subscription.billing_cycle.lower()})',
            idempotency_key=key,
        )

    async def _handle_deleted(self, stripe_subscription: Dict[str, Any]) -> str:
        subscription = await self._by_stripe_id(str(stripe_subscription.get('id') or ''))
        if not subscription:
            return 'skipped'
        subscription.status = 'CANCELLED'
        subscription.cancel_at_period_end = False
        subscription.updated_at = utcnow()
        logger.info('subscription_deleted', user_id=subscription.user_id)
        return 'cancelled'

    async def _handle_payment_failed(self, invoice: Dict[str, Any]) -> str:
        subscription = await self._by_stripe_id(_invoice_subscription_id(invoice))
        if not subscription:
            return 'skipped'
        subscription.failed_payment_attempts = (subscription.failed_payment_attempts or 0) + 1
        subscription.last_payment_failure_at = utcnow()
        subscription.updated_at = utcnow()
        if subscription.failed_payment_attempts >= self.settings.max_payment_failures:
            subscription.status = 'CANCELLED'
            if subscription.stripe_subscription_id and self.gateway.enabled:
                try:
                    await self.gateway.cancel_subscription(subscription.stripe_subscription_id)
                except StripeGatewayError as exc:
                    logger.warning('stripe_cancel_failed', user_id=subscription.user_id, error=str(exc))
            logger.warning(
                'subscription_cancelled_after_failures',
                user_id=subscription.user_id,
                attempts=subscription.failed_payment_attempts,
            )
            return 'cancelled'
        subscription.status = 'PAST_DUE'
        logger.info('payment_failed', user_id=subscription.user_id, attempts=subscription.failed_payment_attempts)
        return 'past_due'

    async def _handle_payment_succeeded(self, invoice: Dict[str, Any]) -> str:
        # The initial invoice is covered by the subscription.created event.
        if invoice.get('billing_reason') != 'subscription_cycle':
            return 'ignored'
        subscription = await self._by_stripe_id(_invoice_subscription_id(invoice))
        if not subscription:
            return 'skipped'
        lines = (invoice.get('lines') or {}).get('data') or []
        period = (lines[0].get('period') or {}) if lines else {}
        period_start = from_timestamp(period.get('start')) or utcnow()
        period_end = from_timestamp(period.get('end'))
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.failed_payment_attempts = 0
        subscription.status = 'CANCELLED_AT_PERIOD_END' if subscription.cancel_at_period_end else 'ACTIVE'
        subscription.updated_at = utcnow()
        await self.session.flush()
        if subscription.status != 'ACTIVE':
            return 'renewed'
        await self._allocate(subscription, period_start)
        logger.info('subscription_renewed', user_id=subscription.user_id, plan=subscription.plan_type)
        return 'renewed'

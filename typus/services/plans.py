from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from typus.db.models import Plan, PlanPrice


PLAN_TYPES = ('STARTER', 'EXPLORER', 'PRO')
BILLING_CYCLES = ('MONTHLY', 'SIX_MONTHLY', 'YEARLY')

CREDIT_ALLOCATION = {
    'STARTER': 50,
    'EXPLORER': 150,
    'PRO': 1000,
}

# Educational plans get the regular allocation.
EDUCATIONAL_CREDIT_ALLOCATION = {
    'STARTER': 50,
    'EXPLORER': 150,
    'PRO': 1000,
}

EU_COUNTRIES = {
    'AT', 'BE', 'BG', 'HR', 'CY', 'CZ', 'DK', 'EE', 'FI', 'FR', 'DE', 'GR', 'HU',
    'IE', 'IT', 'LV', 'LT', 'LU', 'MT', 'NL', 'PL', 'PT', 'RO', 'SK', 'SI', 'ES', 'SE',
}


def credit_allocation(plan_type: str, educational: bool = False) -> int:
    table = EDUCATIONAL_CREDIT_ALLOCATION if educational else CREDIT_ALLOCATION
    amount = table.get((plan_type or '').upper())
    if not amount:
        raise ValueError('invalid_plan_type')
    return amount


def user_currency(country_code: str | None, continent: str | None = None) -> str:
    if country_code and country_code.upper() in EU_COUNTRIES:
        return 'eur'
    if continent and continent.upper() == 'EU':
        return 'eur'
    return 'usd'


class PlansService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_plans(self, educational: bool | None = None) -> List[Plan]:
        stmt = (
            select(Plan)
            .where(Plan.is_active.is_(True))
            .options(selectinload(Plan.prices))
            .order_by(Plan.is_educational, Plan.sort_order, Plan.id)
        )
        if educational is not None:
            stmt = stmt.where(Plan.is_educational.is_(educational))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_plan(self, plan_type: str, educational: bool = False) -> Optional[Plan]:
        result = await self.session.execute(
            select(Plan)
            .where(Plan.plan_type == plan_type)
            .where(Plan.is_educational.is_(educational))
            .options(selectinload(Plan.prices))
        )
        return result.scalar_one_or_none()

    async def get_plan_price(
        self,
        plan_type: str,
        billing_cycle: str,
        educational: bool = False,
        currency: str | None = None,
    ) -> Optional[PlanPrice]:
        plan = await self.get_plan(plan_type, educational)
        if not plan or not plan.is_active:
            return None
        for price in plan.prices:
            if not price.is_active or price.billing_cycle != billing_cycle:
                continue
            if currency and price.currency != currency:
                continue
            return price
        return None

    async def plan_for_price_id(self, stripe_price_id: str) -> Optional[tuple[Plan, PlanPrice]]:
        result = await self.session.execute(
            select(PlanPrice)
            .where(PlanPrice.stripe_price_id == stripe_price_id)
            .options(selectinload(PlanPrice.plan))
        )
        price = result.scalar_one_or_none()
        if not price:
            return None
        return price.plan, price

    @staticmethod
    def format_plans_for_api(plans: List[Plan], currency: str | None = None) -> Dict[str, Any]:
        products: Dict[str, Any] = {}
        for plan in plans:
            key = f'EDUCATIONAL_{plan.plan_type}' if plan.is_educational else plan.plan_type
            prices = [p for p in plan.prices if p.is_active and (currency is None or p.currency == currency)]
            products[key] = {
                'productId': f'local_{plan.id}',
                'name': plan.name,
                'description': plan.description,
                'credits': plan.credits,
                'isEducational': plan.is_educational,
                'prices': {
                    price.billing_cycle: {
                        'id': price.stripe_price_id,
                        'amount': price.amount,
                        'currency': price.currency,
                        'interval': price.billing_cycle.lower(),
                    }
                    for price in prices
                },
            }
        return products

from __future__ import annotations

import asyncio

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from typus.db.models import CustomizationCategory, CustomizationOption, Plan, PlanPrice
from typus.db.session import create_engine, create_sessionmaker
from typus.services.plans import credit_allocation


# (plan_type, educational, name, description, sort_order)
DEFAULT_PLANS = [
    ('STARTER', False, 'Typus - Starter Plan', 'Perfect for getting started with 50 credits per cycle', 1),
    ('EXPLORER', False, 'Typus - Explorer Plan', 'Ideal for regular use with 150 credits per cycle', 2),
    ('PRO', False, 'Typus - Pro Plan', 'Professional tier with 1000 credits per cycle', 3),
    ('STARTER', True, 'Educational Typus - Starter Plan', 'Student plan with 50 credits per cycle', 1),
    ('EXPLORER', True, 'Educational Typus - Explorer Plan', 'Student plan with 150 credits per cycle', 2),
    ('PRO', True, 'Educational Typus - Pro Plan', 'Student plan with 1000 credits per cycle', 3),
]

# Amounts in cents, per billing cycle. The same amounts are listed in usd and eur.
DEFAULT_PRICES = {
    (False, 'STARTER'): {'SIX_MONTHLY': 3900},
    (False, 'EXPLORER'): {'SIX_MONTHLY': 9900},
    (False, 'PRO'): {'SIX_MONTHLY': 19900},
    (True, 'STARTER'): {'MONTHLY': 600, 'SIX_MONTHLY': 1200, 'YEARLY': 1800},
    (True, 'EXPLORER'): {'MONTHLY': 1200, 'SIX_MONTHLY': 2400, 'YEARLY': 3600},
    (True, 'PRO'): {'MONTHLY': 1800, 'SIX_MONTHLY': 3600, 'YEARLY': 5400},
}

CURRENCIES = ('eur', 'usd')

# (slug, name, parent_slug, sort_order)
DEFAULT_CATEGORIES = [
    ('photorealistic', 'Photorealistic', None, 1),
    ('art', 'Art', None, 2),
    ('walls', 'Walls', 'photorealistic', 1),
    ('floors', 'Floors', 'photorealistic', 2),
    ('context', 'Context', 'photorealistic', 3),
    ('weather', 'Weather', 'photorealistic', 4),
    ('lighting', 'Lighting', 'photorealistic', 5),
    ('illustration', 'Illustration', 'art', 1),
]

# category slug -> [(slug, name, prompt_text)]
DEFAULT_OPTIONS = {
    'walls': [
        ('brick', 'Brick', 'traditional red brick facade, detailed mortar joints'),
        ('ceramics', 'Ceramics', 'glazed ceramic tile cladding'),
        ('concrete', 'Concrete', 'exposed board-formed concrete wall'),
        ('marble', 'Marble', 'polished white marble panels with grey veining'),
        ('metal', 'Metal', 'standing seam metal cladding'),
        ('steel', 'Steel', 'weathered corten steel panels'),
        ('stone', 'Stone', 'natural stone masonry wall'),
        ('terrazzo', 'Terrazzo', 'terrazzo panels with coloured aggregate'),
        ('wood', 'Wood', 'vertical timber cladding, natural oak'),
        ('glass', 'Glass', 'floor to ceiling glass curtain wall'),
        ('plaster', 'Plaster', 'smooth white lime plaster render'),
    ],
    'floors': [
        ('exterior', 'Exterior', 'outdoor stone paving'),
        ('wood', 'Wood', 'wide plank oak flooring'),
        ('concrete', 'Concrete', 'polished concrete floor'),
    ],
    'context': [
        ('cityscape', 'Cityscape', 'dense urban context, surrounding city blocks'),
        ('landscape', 'Landscape', 'open green landscape, trees and meadow'),
    ],
    'weather': [
        ('sunny', 'Sunny', 'clear blue sky, bright sunlight'),
        ('overcast', 'Overcast', 'soft overcast sky, diffuse light'),
        ('rainy', 'Rainy', 'rain, wet reflective surfaces'),
        ('snowy', 'Snowy', 'fresh snow cover, winter atmosphere'),
    ],
    'lighting': [
        ('daylight', 'Daylight', 'natural daylight'),
        ('golden-hour', 'Golden hour', 'warm golden hour light, long shadows'),
        ('night', 'Night', 'night scene, warm interior lights glowing'),
    ],
    'illustration': [
        ('pen-and-ink', 'Pen and ink', 'pen and ink illustration'),
        ('aquarelle', 'Aquarelle', 'loose aquarelle watercolor painting'),
        ('linocut', 'Linocut', 'linocut print, bold carved lines'),
        ('collage', 'Collage', 'architectural collage, cut paper textures'),
        ('fine-black-pen', 'Fine black pen', 'fine black pen line drawing'),
        ('minimalist', 'Minimalist', 'minimalist flat illustration'),
        ('avantgarde', 'Avantgarde', 'avant-garde experimental rendering'),
        ('copic-pen', 'Copic pen', 'copic marker sketch'),
    ],
}


def placeholder_price_id(plan_type: str, educational: bool, cycle: str, currency: str) -> str:
    prefix = 'edu_' if educational else ''
    return f'price_{prefix}{plan_type.lower()}_{cycle.lower()}_{currency}'


async def seed_plans(session: AsyncSession) -> None:
    for plan_type, educational, name, description, order in DEFAULT_PLANS:
        result = await session.execute(
            select(Plan).where(Plan.plan_type == plan_type, Plan.is_educational.is_(educational))
        )
        plan = result.scalar_one_or_none()
        if plan is None:
            plan = Plan(plan_type=plan_type, is_educational=educational)
            session.add(plan)
        plan.name = name
        plan.description = description
        plan.credits = credit_allocation(plan_type, educational)
        plan.sort_order = order
        plan.is_active = True
        await session.flush()

        for cycle, amount in DEFAULT_PRICES[(educational, plan_type)].items():
            for currency in CURRENCIES:
                price_id = placeholder_price_id(plan_type, educational, cycle, currency)
                result = await session.execute(select(PlanPrice).where(PlanPrice.stripe_price_id == price_id))
                if result.scalar_one_or_none():
                    continue
                session.add(
                    PlanPrice(
                        plan_id=plan.id,
                        billing_cycle=cycle,
                        currency=currency,
                        amount=amount,
                        stripe_price_id=price_id,
                        is_active=True,
                    )
                )


async def seed_customization(session: AsyncSession) -> None:
    categories = {}
    for slug, name, parent_slug, order in DEFAULT_CATEGORIES:
        result = await session.execute(select(CustomizationCategory).where(CustomizationCategory.slug == slug))
        category = result.scalar_one_or_none()
        if category is None:
            category = CustomizationCategory(slug=slug)
            session.add(category)
        category.name = name
        category.sort_order = order
        category.parent_id = categories[parent_slug].id if parent_slug else None
        await session.flush()
        categories[slug] = category

    for category_slug, options in DEFAULT_OPTIONS.items():
        category = categories[category_slug]
        for order, (slug, name, prompt_text) in enumerate(options, start=1):
            result = await session.execute(
                select(CustomizationOption).where(
                    CustomizationOption.category_id == category.id,
                    CustomizationOption.slug == slug,
                )
            )
            option = result.scalar_one_or_none()
            if option is None:
                option = CustomizationOption(category_id=category.id, slug=slug)
                session.add(option)
            option.name = name
            option.prompt_text = prompt_text
            option.sort_order = order
            option.is_active = True


async def main() -> None:
    engine = create_engine()
    sessionmaker = create_sessionmaker(engine)

    async with sessionmaker() as session:
        await seed_plans(session)
        await seed_customization(session)
        await session.commit()

    await engine.dispose()


if __name__ == '__main__':
    asyncio.run(main())

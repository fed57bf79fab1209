from __future__ import annotations

import pytest

from typus.scripts.seed import seed_customization, seed_plans
from typus.services.customization import CustomizationService
from typus.services.plans import PlansService, credit_allocation, user_currency


def test_credit_allocation():
    assert credit_allocation('STARTER') == 50
    assert credit_allocation('explorer') == 150
    assert credit_allocation('PRO', educational=True) == 1000
    with pytest.raises(ValueError, match='invalid_plan_type'):
        credit_allocation('ENTERPRISE')


def test_user_currency():
    assert user_currency('de') == 'eur'
    assert user_currency(None, 'EU') == 'eur'
    assert user_currency('US') == 'usd'
    assert user_currency(None) == 'usd'


async def test_seeded_plans_are_listed_in_order(db):
    await seed_plans(db)
    await db.commit()
    service = PlansService(db)

    regular = await service.list_plans(educational=False)
    educational = await service.list_plans(educational=True)

    assert [p.plan_type for p in regular] == ['STARTER', 'EXPLORER', 'PRO']
    assert all(p.is_educational for p in educational)
    assert regular[1].credits == 150


async def test_seeding_twice_does_not_duplicate(db):
    await seed_plans(db)
    await seed_plans(db)
    await seed_customization(db)
    await seed_customization(db)
    await db.commit()

    assert len(await PlansService(db).list_plans()) == 6
    catalog = await CustomizationService(db).list_catalog()
    assert len(catalog) == 8
    walls = next(c for c in catalog if c['slug'] == 'walls')
    assert len(walls['options']) == 11


async def test_plan_price_lookup(db):
    await seed_plans(db)
    await db.commit()
    service = PlansService(db)

    price = await service.get_plan_price('PRO', 'YEARLY', educational=True, currency='eur')
    assert price.stripe_price_id == 'price_edu_pro_yearly_eur'
    assert await service.get_plan_price('PRO', 'YEARLY', educational=False) is None

    plan, found = await service.plan_for_price_id('price_starter_six_monthly_usd')
    assert plan.plan_type == 'STARTER'
    assert found.billing_cycle == 'SIX_MONTHLY'
    assert await service.plan_for_price_id('price_unknown') is None


async def test_format_plans_for_api_filters_currency(db):
    await seed_plans(db)
    await db.commit()
    service = PlansService(db)

    products = service.format_plans_for_api(await service.list_plans(), 'eur')

    assert set(products) == {
        'STARTER', 'EXPLORER', 'PRO',
        'EDUCATIONAL_STARTER', 'EDUCATIONAL_EXPLORER', 'EDUCATIONAL_PRO',
    }
    assert products['PRO']['prices'] == {
        'SIX_MONTHLY': {
            'id': 'price_pro_six_monthly_eur',
            'amount': 19900,
            'currency': 'eur',
            'interval': 'six_monthly',
        }
    }
    assert set(products['EDUCATIONAL_STARTER']['prices']) == {'MONTHLY', 'SIX_MONTHLY', 'YEARLY'}

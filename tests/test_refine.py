from __future__ import annotations

import pytest

from typus.db.models import GenerationBatch
from typus.services.refine import REFINE_DEFAULTS, RefineService, normalize_refine_settings

from conftest import create_completed_image, create_input_image, create_user


def test_defaults_fill_missing_values():
    settings = normalize_refine_settings({'clarity': 30.0, 'resolution': {'width': 2048}, 'unknown': 1})

    assert settings['clarity'] == 30
    assert settings['resolution'] == {'width': 2048, 'height': 1024}
    assert settings['aiStrength'] == REFINE_DEFAULTS['aiStrength']
    assert 'unknown' not in settings
    assert normalize_refine_settings(None) == REFINE_DEFAULTS


@pytest.mark.parametrize(
    'raw, code',
    [
        ({'resolution': {'width': 0}}, 'invalid_resolution'),
        ({'resolution': {'height': 10000}}, 'invalid_resolution'),
        ({'resolution': {'width': 512.5}}, 'invalid_resolution'),
        ({'resolution': '1024x1024'}, 'invalid_resolution'),
        ({'scaleFactor': 8}, 'invalid_scale_factor'),
        ({'scaleFactor': True}, 'invalid_scale_factor'),
        ({'sharpness': -1}, 'invalid_refine_setting'),
        ({'resemblance': float('nan')}, 'invalid_refine_setting'),
        ({'aiStrength': 'strong'}, 'invalid_refine_setting'),
    ],
)
def test_out_of_range_values(raw, code):
    with pytest.raises(ValueError, match=code):
        normalize_refine_settings(raw)


async def test_settings_round_trip_per_source(db):
    user = await create_user(db)
    input_image = await create_input_image(db, user.id)
    generated = await create_completed_image(db, user.id, input_image.id)
    service = RefineService(db)

    assert await service.get_settings(user.id, generated.id) == {'settings': REFINE_DEFAULTS, 'saved': False}

    saved = await service.save_settings(user.id, generated.id, {'scaleFactor': 3, 'matchColor': 0})
    await service.save_settings(user.id, generated.id, {'scaleFactor': 2})
    await db.commit()

    assert saved['scaleFactor'] == 3
    assert saved['matchColor'] is False
    stored = await service.get_settings(user.id, generated.id)
    assert stored['saved'] is True
    assert stored['settings']['scaleFactor'] == 2
    # The input image with the same id space keeps its own settings.
    assert (await service.get_settings(user.id, input_image.id, 'input'))['saved'] is False


async def test_settings_need_an_owned_source(db):
    owner = await create_user(db)
    other = await create_user(db, email='other@example.com')
    generated = await create_completed_image(db, owner.id)
    service = RefineService(db)

    with pytest.raises(ValueError, match='image_not_found'):
        await service.get_settings(other.id, generated.id)
    with pytest.raises(ValueError, match='input_image_not_found'):
        await service.save_settings(other.id, 999, {}, source_type='input')
    with pytest.raises(ValueError, match='invalid_source_type'):
        await service.get_settings(owner.id, generated.id, 'sketch')


async def test_operations_list_refine_variations_of_one_upload(db):
    user = await create_user(db)
    input_image = await create_input_image(db, user.id)
    other_input = await create_input_image(db, user.id)
    created = await create_completed_image(db, user.id, input_image.id)
    first = await create_completed_image(db, user.id, input_image.id, source_image_id=created.id)
    second = await create_completed_image(db, user.id, input_image.id, source_image_id=first.id)
    elsewhere = await create_completed_image(db, user.id, other_input.id)
    for image in (first, second, elsewhere):
        batch = await db.get(GenerationBatch, image.batch_id)
        batch.module_type = 'REFINE'
    await db.commit()

    operations = await RefineService(db).list_operations(user.id, input_image.id)

    assert {image.id for image in operations} == {first.id, second.id}
    assert operations[0].id == second.id

    with pytest.raises(ValueError, match='input_image_not_found'):
        await RefineService(db).list_operations(user.id + 1, input_image.id)

from __future__ import annotations

import pytest
from sqlalchemy import select

from typus.db.models import CustomizationOption, InputImage
from typus.scripts.seed import seed_customization
from typus.services.customization import CustomizationService
from typus.services.masks import MaskServiceError, MasksService, parse_mask_entries, parse_revert_extra

from conftest import create_input_image, create_user


class RecordingHub:
    def __init__(self) -> None:
        self.sent = []

    async def notify(self, channel, input_image_id, message):
        self.sent.append((channel, input_image_id, message))
        return 1


def callback_payload(input_image_id: int) -> dict:
    return {
        'uuids': [
            {'mask1': {'mask_url': 'https://masks.test/red.png', 'color': 'red'}},
            {'mask2': {'mask_url': 'https://masks.test/blue.png', 'color': 'blue'}},
        ],
        'revert_extra': str(input_image_id),
    }


def test_parse_helpers():
    assert parse_revert_extra('5|extra') == 5
    assert parse_revert_extra('') is None
    assert parse_revert_extra('abc') is None

    entries = parse_mask_entries([{'mask1': {'mask_url': ' https://m/1.png ', 'color': 'red'}}, {'m2': {}}, 'junk'])
    assert entries == [{'mask_key': 'mask1', 'mask_url': 'https://m/1.png', 'color': 'red'}]
    assert parse_mask_entries(None) == []


async def test_generate_requests_color_filter(db, mask_client, http):
    user = await create_user(db)
    input_image = await create_input_image(db, user.id)

    snapshot = await MasksService(db, client=mask_client, http=http).generate(user.id, input_image.id)

    assert snapshot['maskStatus'] == 'processing'
    assert snapshot['maskRegions'] == []
    request = mask_client.requests[0]
    assert request['input_image_id'] == input_image.id
    assert request['callback_url'] == 'https://api.typus.test/api/masks/callback'
    assert request['size'] > 0


async def test_generate_signs_callback_url(db, mask_client, http, settings, monkeypatch):
    monkeypatch.setattr(settings, 'mask_callback_token', 'mask-secret')
    user = await create_user(db)
    input_image = await create_input_image(db, user.id)

    await MasksService(db, client=mask_client, http=http).generate(user.id, input_image.id)

    assert mask_client.requests[0]['callback_url'] == 'https://api.typus.test/api/masks/callback?token=mask-secret'


async def test_generate_when_service_is_down(db, mask_client, http):
    user = await create_user(db)
    input_image = await create_input_image(db, user.id)
    mask_client.available = False

    with pytest.raises(MaskServiceError) as exc_info:
        await MasksService(db, client=mask_client, http=http).generate(user.id, input_image.id)
    assert exc_info.value.status_code == 503


async def test_generate_on_foreign_image(db, mask_client, http):
    owner = await create_user(db)
    other = await create_user(db, email='other@example.com')
    input_image = await create_input_image(db, owner.id)

    with pytest.raises(ValueError, match='input_image_not_found'):
        await MasksService(db, client=mask_client, http=http).generate(other.id, input_image.id)


async def test_callback_stores_regions_and_notifies(db, mask_client, http):
    user = await create_user(db)
    input_image = await create_input_image(db, user.id)
    hub = RecordingHub()
    service = MasksService(db, client=mask_client, hub=hub, http=http)

    result = await service.handle_callback(callback_payload(input_image.id))
    await db.commit()

    assert result == {'inputImageId': input_image.id, 'maskStatus': 'completed', 'maskCount': 2}
    snapshot = await service.get_regions(user.id, input_image.id)
    assert [r['color'] for r in snapshot['maskRegions']] == ['red', 'blue']
    assert snapshot['maskStatus'] == 'completed'
    channel, notified_id, message = hub.sent[-1]
    assert (channel, notified_id, message['type']) == ('masks', input_image.id, 'masks_completed')

    # A second callback replaces the previous regions.
    await service.handle_callback(callback_payload(input_image.id))
    await db.commit()
    assert len((await service.get_regions(user.id, input_image.id))['maskRegions']) == 2

    # Completed masks are reused unless forced.
    await service.generate(user.id, input_image.id)
    assert mask_client.requests == []


async def test_failed_callback(db, mask_client):
    user = await create_user(db)
    input_image = await create_input_image(db, user.id)
    hub = RecordingHub()

    result = await MasksService(db, client=mask_client, hub=hub).handle_callback(
        {'revert_extra': input_image.id, 'status': 'failed', 'error': 'segmentation crashed'}
    )

    assert result['maskStatus'] == 'failed'
    image = await db.get(InputImage, input_image.id)
    assert image.mask_data == {'error': 'segmentation crashed'}
    assert hub.sent[-1][2]['type'] == 'masks_failed'


async def test_callback_validation(db, mask_client):
    service = MasksService(db, client=mask_client)

    with pytest.raises(ValueError, match='revert_extra_required'):
        await service.handle_callback({'uuids': []})
    with pytest.raises(ValueError, match='input_image_not_found'):
        await service.handle_callback({'revert_extra': '4242'})


async def test_update_style_and_clear(db, mask_client):
    user = await create_user(db)
    other = await create_user(db, email='other@example.com')
    input_image = await create_input_image(db, user.id)
    await seed_customization(db)
    await db.commit()
    brick = (await db.execute(select(CustomizationOption).where(CustomizationOption.slug == 'brick'))).scalar_one()
    service = MasksService(db, client=mask_client)
    await service.handle_callback(callback_payload(input_image.id))
    regions = (await service.get_regions(user.id, input_image.id))['maskRegions']

    styled = await service.update_style(user.id, regions[0]['id'], customization_option_id=brick.id, custom_text='  ')

    assert styled['customizationOptionId'] == brick.id
    assert styled['customText'] is None
    assert styled['option']['slug'] == 'brick'

    with pytest.raises(ValueError, match='mask_not_found'):
        await service.update_style(other.id, regions[0]['id'], custom_text='glass')
    with pytest.raises(ValueError, match='mask_not_found'):
        await service.update_style(user.id, 9999)
    with pytest.raises(ValueError, match='option_not_found'):
        await service.update_style(user.id, regions[0]['id'], customization_option_id=9999)
    with pytest.raises(ValueError, match='category_not_found'):
        await service.update_style(user.id, regions[0]['id'], sub_category_id=9999)

    await service.clear(user.id, input_image.id)
    snapshot = await service.get_regions(user.id, input_image.id)
    assert snapshot['maskStatus'] == 'none'
    assert snapshot['maskRegions'] == []


async def test_catalog_lists_active_options(db):
    await seed_customization(db)
    await db.commit()
    db.expunge_all()

    catalog = await CustomizationService(db).list_catalog()

    by_slug = {c['slug']: c for c in catalog}
    assert by_slug['walls']['parentId'] == by_slug['photorealistic']['id']
    assert [o['slug'] for o in by_slug['walls']['options']][0] == 'brick'
    assert by_slug['photorealistic']['options'] == []

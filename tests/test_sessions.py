from __future__ import annotations

import pytest
from sqlalchemy import select

from typus.db.models import GenerationBatch
from typus.services.sessions import SessionsService

from conftest import create_completed_image, create_input_image, create_user


async def test_session_name_comes_from_prompt(db):
    user = await create_user(db)
    service = SessionsService(db)

    creation = await service.create_session(user.id, 'modern brick villa near the lake')
    unnamed = await service.create_session(user.id, '   ')

    assert creation.name == 'Modern Brick Villa Near'
    assert unnamed.name is None


async def test_sessions_are_private(db):
    owner = await create_user(db)
    other = await create_user(db, email='other@example.com')
    creation = await SessionsService(db).create_session(owner.id, 'villa')

    with pytest.raises(ValueError, match='session_not_found'):
        await SessionsService(db).get_owned(other.id, creation.id)
    with pytest.raises(ValueError, match='session_not_found'):
        await SessionsService(db).get_session(other.id, creation.id)


async def test_list_sessions_includes_counts_and_thumbnail(db):
    user = await create_user(db)
    service = SessionsService(db)
    creation = await service.create_session(user.id, 'villa')
    image = await create_completed_image(db, user.id)
    batch = await db.get(GenerationBatch, image.batch_id)
    batch.session_id = creation.id
    await db.commit()

    items = await service.list_sessions(user.id)

    assert len(items) == 1
    assert items[0]['batchCount'] == 1
    assert items[0]['thumbnailUrl'] == image.processed_image_url


async def test_get_session_nests_batches_and_variations(db):
    user = await create_user(db)
    service = SessionsService(db)
    creation = await service.create_session(user.id, 'villa')
    image = await create_completed_image(db, user.id)
    batch = await db.get(GenerationBatch, image.batch_id)
    batch.session_id = creation.id
    await db.commit()
    db.expunge_all()

    data = await service.get_session(user.id, creation.id)

    assert data['name'] == 'Villa'
    assert len(data['batches']) == 1
    assert data['batches'][0]['variations'][0]['imageUrl'] == image.processed_image_url


async def test_rename_validation(db):
    user = await create_user(db)
    service = SessionsService(db)
    creation = await service.create_session(user.id, 'villa')

    renamed = await service.rename_session(user.id, creation.id, '  Lake house  ')
    assert renamed.name == 'Lake house'

    with pytest.raises(ValueError, match='name_required'):
        await service.rename_session(user.id, creation.id, ' ')
    with pytest.raises(ValueError, match='name_too_long'):
        await service.rename_session(user.id, creation.id, 'x' * 101)


async def test_delete_session_keeps_batches(db):
    user = await create_user(db)
    service = SessionsService(db)
    creation = await service.create_session(user.id, 'villa')
    image = await create_completed_image(db, user.id)
    batch = await db.get(GenerationBatch, image.batch_id)
    batch.session_id = creation.id
    await db.commit()

    await service.delete_session(user.id, creation.id)
    await db.commit()
    db.expunge_all()

    remaining = (await db.execute(select(GenerationBatch))).scalars().all()
    assert [b.session_id for b in remaining] == [None]


async def test_list_batches_filters_and_paginates(db):
    user = await create_user(db)
    input_image = await create_input_image(db, user.id)
    for _ in range(3):
        await create_completed_image(db, user.id, input_image.id)
    service = SessionsService(db)

    page = await service.list_batches(user.id, module_type='CREATE', page=2, limit=2)

    assert page['pagination'] == {'page': 2, 'limit': 2, 'total': 3, 'pages': 2}
    assert len(page['batches']) == 1
    assert (await service.list_batches(user.id, module_type='UPSCALE'))['batches'] == []
    with pytest.raises(ValueError, match='invalid_module_type'):
        await service.list_batches(user.id, module_type='PAINT')


async def test_get_batch_checks_owner(db):
    user = await create_user(db)
    other = await create_user(db, email='other@example.com')
    image = await create_completed_image(db, user.id)

    batch = await SessionsService(db).get_batch(user.id, image.batch_id)
    assert [v.id for v in batch.variations] == [image.id]

    with pytest.raises(ValueError, match='batch_not_found'):
        await SessionsService(db).get_batch(other.id, image.batch_id)

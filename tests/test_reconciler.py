from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from typus.db.models import CreditTransaction, GeneratedImage, GenerationBatch
from typus.services.reconciler import PARTIAL, Reconciler, rollup_status
from typus.services.storage import ObjectStorage
from typus.utils.time import utcnow

from conftest import create_input_image, create_user


RESULT_URL = 'https://storage.googleapis.com/runpod-out/result.png'


class RecordingHub:
    def __init__(self) -> None:
        self.sent = []

    async def notify(self, channel, input_image_id, message):
        self.sent.append((channel, input_image_id, message))
        return 1


@pytest.fixture
def hub():
    return RecordingHub()


@pytest.fixture
def reconciler(sessionmaker, runpod, replicate, hub, storage, http):
    return Reconciler(sessionmaker, runpod=runpod, replicate=replicate, hub=hub, storage=storage, http=http)


async def create_processing_batch(
    session,
    user_id: int,
    input_image_id: int | None = None,
    variations: int = 2,
    provider: str = 'runpod',
    module_type: str = 'CREATE',
    age: timedelta = timedelta(0),
    with_job_ids: bool = True,
) -> GenerationBatch:
    created = utcnow() - age
    batch = GenerationBatch(
        user_id=user_id,
        input_image_id=input_image_id,
        module_type=module_type,
        status='PROCESSING',
        prompt='villa',
        total_variations=variations,
        credits_used=variations,
        meta={},
        created_at=created,
        updated_at=created,
    )
    batch.variations = [
        GeneratedImage(
            user_id=user_id,
            variation_number=number,
            status='PROCESSING',
            provider=provider,
            provider_job_id=f'{provider}-job-{number}' if with_job_ids else None,
            original_base_image_id=input_image_id,
            meta={},
            created_at=created,
            updated_at=created,
        )
        for number in range(1, variations + 1)
    ]
    session.add(batch)
    await session.commit()
    return batch


async def load(sessionmaker, model, ident):
    async with sessionmaker() as session:
        return await session.get(model, ident)


async def refunds(sessionmaker, user_id):
    async with sessionmaker() as session:
        result = await session.execute(
            select(CreditTransaction).where(CreditTransaction.user_id == user_id, CreditTransaction.type == 'REFUND')
        )
        return list(result.scalars().all())


def test_rollup_status():
    assert rollup_status([]) == 'PROCESSING'
    assert rollup_status(['COMPLETED', 'COMPLETED']) == 'COMPLETED'
    assert rollup_status(['FAILED', 'FAILED']) == 'FAILED'
    assert rollup_status(['COMPLETED', 'FAILED']) == PARTIAL
    assert rollup_status(['COMPLETED', 'PROCESSING']) == 'PROCESSING'


async def test_runpod_webhook_completes_and_rehosts(db, sessionmaker, reconciler, hub, s3):
    user = await create_user(db, credits=10)
    input_image = await create_input_image(db, user.id)
    batch = await create_processing_batch(db, user.id, input_image.id)
    first = batch.variations[0]

    result = await reconciler.process_runpod_webhook(
        {'id': 'runpod-job-1', 'status': 'COMPLETED', 'output': {'imageUrl': RESULT_URL}}
    )

    assert result == {'imageId': first.id, 'status': 'COMPLETED'}
    image = await load(sessionmaker, GeneratedImage, first.id)
    assert image.provider_status == 'COMPLETED'
    assert image.processed_image_url.startswith('https://cdn.typus.test/generated/create/')
    assert image.thumbnail_url is not None
    assert (image.width, image.height) == (120, 80)
    assert image.meta['providerOutputUrl'] == RESULT_URL
    assert image.completed_at is not None
    assert (await load(sessionmaker, GenerationBatch, batch.id)).status == 'PROCESSING'

    channel, input_image_id, message = hub.sent[-1]
    assert (channel, input_image_id) == ('generation', input_image.id)
    assert message['type'] == 'generation_completed'
    assert message['batchStatus'] == 'PROCESSING'
    assert 'inputImageId' not in message


async def test_mixed_outcomes_roll_up_to_partial_with_refund(db, sessionmaker, reconciler):
    user = await create_user(db, credits=10)
    batch = await create_processing_batch(db, user.id)

    await reconciler.process_runpod_webhook({'id': 'runpod-job-1', 'status': 'COMPLETED', 'output': [RESULT_URL]})
    await reconciler.process_runpod_webhook({'id': 'runpod-job-2', 'status': 'FAILED', 'error': 'worker crashed'})

    assert (await load(sessionmaker, GenerationBatch, batch.id)).status == PARTIAL
    failed = await load(sessionmaker, GeneratedImage, batch.variations[1].id)
    assert failed.status == 'FAILED'
    assert failed.failure_reason == 'worker crashed'
    assert [r.amount for r in await refunds(sessionmaker, user.id)] == [1]


async def test_repeated_terminal_webhook_is_a_no_op(db, sessionmaker, reconciler):
    user = await create_user(db, credits=10)
    batch = await create_processing_batch(db, user.id, variations=1)
    payload = {'id': 'runpod-job-1', 'status': 'FAILED'}

    await reconciler.process_runpod_webhook(payload)
    await reconciler.process_runpod_webhook(payload)
    await reconciler.process_runpod_webhook({'id': 'runpod-job-1', 'status': 'COMPLETED', 'output': [RESULT_URL]})

    assert (await load(sessionmaker, GeneratedImage, batch.variations[0].id)).status == 'FAILED'
    assert (await load(sessionmaker, GenerationBatch, batch.id)).status == 'FAILED'
    assert len(await refunds(sessionmaker, user.id)) == 1


async def test_webhook_falls_back_to_job_id(db, sessionmaker, reconciler):
    user = await create_user(db, credits=10)
    batch = await create_processing_batch(db, user.id, variations=1)
    image_id = batch.variations[0].id

    result = await reconciler.process_runpod_webhook(
        {'id': 'unknown-runpod-id', 'status': 'IN_PROGRESS', 'input': {'job_id': image_id}}
    )

    assert result == {'imageId': image_id, 'status': 'PROCESSING'}
    assert (await load(sessionmaker, GeneratedImage, image_id)).provider_status == 'IN_PROGRESS'


async def test_unknown_jobs_are_rejected(reconciler):
    with pytest.raises(ValueError, match='image_not_found'):
        await reconciler.process_runpod_webhook({'id': 'nope', 'status': 'COMPLETED'})
    with pytest.raises(ValueError, match='prediction_id_required'):
        await reconciler.process_replicate_webhook({'status': 'succeeded'})
    with pytest.raises(ValueError, match='image_not_found'):
        await reconciler.process_replicate_webhook({'id': 'pred-x', 'status': 'succeeded'})


async def test_completed_without_output_fails(db, sessionmaker, reconciler):
    user = await create_user(db, credits=10)
    batch = await create_processing_batch(db, user.id, variations=1)

    await reconciler.process_runpod_webhook({'id': 'runpod-job-1', 'status': 'COMPLETED', 'output': {}})

    image = await load(sessionmaker, GeneratedImage, batch.variations[0].id)
    assert (image.status, image.failure_reason) == ('FAILED', 'no_output')


async def test_disallowed_result_host_fails_image(db, sessionmaker, reconciler):
    user = await create_user(db, credits=10)
    batch = await create_processing_batch(db, user.id, variations=1)

    await reconciler.process_runpod_webhook(
        {'id': 'runpod-job-1', 'status': 'COMPLETED', 'output': 'https://attacker.example.com/x.png'}
    )

    image = await load(sessionmaker, GeneratedImage, batch.variations[0].id)
    assert (image.status, image.failure_reason) == ('FAILED', 'result_host_not_allowed')
    assert len(await refunds(sessionmaker, user.id)) == 1


async def test_storage_outage_keeps_vendor_url(db, sessionmaker, runpod, replicate, http):
    user = await create_user(db, credits=10)
    batch = await create_processing_batch(db, user.id, variations=1)
    reconciler = Reconciler(sessionmaker, runpod=runpod, replicate=replicate, storage=ObjectStorage(client=None), http=http)

    await reconciler.process_runpod_webhook({'id': 'runpod-job-1', 'status': 'COMPLETED', 'output': [RESULT_URL]})

    image = await load(sessionmaker, GeneratedImage, batch.variations[0].id)
    assert image.status == 'COMPLETED'
    assert image.processed_image_url == RESULT_URL


async def test_replicate_upscale_gets_training_copy(db, sessionmaker, reconciler):
    user = await create_user(db, credits=10)
    batch = await create_processing_batch(db, user.id, variations=1, provider='replicate', module_type='UPSCALE')

    result = await reconciler.process_replicate_webhook(
        {'id': 'replicate-job-1', 'status': 'succeeded', 'output': 'https://replicate.delivery/pbxt/up.png'}
    )

    assert result['status'] == 'COMPLETED'
    image = await load(sessionmaker, GeneratedImage, batch.variations[0].id)
    assert image.training_image_url.startswith('https://cdn.typus.test/generated/upscale/training/')
    assert (await load(sessionmaker, GenerationBatch, batch.id)).status == 'COMPLETED'


async def test_polling_completes_jobs_without_webhook(db, sessionmaker, reconciler, runpod):
    user = await create_user(db, credits=10)
    batch = await create_processing_batch(db, user.id, variations=2)
    runpod.records['runpod-job-1'] = {'id': 'runpod-job-1', 'status': 'COMPLETED', 'output': [RESULT_URL]}
    runpod.records['runpod-job-2'] = {'id': 'runpod-job-2', 'status': 'CANCELLED'}

    checked = await reconciler.check_processing()

    assert checked == 2
    assert (await load(sessionmaker, GenerationBatch, batch.id)).status == PARTIAL
    assert await reconciler.check_processing() == 0


async def test_polling_skips_variations_not_yet_submitted(db, sessionmaker, reconciler, runpod, settings):
    user = await create_user(db, credits=10)
    batch = await create_processing_batch(
        db, user.id, variations=1, with_job_ids=False, age=timedelta(seconds=settings.job_timeout_seconds + 60)
    )

    assert await reconciler.check_processing() == 0

    image = await load(sessionmaker, GeneratedImage, batch.variations[0].id)
    assert (image.status, image.provider_job_id) == ('PROCESSING', None)
    assert await refunds(sessionmaker, user.id) == []


async def test_polling_gives_up_after_repeated_status_failures(
    db, sessionmaker, reconciler, runpod, monkeypatch, settings
):
    monkeypatch.setattr(settings, 'max_status_check_failures', 2)
    user = await create_user(db, credits=10)
    batch = await create_processing_batch(db, user.id, variations=1)
    runpod.fail_status = True
    image_id = batch.variations[0].id

    await reconciler.check_processing()
    image = await load(sessionmaker, GeneratedImage, image_id)
    assert image.status == 'PROCESSING'
    assert image.meta['status_check_failures'] == 1

    await reconciler.check_processing()
    image = await load(sessionmaker, GeneratedImage, image_id)
    assert (image.status, image.failure_reason) == ('FAILED', 'status_check_failed')
    assert len(await refunds(sessionmaker, user.id)) == 1


async def test_polling_times_out_stale_jobs(db, sessionmaker, reconciler, hub, settings):
    user = await create_user(db, credits=10)
    input_image = await create_input_image(db, user.id)
    batch = await create_processing_batch(
        db, user.id, input_image.id, variations=1, age=timedelta(seconds=settings.job_timeout_seconds + 60)
    )

    await reconciler.check_processing()

    image = await load(sessionmaker, GeneratedImage, batch.variations[0].id)
    assert (image.status, image.failure_reason) == ('FAILED', 'timeout')
    assert (await load(sessionmaker, GenerationBatch, batch.id)).status == 'FAILED'
    assert hub.sent[-1][2]['type'] == 'generation_failed'


async def test_refunds_can_be_disabled(db, sessionmaker, reconciler, monkeypatch, settings):
    monkeypatch.setattr(settings, 'refund_on_fail', False)
    user = await create_user(db, credits=10)
    await create_processing_batch(db, user.id, variations=1)

    await reconciler.process_runpod_webhook({'id': 'runpod-job-1', 'status': 'FAILED'})

    assert await refunds(sessionmaker, user.id) == []

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from typus.config import get_settings
from typus.db.models import GeneratedImage, GenerationBatch
from typus.services.credits import CreditsService
from typus.services.images import ImagesService
from typus.services.notifications import NotificationHub
from typus.services.provider import COMPLETED, FAILED, PROCESSING, TERMINAL_STATUSES, ProviderClient
from typus.services.replicate_client import ReplicateClient, ReplicateError
from typus.services.runpod_client import RunPodClient, RunPodError
from typus.services.storage import ObjectStorage, StorageError
from typus.utils.logging import get_logger
from typus.utils.time import as_utc, utcnow


logger = get_logger('reconciler')

PARTIAL = 'PARTIAL'


def rollup_status(statuses: List[str]) -> str:
    if not statuses:
        return PROCESSING
    if all(s == COMPLETED for s in statuses):
        return COMPLETED
    if all(s == FAILED for s in statuses):
        return FAILED
    if all(s in TERMINAL_STATUSES for s in statuses):
        return PARTIAL
    return PROCESSING


async def recompute_batch_status(session: AsyncSession, batch: GenerationBatch) -> str:
    """Set the batch status from its variations, holding the batch row lock."""
    await session.flush()
    # Concurrent roll-ups of one batch queue here, so each sees the others' commits.
    await session.execute(select(GenerationBatch.id).where(GenerationBatch.id == batch.id).with_for_update())
    result = await session.execute(select(GeneratedImage.status).where(GeneratedImage.batch_id == batch.id))
    status = rollup_status([row[0] for row in result.all()])
    if status != batch.status:
        logger.info('batch_status_changed', batch_id=batch.id, old=batch.status, new=status)
    batch.status = status
    batch.updated_at = utcnow()
    return status


class Reconciler:
    """Moves provider jobs to their final state from webhooks or polling."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        runpod: RunPodClient | None = None,
        replicate: ReplicateClient | None = None,
        hub: NotificationHub | None = None,
        storage: ObjectStorage | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.runpod = runpod or RunPodClient()
        self.replicate = replicate or ReplicateClient()
        self.hub = hub
        self.storage = storage
        self.http = http
        self.settings = get_settings()
        self.global_sem = asyncio.Semaphore(self.settings.global_max_poll_concurrency)
        self._inflight: set[int] = set()

    def _client_for(self, provider: str) -> Optional[ProviderClient]:
        if provider == 'runpod':
            return self.runpod
        if provider == 'replicate':
            return self.replicate
        return None

    async def _load_image(self, session: AsyncSession, **criteria: Any) -> Optional[GeneratedImage]:
        stmt = select(GeneratedImage)
        for name, value in criteria.items():
            stmt = stmt.where(getattr(GeneratedImage, name) == value)
        # Serializes webhook and poll updates of the same row on PostgreSQL.
        result = await session.execute(stmt.limit(1).with_for_update())
        return result.scalar_one_or_none()

    async def process_runpod_webhook(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        client = self.runpod
        runpod_id = str(payload.get('id') or '')
        async with self.sessionmaker() as session:
            image = None
            if runpod_id:
                image = await self._load_image(session, provider='runpod', provider_job_id=runpod_id)
            if image is None:
                job_id = RunPodClient.extract_job_id(payload)
                if job_id is not None:
                    image = await self._load_image(session, provider='runpod', id=job_id)
            if image is None:
                logger.warning('webhook_unknown_job', provider='runpod', runpod_id=runpod_id)
                raise ValueError('image_not_found')
            if not image.provider_job_id and runpod_id:
                image.provider_job_id = runpod_id
            messages = await self._apply(session, image, client, payload)
            result = {'imageId': image.id, 'status': image.status}
            await session.commit()
        await self._publish(messages)
        return result

    async def process_replicate_webhook(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        client = self.replicate
        prediction_id = str(payload.get('id') or '')
        if not prediction_id:
            raise ValueError('prediction_id_required')
        async with self.sessionmaker() as session:
            image = await self._load_image(session, provider='replicate', provider_job_id=prediction_id)
            if image is None:
                logger.warning('webhook_unknown_job', provider='replicate', prediction_id=prediction_id)
                raise ValueError('image_not_found')
            messages = await self._apply(session, image, client, payload)
            result = {'imageId': image.id, 'status': image.status}
            await session.commit()
        await self._publish(messages)
        return result

    async def _apply(
        self,
        session: AsyncSession,
        image: GeneratedImage,
        client: ProviderClient,
        record: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        if image.status in TERMINAL_STATUSES:
            logger.info('job_already_terminal', image_id=image.id, status=image.status)
            return []
        batch = await session.get(GenerationBatch, image.batch_id)
        image.provider_status = client.provider_status(record) or image.provider_status
        image.updated_at = utcnow()
        status = client.normalize_status(record)

        if status == PROCESSING:
            return [self._message('generation_progress', image, batch)]

        if status == COMPLETED:
            urls = client.extract_output_urls(record)
            if not urls:
                await self._fail(session, image, 'no_output')
            else:
                await self._complete(session, image, batch, urls[0])
        else:
            await self._fail(session, image, client.extract_error(record))

        await self._rollup(session, batch)
        message_type = 'generation_completed' if image.status == COMPLETED else 'generation_failed'
        return [self._message(message_type, image, batch)]

    async def _complete(
        self,
        session: AsyncSession,
        image: GeneratedImage,
        batch: GenerationBatch | None,
        url: str,
    ) -> None:
        module_type = batch.module_type if batch else 'CREATE'
        images = ImagesService(session, storage=self.storage, http=self.http)
        try:
            stored = await images.persist_result(
                url,
                prefix=f'generated/{module_type.lower()}',
                with_training_copy=module_type == 'UPSCALE',
            )
        except StorageError as exc:
            # Keep the vendor URL, the image is still viewable.
            logger.warning('result_persist_failed', image_id=image.id, error=str(exc))
            stored = {'original_url': url, 'processed_url': url}
        except ValueError as exc:
            await self._fail(session, image, str(exc))
            return

        image.original_image_url = stored.get('original_url')
        image.processed_image_url = stored.get('processed_url')
        image.thumbnail_url = stored.get('thumbnail_url')
        image.training_image_url = stored.get('training_url')
        image.width = stored.get('width') or image.width
        image.height = stored.get('height') or image.height
        image.meta = {**(image.meta or {}), 'providerOutputUrl': url}
        image.status = COMPLETED
        image.failure_reason = None
        image.completed_at = utcnow()
        logger.info('job_completed', image_id=image.id, batch_id=image.batch_id)

    async def _fail(self, session: AsyncSession, image: GeneratedImage, reason: str) -> None:
        image.status = FAILED
        image.failure_reason = (reason or 'failed')[:255]
        image.completed_at = utcnow()
        image.updated_at = utcnow()
        logger.warning('job_failed', image_id=image.id, batch_id=image.batch_id, reason=image.failure_reason)
        if not self.settings.refund_on_fail:
            return
        await CreditsService(session).refund(
            image.user_id,
            self.settings.credits_per_variation,
            f'Refund for failed image {image.id}',
            batch_id=image.batch_id,
            idempotency_key=f'refund:image:{image.id}',
        )

    async def _rollup(self, session: AsyncSession, batch: GenerationBatch | None) -> None:
        if batch is not None:
            await recompute_batch_status(session, batch)

    @staticmethod
    def _message(message_type: str, image: GeneratedImage, batch: GenerationBatch | None) -> Dict[str, Any]:
        return {
            'type': message_type,
            'inputImageId': batch.input_image_id if batch else None,
            'batchId': image.batch_id,
            'moduleType': batch.module_type if batch else None,
            'batchStatus': batch.status if batch else None,
            'imageId': image.id,
            'variationNumber': image.variation_number,
            'status': image.status,
            'providerStatus': image.provider_status,
            'imageUrl': image.processed_image_url or image.original_image_url,
            'thumbnailUrl': image.thumbnail_url,
            'failureReason': image.failure_reason,
        }

    async def _publish(self, messages: List[Dict[str, Any]]) -> None:
        if not self.hub:
            return
        for message in messages:
            input_image_id = message.pop('inputImageId', None)
            await self.hub.notify('generation', input_image_id, message)

    async def check_processing(self) -> int:
        """Poll vendors for PROCESSING variations whose webhook never arrived."""
        async with self.sessionmaker() as session:
            result = await session.execute(
                select(GeneratedImage.id)
                .where(GeneratedImage.status == PROCESSING, GeneratedImage.provider_job_id.is_not(None))
                .order_by(GeneratedImage.updated_at, GeneratedImage.id)
                .limit(self.settings.reconciler_batch_size)
            )
            ids = [row[0] for row in result.all()]
        ids = [image_id for image_id in ids if image_id not in self._inflight]
        if ids:
            await asyncio.gather(*(self._check_image(image_id) for image_id in ids))
        return len(ids)

    def _timed_out(self, image: GeneratedImage) -> bool:
        created = as_utc(image.created_at)
        if created is None:
            return False
        return utcnow() - created > timedelta(seconds=self.settings.job_timeout_seconds)

    async def _check_image(self, image_id: int) -> None:
        if image_id in self._inflight:
            return
        self._inflight.add(image_id)
        messages: List[Dict[str, Any]] = []
        try:
            async with self.global_sem:
                async with self.sessionmaker() as session:
                    image = await self._load_image(session, id=image_id)
                    if not image or image.status != PROCESSING:
                        return
                    client = self._client_for(image.provider)
                    if image.provider_job_id and client is not None:
                        messages = await self._poll_vendor(session, image, client)
                    if image.status == PROCESSING and self._timed_out(image):
                        await self._fail(session, image, 'timeout')
                        batch = await session.get(GenerationBatch, image.batch_id)
                        await self._rollup(session, batch)
                        messages = [self._message('generation_failed', image, batch)]
                    await session.commit()
            await self._publish(messages)
        finally:
            self._inflight.discard(image_id)

    async def _poll_vendor(
        self,
        session: AsyncSession,
        image: GeneratedImage,
        client: ProviderClient,
    ) -> List[Dict[str, Any]]:
        try:
            record = await client.get_job_status(image.provider_job_id)
        except (RunPodError, ReplicateError) as exc:
            failures = int((image.meta or {}).get('status_check_failures', 0)) + 1
            image.meta = {**(image.meta or {}), 'status_check_failures': failures}
            image.updated_at = utcnow()
            logger.warning('status_check_failed', image_id=image.id, failures=failures, error=str(exc))
            if failures < self.settings.max_status_check_failures:
                return []
            await self._fail(session, image, 'status_check_failed')
            batch = await session.get(GenerationBatch, image.batch_id)
            await self._rollup(session, batch)
            return [self._message('generation_failed', image, batch)]
        return await self._apply(session, image, client, record)

    async def watch(self, interval: int | None = None) -> None:
        interval = interval or self.settings.reconciler_interval_seconds
        while True:
            try:
                await self.check_processing()
            except Exception as exc:
                logger.warning('reconcile_watch_failed', error=str(exc))
            await asyncio.sleep(interval)

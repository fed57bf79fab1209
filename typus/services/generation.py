from __future__ import annotations

import asyncio
import random
import uuid
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from typus.canvas.expansion import (
    ImageBounds,
    extended_areas,
    outpaint_pixels,
    predict_canvas_expansion,
)
from typus.config import get_settings
from typus.db.models import GeneratedImage, GenerationBatch, MaskRegion
from typus.services.credits import CreditsService, is_subscription_usable, subscription_error
from typus.services.customization import prompt_for_region
from typus.services import imaging
from typus.services.images import UPLOAD_CONTENT_TYPES, ImagesService
from typus.services.notifications import NotificationHub
from typus.services.plans import PLAN_TYPES
from typus.services.provider import COMPLETED, FAILED, PROCESSING, TERMINAL_STATUSES
from typus.services.reconciler import recompute_batch_status
from typus.services.refine import RefineService, normalize_refine_settings
from typus.services.replicate_client import ReplicateClient, ReplicateError
from typus.services.runpod_client import RunPodClient, RunPodError
from typus.services.sessions import SessionsService
from typus.services.storage import StorageError
from typus.utils.logging import get_logger
from typus.utils.time import utcnow


logger = get_logger('generation')

CREDIT_TYPES = {
    'CREATE': 'IMAGE_CREATE',
    'TWEAK': 'IMAGE_TWEAK',
    'UPSCALE': 'IMAGE_UPSCALE',
    'REFINE': 'IMAGE_REFINE',
}

CANCELLABLE_MODULES = ('TWEAK', 'REFINE')

SubmitFn = Callable[[GeneratedImage], Awaitable[Dict[str, Any]]]


class SourceImage(NamedTuple):
    url: str | None
    width: int | None
    height: int | None
    base_id: int | None
    source_image_id: int | None


def _is_http_url(value: str | None) -> bool:
    return bool(value) and str(value).startswith(('http://', 'https://'))


def _new_seed() -> int:
    return random.randint(1, 2**31 - 1)


class GenerationService:
    def __init__(
        self,
        session: AsyncSession,
        runpod: RunPodClient | None = None,
        replicate: ReplicateClient | None = None,
        hub: NotificationHub | None = None,
        images: ImagesService | None = None,
    ) -> None:
        self.session = session
        self.settings = get_settings()
        self.runpod = runpod
        self.replicate = replicate
        self.hub = hub
        self.images = images or ImagesService(session)
        self.credits = CreditsService(session)
        self.sessions = SessionsService(session)

    def _check_variations(self, variations: int, maximum: int) -> int:
        try:
            count = int(variations)
        except (TypeError, ValueError) as exc:
            raise ValueError('variations') from exc
        if count < 1 or count > maximum:
            raise ValueError('variations')
        return count

    def _check_prompt(self, prompt: str | None, required: bool = True) -> str:
        cleaned = (prompt or '').strip()
        if required and not cleaned:
            raise ValueError('prompt_required')
        if len(cleaned) > self.settings.max_prompt_length:
            raise ValueError('prompt_too_long')
        return cleaned

    def runpod_webhook_url(self) -> str:
        url = self.settings.webhook_url('/api/webhooks/runpod')
        if self.settings.runpod_webhook_token:
            url = f'{url}?token={self.settings.runpod_webhook_token}'
        return url

    def replicate_webhook_url(self) -> str:
        return self.settings.webhook_url('/api/webhooks/replicate')

    async def _resolve_session_id(self, user_id: int, session_id: int | None, prompt: str | None) -> int:
        if session_id is not None:
            creation = await self.sessions.get_owned(user_id, session_id)
            return creation.id
        creation = await self.sessions.create_session(user_id, prompt)
        return creation.id

    async def _resolve_base_image(
        self,
        user_id: int,
        original_base_image_id: int | None,
        source_image_id: int | None,
    ) -> Optional[int]:
        if original_base_image_id is not None:
            image = await self.images.get_input_image(user_id, original_base_image_id)
            return image.id
        if source_image_id is not None:
            await self.images.get_generated_image(user_id, source_image_id)
            return await self.images.resolve_original_base_image(user_id, source_image_id)
        return None

    async def _start_batch(
        self,
        *,
        user_id: int,
        module_type: str,
        provider: str,
        variations: int,
        prompt: str = '',
        negative_prompt: str = '',
        session_id: int | None = None,
        input_image_id: int | None = None,
        source_image_id: int | None = None,
        meta: Dict[str, Any] | None = None,
    ) -> tuple[GenerationBatch, List[GeneratedImage]]:
        now = utcnow()
        cost = self.settings.credits_per_variation * variations
        batch = GenerationBatch(
            user_id=user_id,
            session_id=session_id,
            input_image_id=input_image_id,
            module_type=module_type,
            status=PROCESSING,
            prompt=prompt,
            negative_prompt=negative_prompt,
            total_variations=variations,
            credits_used=cost,
            meta=dict(meta or {}),
            created_at=now,
            updated_at=now,
        )
        images: List[GeneratedImage] = []
        for number in range(1, variations + 1):
            image = GeneratedImage(
                user_id=user_id,
                variation_number=number,
                status=PROCESSING,
                provider=provider,
                original_base_image_id=input_image_id,
                source_image_id=source_image_id,
                meta={},
                created_at=now,
                updated_at=now,
            )
            images.append(image)
        batch.variations = images
        self.session.add(batch)
        await self.session.flush()

        await self.credits.deduct(
            user_id,
            cost,
            f'{module_type.title()} generation ({variations} variation{"s" if variations > 1 else ""})',
            type=CREDIT_TYPES[module_type],
            batch_id=batch.id,
            idempotency_key=f'batch:{batch.id}',
        )
        await self.sessions.touch(session_id)
        await self.session.commit()
        return batch, images

    async def _fail_variation(self, image: GeneratedImage, reason: str) -> None:
        image.status = FAILED
        image.failure_reason = reason[:255]
        image.updated_at = utcnow()
        image.completed_at = utcnow()
        if self.settings.refund_on_fail:
            await self.credits.refund(
                image.user_id,
                self.settings.credits_per_variation,
                f'Refund for failed image {image.id}',
                batch_id=image.batch_id,
                idempotency_key=f'refund:image:{image.id}',
            )

    async def _submit_all(
        self,
        batch: GenerationBatch,
        images: List[GeneratedImage],
        submit: SubmitFn,
    ) -> GenerationBatch:
        submitted = 0
        for image in images:
            try:
                data = await submit(image)
            except (RunPodError, ReplicateError) as exc:
                logger.warning('job_submit_failed', batch_id=batch.id, image_id=image.id, error=str(exc))
                await self._fail_variation(image, 'submission_failed')
                await self.session.commit()
                continue
            submitted += 1
            # A webhook may have finished this job while the submit call was in flight.
            await self.session.refresh(image, with_for_update=True)
            if image.status in TERMINAL_STATUSES:
                await self.session.commit()
                continue
            image.provider_job_id = str(data.get('id'))
            image.provider_status = str(data.get('status') or '') or None
            image.updated_at = utcnow()
            await self.session.commit()

        await recompute_batch_status(self.session, batch)
        await self.session.commit()
        logger.info(
            'batch_submitted',
            batch_id=batch.id,
            module_type=batch.module_type,
            submitted=submitted,
            total=len(images),
        )

        if self.hub and batch.input_image_id is not None:
            message_type = 'generation_started' if submitted else 'generation_failed'
            await self.hub.notify(
                'generation',
                batch.input_image_id,
                {
                    'type': message_type,
                    'batchId': batch.id,
                    'moduleType': batch.module_type,
                    'status': batch.status,
                    'imageIds': [image.id for image in images],
                },
            )
        return batch

    def _require_runpod(self) -> RunPodClient:
        if self.runpod is None:
            raise RunPodError('runpod_not_configured', 503)
        return self.runpod

    def _require_replicate(self) -> ReplicateClient:
        if self.replicate is None:
            raise ReplicateError('replicate_not_configured', 503)
        return self.replicate

    async def _styled_regions(self, input_image_id: int) -> Dict[str, Dict[str, str]]:
        result = await self.session.execute(
            select(MaskRegion)
            .where(MaskRegion.input_image_id == input_image_id)
            .options(selectinload(MaskRegion.option))
            .order_by(MaskRegion.id)
        )
        regions: Dict[str, Dict[str, str]] = {}
        for region in result.scalars().all():
            text = prompt_for_region(region, region.option)
            color = (region.color or '').strip().lower()
            if text and color and color not in regions:
                regions[color] = {'mask': region.mask_url, 'prompt': text}
        return regions

    async def _require_paid_plan(self, user_id: int) -> None:
        subscription = await self.credits.get_subscription(user_id)
        if not is_subscription_usable(subscription):
            raise ValueError(subscription_error(subscription))
        if subscription.plan_type not in PLAN_TYPES:
            raise ValueError('subscription_required')

    async def _resolve_source(self, user_id: int, image_id: int, source_type: str) -> SourceImage:
        if source_type == 'input':
            uploaded = await self.images.get_input_image(user_id, image_id)
            source = SourceImage(uploaded.original_url, uploaded.width, uploaded.height, uploaded.id, None)
        elif source_type == 'generated':
            generated = await self.images.get_generated_image(user_id, image_id)
            if generated.status != COMPLETED:
                raise ValueError('image_not_ready')
            source = SourceImage(
                generated.processed_image_url or generated.original_image_url,
                generated.width,
                generated.height,
                generated.original_base_image_id,
                generated.id,
            )
        else:
            raise ValueError('invalid_source_type')
        if not _is_http_url(source.url):
            raise ValueError('image_not_ready')
        return source

    async def create(
        self,
        user_id: int,
        input_image_id: int,
        prompt: str,
        negative_prompt: str = '',
        variations: int = 1,
        session_id: int | None = None,
        options: Dict[str, Any] | None = None,
    ) -> GenerationBatch:
        variations = self._check_variations(variations, self.settings.max_variations)
        prompt = self._check_prompt(prompt)
        negative_prompt = self._check_prompt(negative_prompt, required=False)
        input_image = await self.images.get_input_image(user_id, input_image_id)
        runpod = self._require_runpod()

        regions = await self._styled_regions(input_image.id)
        raw_image = input_image.processed_url or input_image.original_url
        session_id = await self._resolve_session_id(user_id, session_id, prompt)
        batch, images = await self._start_batch(
            user_id=user_id,
            module_type='CREATE',
            provider='runpod',
            variations=variations,
            prompt=prompt,
            negative_prompt=negative_prompt,
            session_id=session_id,
            input_image_id=input_image.id,
            meta={
                'operation': 'regional_prompt',
                'regionColors': sorted(regions),
                'settings': dict(options or {}),
            },
        )
        webhook = self.runpod_webhook_url()

        async def submit(image: GeneratedImage) -> Dict[str, Any]:
            return await runpod.generate_image(
                webhook,
                prompt=prompt,
                negative_prompt=negative_prompt,
                raw_image=raw_image,
                job_id=image.id,
                uuid=str(uuid.uuid4()),
                request_group=str(batch.id),
                regions=regions,
                overrides=options,
            )

        return await self._submit_all(batch, images, submit)

    async def outpaint(
        self,
        user_id: int,
        base_image_url: str,
        original_bounds: Dict[str, Any] | None,
        canvas_bounds: Dict[str, Any] | None = None,
        variations: int = 1,
        original_base_image_id: int | None = None,
        source_image_id: int | None = None,
        operation_type: str | None = None,
        intensity: str | None = None,
        prompt: str = '',
        session_id: int | None = None,
    ) -> GenerationBatch:
        variations = self._check_variations(variations, self.settings.max_tweak_variations)
        if not _is_http_url(base_image_url):
            raise ValueError('base_image_url_required')
        prompt = self._check_prompt(prompt, required=False)
        original = ImageBounds.from_dict(original_bounds)
        if original is None:
            raise ValueError('original_bounds_required')

        prediction: Dict[str, Any] = {}
        canvas = ImageBounds.from_dict(canvas_bounds)
        if canvas is None and operation_type:
            result = predict_canvas_expansion(operation_type, original, intensity)
            canvas = result.canvas_bounds
            prediction = result.metadata
        if canvas is None:
            raise ValueError('canvas_bounds_required')
        if not original.has_size() or not canvas.has_size():
            raise ValueError('bounds_size_required')

        pixels = outpaint_pixels(canvas, original)
        if pixels.is_empty():
            raise ValueError('no_outpaint_area')

        runpod = self._require_runpod()
        base_id = await self._resolve_base_image(user_id, original_base_image_id, source_image_id)
        session_id = await self._resolve_session_id(user_id, session_id, prompt or None)
        batch, images = await self._start_batch(
            user_id=user_id,
            module_type='TWEAK',
            provider='runpod',
            variations=variations,
            prompt=prompt,
            session_id=session_id,
            input_image_id=base_id,
            source_image_id=source_image_id,
            meta={
                'operation': 'outpaint',
                'baseImageUrl': base_image_url,
                'canvasBounds': canvas.to_dict(),
                'originalBounds': original.to_dict(),
                'outpaintBounds': pixels.to_dict(),
                'extendedAreas': extended_areas(canvas, original),
                'prediction': prediction,
            },
        )
        webhook = self.runpod_webhook_url()

        async def submit(image: GeneratedImage) -> Dict[str, Any]:
            return await runpod.generate_outpaint(
                webhook,
                image=base_image_url,
                top=pixels.top,
                bottom=pixels.bottom,
                left=pixels.left,
                right=pixels.right,
                job_id=image.id,
                uuid=str(uuid.uuid4()),
                prompt=prompt,
                seed=_new_seed(),
            )

        return await self._submit_all(batch, images, submit)

    async def inpaint(
        self,
        user_id: int,
        base_image_url: str,
        mask_image_url: str,
        prompt: str,
        negative_prompt: str = '',
        variations: int = 1,
        original_base_image_id: int | None = None,
        source_image_id: int | None = None,
        session_id: int | None = None,
    ) -> GenerationBatch:
        variations = self._check_variations(variations, self.settings.max_tweak_variations)
        if not _is_http_url(base_image_url):
            raise ValueError('base_image_url_required')
        if not _is_http_url(mask_image_url):
            raise ValueError('mask_required')
        prompt = self._check_prompt(prompt)
        negative_prompt = self._check_prompt(negative_prompt, required=False)

        runpod = self._require_runpod()
        base_id = await self._resolve_base_image(user_id, original_base_image_id, source_image_id)
        session_id = await self._resolve_session_id(user_id, session_id, prompt)
        batch, images = await self._start_batch(
            user_id=user_id,
            module_type='TWEAK',
            provider='runpod',
            variations=variations,
            prompt=prompt,
            negative_prompt=negative_prompt,
            session_id=session_id,
            input_image_id=base_id,
            source_image_id=source_image_id,
            meta={
                'operation': 'inpaint',
                'baseImageUrl': base_image_url,
                'maskImageUrl': mask_image_url,
            },
        )
        webhook = self.runpod_webhook_url()

        async def submit(image: GeneratedImage) -> Dict[str, Any]:
            return await runpod.generate_inpaint(
                webhook,
                image=base_image_url,
                mask=mask_image_url,
                job_id=image.id,
                uuid=str(uuid.uuid4()),
                prompt=prompt,
                negative_prompt=negative_prompt,
                seed=_new_seed(),
            )

        return await self._submit_all(batch, images, submit)

    async def upscale(
        self,
        user_id: int,
        image_id: int,
        source_type: str = 'generated',
        options: Dict[str, Any] | None = None,
        variations: int = 1,
        prompt: str = '',
        session_id: int | None = None,
    ) -> GenerationBatch:
        variations = self._check_variations(variations, self.settings.max_tweak_variations)
        prompt = self._check_prompt(prompt, required=False)
        await self._require_paid_plan(user_id)
        source = await self._resolve_source(user_id, image_id, source_type)
        if max(source.width or 0, source.height or 0) >= self.settings.upscale_max_source_px:
            raise ValueError('image_too_large_for_upscale')
        source_url = source.url

        replicate = self._require_replicate()
        session_id = await self._resolve_session_id(user_id, session_id, prompt or None)
        batch, images = await self._start_batch(
            user_id=user_id,
            module_type='UPSCALE',
            provider='replicate',
            variations=variations,
            prompt=prompt,
            session_id=session_id,
            input_image_id=source.base_id,
            source_image_id=source.source_image_id,
            meta={
                'operation': 'upscale',
                'sourceType': source_type,
                'sourceImageUrl': source_url,
                'options': dict(options or {}),
            },
        )
        webhook = self.replicate_webhook_url()

        async def submit(image: GeneratedImage) -> Dict[str, Any]:
            return await replicate.create_upscale(webhook, source_url, prompt, options)

        return await self._submit_all(batch, images, submit)

    async def refine(
        self,
        user_id: int,
        image_id: int,
        source_type: str = 'generated',
        settings: Dict[str, Any] | None = None,
        variations: int = 1,
        session_id: int | None = None,
    ) -> GenerationBatch:
        variations = self._check_variations(variations, self.settings.max_tweak_variations)
        refine_settings = normalize_refine_settings(settings)
        await self._require_paid_plan(user_id)
        source = await self._resolve_source(user_id, image_id, source_type)
        runpod = self._require_runpod()

        # The last submitted parameters become the image's saved refine settings.
        await RefineService(self.session, images=self.images).store(user_id, image_id, source_type, refine_settings)
        session_id = await self._resolve_session_id(user_id, session_id, None)
        batch, images = await self._start_batch(
            user_id=user_id,
            module_type='REFINE',
            provider='runpod',
            variations=variations,
            session_id=session_id,
            input_image_id=source.base_id,
            source_image_id=source.source_image_id,
            meta={
                'operation': 'refine',
                'sourceType': source_type,
                'sourceImageUrl': source.url,
                'settings': refine_settings,
            },
        )
        webhook = self.runpod_webhook_url()

        async def submit(image: GeneratedImage) -> Dict[str, Any]:
            return await runpod.generate_refine(
                webhook,
                image=source.url,
                job_id=image.id,
                uuid=str(uuid.uuid4()),
                request_group=str(batch.id),
                settings=refine_settings,
            )

        return await self._submit_all(batch, images, submit)

    async def add_image_to_canvas(
        self,
        user_id: int,
        base_image_id: int,
        filename: str | None,
        content_type: str | None,
        data: bytes,
        position: Dict[str, Any] | None,
        size: Dict[str, Any] | None,
        session_id: int | None = None,
    ) -> GenerationBatch:
        """Composite an uploaded picture onto an input image.

        Runs locally, so the single variation is final when this returns.
        """
        if not isinstance(position, dict) or not isinstance(size, dict):
            raise ValueError('placement_required')
        placement = ImageBounds.from_dict(
            {'x': position.get('x'), 'y': position.get('y'), 'width': size.get('width'), 'height': size.get('height')}
        )
        if placement is None:
            raise ValueError('placement_required')
        if not placement.has_size():
            raise ValueError('bounds_size_required')
        if max(placement.width, placement.height) > imaging.MAX_SIDE:
            raise ValueError('image_too_large')
        content_type = (content_type or '').lower()
        if content_type not in UPLOAD_CONTENT_TYPES:
            raise ValueError('unsupported_type')
        if not data:
            raise ValueError('empty_file')
        if len(data) > self.settings.max_upload_bytes:
            raise ValueError('file_too_large')
        imaging.read_metadata(data)

        storage = self.images.storage
        if not storage.enabled:
            raise StorageError('storage_not_configured', 503)
        base = await self.images.get_input_image(user_id, base_image_id)
        base_data, _ = await self.images.download(base.original_url)
        x, y = round(placement.x), round(placement.y)
        width, height = max(1, round(placement.width)), max(1, round(placement.height))
        composite, _, _ = await asyncio.to_thread(imaging.paste_onto, base_data, data, x, y, width, height)

        session_id = await self._resolve_session_id(user_id, session_id, None)
        batch, images = await self._start_batch(
            user_id=user_id,
            module_type='TWEAK',
            provider='canvas',
            variations=1,
            session_id=session_id,
            input_image_id=base.id,
            meta={
                'operation': 'add_image',
                'position': {'x': x, 'y': y},
                'size': {'width': width, 'height': height},
            },
        )
        image = images[0]
        try:
            added_url = await storage.upload_bytes(data, storage.unique_key('tweak/added', filename), content_type)
            stored = await self.images.store_image(composite, 'generated/tweak', f'canvas-{image.id}.png', 'image/png')
        except StorageError as exc:
            logger.warning('canvas_store_failed', batch_id=batch.id, error=str(exc))
            await self._fail_variation(image, 'storage_failed')
        else:
            batch.meta = {**batch.meta, 'addedImageUrl': added_url}
            image.original_image_url = stored['original_url']
            image.processed_image_url = stored['processed_url']
            image.thumbnail_url = stored['thumbnail_url']
            image.width = stored['width']
            image.height = stored['height']
            image.status = COMPLETED
            image.completed_at = utcnow()
            image.updated_at = utcnow()
        await recompute_batch_status(self.session, batch)
        await self.session.commit()
        logger.info('canvas_image_added', batch_id=batch.id, image_id=image.id, status=image.status)

        if self.hub:
            await self.hub.notify(
                'generation',
                base.id,
                {
                    'type': 'generation_completed' if image.status == COMPLETED else 'generation_failed',
                    'batchId': batch.id,
                    'moduleType': batch.module_type,
                    'batchStatus': batch.status,
                    'imageId': image.id,
                    'status': image.status,
                    'imageUrl': image.processed_image_url,
                    'thumbnailUrl': image.thumbnail_url,
                },
            )
        return batch

    async def cancel_batch(self, user_id: int, batch_id: int) -> GenerationBatch:
        """Fail and refund the variations of a tweak or refine batch that are still running.

        Vendor jobs keep running; their late webhooks find terminal rows and are ignored.
        """
        batch = await self.sessions.get_batch(user_id, batch_id)
        if batch.module_type not in CANCELLABLE_MODULES:
            raise ValueError('batch_not_cancellable')
        result = await self.session.execute(
            select(GeneratedImage)
            .where(GeneratedImage.batch_id == batch.id, GeneratedImage.status == PROCESSING)
            .order_by(GeneratedImage.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        pending = list(result.scalars().all())
        if not pending:
            raise ValueError('batch_not_processing')
        for image in pending:
            image.provider_status = 'CANCELLED'
            await self._fail_variation(image, 'cancelled')
        await recompute_batch_status(self.session, batch)
        await self.session.commit()
        logger.info('batch_cancelled', batch_id=batch.id, cancelled=len(pending))

        if self.hub and batch.input_image_id is not None:
            await self.hub.notify(
                'generation',
                batch.input_image_id,
                {
                    'type': 'generation_cancelled',
                    'batchId': batch.id,
                    'moduleType': batch.module_type,
                    'status': batch.status,
                    'imageIds': [image.id for image in pending],
                },
            )
        return batch

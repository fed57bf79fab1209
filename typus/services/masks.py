from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from typus.config import get_settings
from typus.db.models import InputImage, MaskRegion
from typus.services.customization import CustomizationService, serialize_option
from typus.services.images import download_bytes
from typus.services.notifications import NotificationHub
from typus.services.storage import StorageError
from typus.utils.logging import get_logger
from typus.utils.time import utcnow


logger = get_logger('masks')

MASK_STATUSES = ('none', 'processing', 'completed', 'failed')


class MaskServiceError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MaskServiceClient:
    """Client for the segmentation service that splits an image into color masks."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        settings = get_settings()
        self.base_url = settings.fast_api_url.rstrip('/')
        self._client = client or httpx.AsyncClient(timeout=120)

    async def close(self) -> None:
        await self._client.aclose()

    async def ping(self) -> bool:
        if not self.base_url:
            return False
        try:
            resp = await self._client.get(f'{self.base_url}/', timeout=10)
        except httpx.HTTPError as exc:
            logger.warning('mask_service_unreachable', error=str(exc))
            return False
        return resp.status_code < 500

    async def request_color_filter(self, image: bytes, input_image_id: int, callback_url: str) -> Dict[str, Any]:
        if not self.base_url:
            raise MaskServiceError('mask_service_not_configured', 503)
        files = {'input_image': (f'input_{input_image_id}.png', image, 'image/png')}
        data = {'callback_url': callback_url, 'revert_extra': str(input_image_id)}
        try:
            resp = await self._client.post(
                f'{self.base_url}/color_filter',
                files=files,
                data=data,
                headers={'Accept': 'application/json'},
            )
        except httpx.TimeoutException as exc:
            raise MaskServiceError('mask_service_timeout', 504) from exc
        except httpx.HTTPError as exc:
            raise MaskServiceError(f'mask_service_unavailable: {exc}', 503) from exc
        if resp.status_code >= 400:
            raise MaskServiceError(f'mask service error {resp.status_code}: {resp.text}', 502)
        try:
            return resp.json()
        except ValueError:
            return {}


def serialize_region(region: MaskRegion) -> Dict[str, Any]:
    return {
        'id': region.id,
        'maskKey': region.mask_key,
        'maskUrl': region.mask_url,
        'color': region.color,
        'customizationOptionId': region.customization_option_id,
        'subCategoryId': region.sub_category_id,
        'customText': region.custom_text,
        'option': serialize_option(region.option) if region.option else None,
    }


def parse_mask_entries(uuids: Any) -> List[Dict[str, str]]:
    """Flatten ``[{"mask1": {"mask_url": .., "color": ..}}, ...]`` into rows."""
    entries: List[Dict[str, str]] = []
    if not isinstance(uuids, list):
        return entries
    for index, container in enumerate(uuids, start=1):
        if not isinstance(container, dict):
            continue
        for key, mask in container.items():
            if not isinstance(mask, dict):
                continue
            url = str(mask.get('mask_url') or '').strip()
            if not url:
                continue
            entries.append(
                {
                    'mask_key': str(key or f'mask{index}')[:32],
                    'mask_url': url,
                    'color': str(mask.get('color') or '')[:32],
                }
            )
    return entries


def parse_revert_extra(value: Any) -> Optional[int]:
    raw = str(value or '').split('|', 1)[0].strip()
    try:
        return int(raw)
    except ValueError:
        return None


class MasksService:
    def __init__(
        self,
        session: AsyncSession,
        client: MaskServiceClient | None = None,
        hub: NotificationHub | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.session = session
        self.settings = get_settings()
        self.client = client or MaskServiceClient()
        self.hub = hub
        self.http = http

    def callback_url(self) -> str:
        url = self.settings.webhook_url('/api/masks/callback')
        if self.settings.mask_callback_token:
            url = f'{url}?token={self.settings.mask_callback_token}'
        return url

    async def _owned_image(self, user_id: int, input_image_id: int) -> InputImage:
        image = await self.session.get(InputImage, input_image_id)
        if not image or image.user_id != user_id:
            raise ValueError('input_image_not_found')
        return image

    async def _regions(self, input_image_id: int) -> List[MaskRegion]:
        result = await self.session.execute(
            select(MaskRegion)
            .where(MaskRegion.input_image_id == input_image_id)
            .options(selectinload(MaskRegion.option))
            .order_by(MaskRegion.id)
        )
        return list(result.scalars().all())

    async def _snapshot(self, image: InputImage) -> Dict[str, Any]:
        regions = await self._regions(image.id)
        return {
            'inputImageId': image.id,
            'maskStatus': image.mask_status,
            'maskData': image.mask_data,
            'maskRegions': [serialize_region(r) for r in regions],
        }

    async def generate(self, user_id: int, input_image_id: int, force: bool = False) -> Dict[str, Any]:
        image = await self._owned_image(user_id, input_image_id)
        if image.mask_status == 'completed' and not force:
            snapshot = await self._snapshot(image)
            if snapshot['maskRegions']:
                return snapshot

        if not await self.client.ping():
            raise MaskServiceError('mask_service_unavailable', 503)

        source_url = image.original_url or image.processed_url
        http = self.http or httpx.AsyncClient(timeout=30)
        try:
            data, _ = await download_bytes(http, source_url, self.settings.mask_max_image_bytes)
        except StorageError as exc:
            raise MaskServiceError(str(exc), 502) from exc
        finally:
            if self.http is None:
                await http.aclose()

        await self.client.request_color_filter(data, image.id, self.callback_url())

        image.mask_status = 'processing'
        image.updated_at = utcnow()
        await self.session.flush()
        logger.info('mask_generation_requested', input_image_id=image.id, force=force)
        return await self._snapshot(image)

    async def handle_callback(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        input_image_id = parse_revert_extra(payload.get('revert_extra'))
        if input_image_id is None:
            raise ValueError('revert_extra_required')
        image = await self.session.get(InputImage, input_image_id)
        if not image:
            raise ValueError('input_image_not_found')

        entries = parse_mask_entries(payload.get('uuids'))
        failed = str(payload.get('status') or '').lower() == 'failed' or bool(payload.get('error'))
        if failed or not entries:
            image.mask_status = 'failed'
            image.mask_data = {'error': str(payload.get('error') or 'no_masks')[:255]}
            image.updated_at = utcnow()
            await self.session.flush()
            logger.warning('mask_generation_failed', input_image_id=image.id, error=image.mask_data['error'])
            if self.hub:
                await self.hub.notify('masks', image.id, {'type': 'masks_failed', 'error': image.mask_data['error']})
            return {'inputImageId': image.id, 'maskStatus': 'failed', 'maskCount': 0}

        await self.session.execute(delete(MaskRegion).where(MaskRegion.input_image_id == image.id))
        now = utcnow()
        for entry in entries:
            self.session.add(
                MaskRegion(
                    input_image_id=image.id,
                    mask_key=entry['mask_key'],
                    mask_url=entry['mask_url'],
                    color=entry['color'],
                    created_at=now,
                    updated_at=now,
                )
            )
        image.mask_status = 'completed'
        image.mask_data = {'uuids': payload.get('uuids'), 'revert_extra': str(payload.get('revert_extra'))}
        image.updated_at = now
        await self.session.flush()
        # Drop the stale collection so later reads see the new rows.
        self.session.expire(image, ['mask_regions'])
        logger.info('masks_saved', input_image_id=image.id, count=len(entries))

        if self.hub:
            snapshot = await self._snapshot(image)
            await self.hub.notify(
                'masks',
                image.id,
                {'type': 'masks_completed', 'maskRegions': snapshot['maskRegions'], 'maskCount': len(entries)},
            )
        return {'inputImageId': image.id, 'maskStatus': 'completed', 'maskCount': len(entries)}

    async def get_regions(self, user_id: int, input_image_id: int) -> Dict[str, Any]:
        image = await self._owned_image(user_id, input_image_id)
        return await self._snapshot(image)

    async def update_style(
        self,
        user_id: int,
        mask_id: int,
        customization_option_id: int | None = None,
        custom_text: str | None = None,
        sub_category_id: int | None = None,
    ) -> Dict[str, Any]:
        region = await self.session.get(MaskRegion, mask_id)
        if not region:
            raise ValueError('mask_not_found')
        image = await self.session.get(InputImage, region.input_image_id)
        if not image or image.user_id != user_id:
            raise ValueError('mask_not_found')

        catalog = CustomizationService(self.session)
        if customization_option_id is not None:
            option = await catalog.get_option(customization_option_id)
            if not option or not option.is_active:
                raise ValueError('option_not_found')
        if sub_category_id is not None and not await catalog.get_category(sub_category_id):
            raise ValueError('category_not_found')

        region.customization_option_id = customization_option_id
        region.sub_category_id = sub_category_id
        region.custom_text = (custom_text or '').strip() or None
        region.updated_at = utcnow()
        await self.session.flush()
        await self.session.refresh(region, ['option'])
        return serialize_region(region)

    async def clear(self, user_id: int, input_image_id: int) -> None:
        image = await self._owned_image(user_id, input_image_id)
        await self.session.execute(delete(MaskRegion).where(MaskRegion.input_image_id == image.id))
        image.mask_status = 'none'
        image.mask_data = None
        image.updated_at = utcnow()
        await self.session.flush()
        self.session.expire(image, ['mask_regions'])
        logger.info('masks_cleared', input_image_id=image.id)

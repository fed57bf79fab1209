from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from typus.config import get_settings
from typus.db.models import GeneratedImage, InputImage
from typus.services import imaging
from typus.services.storage import ObjectStorage, StorageError
from typus.utils.logging import get_logger
from typus.utils.time import utcnow


logger = get_logger('images')

UPLOAD_CONTENT_TYPES = {'image/jpeg', 'image/png', 'image/webp'}
MAX_RESULT_BYTES = 50 * 1024 * 1024


def serialize_input_image(image: InputImage) -> Dict[str, Any]:
    return {
        'id': image.id,
        'fileName': image.file_name,
        'originalUrl': image.original_url,
        'processedUrl': image.processed_url,
        'thumbnailUrl': image.thumbnail_url,
        'width': image.width,
        'height': image.height,
        'maskStatus': image.mask_status,
        'createdAt': image.created_at.isoformat() if image.created_at else None,
    }


async def download_bytes(http: httpx.AsyncClient, url: str, max_bytes: int) -> tuple[bytes, str]:
    try:
        resp = await http.get(url, follow_redirects=True)
    except httpx.HTTPError as exc:
        raise StorageError(f'download failed: {exc}', 502) from exc
    if resp.status_code >= 400:
        raise StorageError(f'download failed with status {resp.status_code}', 502)
    if len(resp.content) > max_bytes:
        raise ValueError('image_too_large')
    return resp.content, resp.headers.get('content-type', 'application/octet-stream')


class ImagesService:
    def __init__(
        self,
        session: AsyncSession,
        storage: ObjectStorage | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.session = session
        self.settings = get_settings()
        self.storage = storage or ObjectStorage()
        self.http = http

    async def get_input_image(self, user_id: int, image_id: int) -> InputImage:
        image = await self.session.get(InputImage, image_id)
        if not image or image.user_id != user_id:
            raise ValueError('input_image_not_found')
        return image

    async def get_generated_image(self, user_id: int, image_id: int) -> GeneratedImage:
        image = await self.session.get(GeneratedImage, image_id)
        if not image or image.user_id != user_id:
            raise ValueError('image_not_found')
        return image

    async def list_input_images(self, user_id: int, limit: int = 50) -> List[InputImage]:
        result = await self.session.execute(
            select(InputImage)
            .where(InputImage.user_id == user_id)
            .order_by(InputImage.created_at.desc(), InputImage.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def upload_input_image(
        self,
        user_id: int,
        filename: str | None,
        content_type: str | None,
        data: bytes,
    ) -> InputImage:
        if (content_type or '').lower() not in UPLOAD_CONTENT_TYPES:
            raise ValueError('unsupported_type')
        if not data:
            raise ValueError('empty_file')
        if len(data) > self.settings.max_upload_bytes:
            raise ValueError('file_too_large')
        meta = imaging.validate_for_upscaling(data)

        processed, _, _ = await asyncio.to_thread(
            imaging.upscale_image, data, self.settings.processed_image_target_px
        )
        thumbnail = await asyncio.to_thread(imaging.create_thumbnail, data)

        original_url = await self.storage.upload_bytes(
            data, self.storage.unique_key('uploads/original', filename), content_type or 'image/jpeg'
        )
        processed_url = await self.storage.upload_bytes(
            processed, self.storage.unique_key('uploads/processed', f'{filename or "image"}.png'), 'image/png'
        )
        thumbnail_url = await self.storage.upload_bytes(
            thumbnail, self.storage.unique_key('uploads/thumbnails', f'{filename or "image"}.jpg'), 'image/jpeg'
        )

        now = utcnow()
        image = InputImage(
            user_id=user_id,
            file_name=(filename or '')[:255],
            original_url=original_url,
            processed_url=processed_url,
            thumbnail_url=thumbnail_url,
            width=meta.width,
            height=meta.height,
            file_size=len(data),
            mask_status='none',
            created_at=now,
            updated_at=now,
        )
        self.session.add(image)
        await self.session.flush()
        logger.info('input_image_uploaded', user_id=user_id, image_id=image.id, width=meta.width, height=meta.height)
        return image

    async def download(self, url: str, max_bytes: int = MAX_RESULT_BYTES) -> tuple[bytes, str]:
        http = self.http or httpx.AsyncClient(timeout=60)
        try:
            return await download_bytes(http, url, max_bytes)
        finally:
            if self.http is None:
                await http.aclose()

    async def store_image(self, data: bytes, prefix: str, name: str, content_type: str) -> Dict[str, Any]:
        meta = imaging.read_metadata(data)
        stored = await self.storage.upload_bytes(data, self.storage.unique_key(prefix, name), content_type)
        thumbnail = await asyncio.to_thread(imaging.create_thumbnail, data)
        thumbnail_url = await self.storage.upload_bytes(
            thumbnail, self.storage.unique_key(f'{prefix}/thumbnails', f'{name}.jpg'), 'image/jpeg'
        )
        return {
            'original_url': stored,
            'processed_url': stored,
            'thumbnail_url': thumbnail_url,
            'width': meta.width,
            'height': meta.height,
        }

    async def persist_result(
        self,
        source_url: str,
        prefix: str = 'generated',
        with_training_copy: bool = False,
    ) -> Dict[str, Any]:
        """Re-host a vendor result in our bucket with a thumbnail."""
        if not self.settings.is_allowed_result_url(source_url):
            raise ValueError('result_host_not_allowed')
        result: Dict[str, Any] = {
            'original_url': source_url,
            'processed_url': source_url,
            'thumbnail_url': None,
            'training_url': None,
            'width': None,
            'height': None,
        }
        if not self.storage.enabled:
            return result

        data, content_type = await self.download(source_url)
        name = source_url.rsplit('/', 1)[-1].split('?', 1)[0] or 'result.png'
        result.update(await self.store_image(data, prefix, name, content_type))
        if with_training_copy:
            training = await asyncio.to_thread(imaging.fit_within, data, 800, 600)
            result['training_url'] = await self.storage.upload_bytes(
                training, self.storage.unique_key(f'{prefix}/training', f'{name}.jpg'), 'image/jpeg'
            )
        return result

    async def resolve_original_base_image(self, user_id: int, image_id: int) -> Optional[int]:
        """Walk generated-image lineage back to the uploaded input image."""
        seen: set[int] = set()
        current: Optional[int] = image_id
        while current is not None and current not in seen:
            seen.add(current)
            image = await self.session.get(GeneratedImage, current)
            if not image or image.user_id != user_id:
                return None
            if image.original_base_image_id is not None:
                return image.original_base_image_id
            current = image.source_image_id
        return None

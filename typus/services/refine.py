from __future__ import annotations

import math
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from typus.db.models import GeneratedImage, GenerationBatch, RefineSettings
from typus.services.images import ImagesService
from typus.utils.logging import get_logger
from typus.utils.time import utcnow


logger = get_logger('refine')

SOURCE_TYPES = ('input', 'generated')

REFINE_DEFAULTS: Dict[str, Any] = {
    'resolution': {'width': 1024, 'height': 1024},
    'scaleFactor': 1,
    'aiStrength': 12,
    'resemblance': 12,
    'clarity': 12,
    'sharpness': 12,
    'matchColor': True,
}

SLIDERS = ('aiStrength', 'resemblance', 'clarity', 'sharpness')
MAX_RESOLUTION = 8192
MAX_SCALE_FACTOR = 4


def _number(value: Any, code: str) -> float:
    if isinstance(value, bool):
        raise ValueError(code)
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(code) from exc
    if not math.isfinite(number):
        raise ValueError(code)
    return number


def normalize_refine_settings(raw: Dict[str, Any] | None) -> Dict[str, Any]:
    """Merge client values over the defaults and range-check them.

    Unknown keys are dropped.
    """
    raw = raw if isinstance(raw, dict) else {}
    settings = {**REFINE_DEFAULTS, 'resolution': dict(REFINE_DEFAULTS['resolution'])}

    resolution = raw.get('resolution')
    if resolution is not None:
        if not isinstance(resolution, dict):
            raise ValueError('invalid_resolution')
        for side in ('width', 'height'):
            if resolution.get(side) is None:
                continue
            size = _number(resolution[side], 'invalid_resolution')
            if size < 1 or size > MAX_RESOLUTION or size != int(size):
                raise ValueError('invalid_resolution')
            settings['resolution'][side] = int(size)

    if raw.get('scaleFactor') is not None:
        scale = _number(raw['scaleFactor'], 'invalid_scale_factor')
        if scale < 1 or scale > MAX_SCALE_FACTOR:
            raise ValueError('invalid_scale_factor')
        settings['scaleFactor'] = int(scale) if scale == int(scale) else scale

    for key in SLIDERS:
        if raw.get(key) is None:
            continue
        value = _number(raw[key], 'invalid_refine_setting')
        if value < 0 or value > 100:
            raise ValueError('invalid_refine_setting')
        settings[key] = int(value) if value == int(value) else value

    if raw.get('matchColor') is not None:
        settings['matchColor'] = bool(raw['matchColor'])
    return settings


class RefineService:
    def __init__(self, session: AsyncSession, images: ImagesService | None = None) -> None:
        self.session = session
        self.images = images or ImagesService(session)

    async def _check_source(self, user_id: int, image_id: int, source_type: str) -> None:
        if source_type == 'input':
            await self.images.get_input_image(user_id, image_id)
        elif source_type == 'generated':
            await self.images.get_generated_image(user_id, image_id)
        else:
            raise ValueError('invalid_source_type')

    async def _stored(self, user_id: int, image_id: int, source_type: str) -> RefineSettings | None:
        result = await self.session.execute(
            select(RefineSettings).where(
                RefineSettings.user_id == user_id,
                RefineSettings.source_type == source_type,
                RefineSettings.source_id == image_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_settings(self, user_id: int, image_id: int, source_type: str = 'generated') -> Dict[str, Any]:
        await self._check_source(user_id, image_id, source_type)
        row = await self._stored(user_id, image_id, source_type)
        if row is None:
            return {'settings': normalize_refine_settings(None), 'saved': False}
        return {'settings': normalize_refine_settings(row.settings), 'saved': True}

    async def store(self, user_id: int, image_id: int, source_type: str, settings: Dict[str, Any]) -> RefineSettings:
        """Upsert without an ownership check. Callers have already resolved the image."""
        row = await self._stored(user_id, image_id, source_type)
        now = utcnow()
        if row is None:
            row = RefineSettings(
                user_id=user_id,
                source_type=source_type,
                source_id=image_id,
                created_at=now,
            )
            self.session.add(row)
        row.settings = dict(settings)
        row.updated_at = now
        await self.session.flush()
        return row

    async def save_settings(
        self,
        user_id: int,
        image_id: int,
        raw: Dict[str, Any] | None,
        source_type: str = 'generated',
    ) -> Dict[str, Any]:
        await self._check_source(user_id, image_id, source_type)
        settings = normalize_refine_settings(raw)
        await self.store(user_id, image_id, source_type, settings)
        logger.info('refine_settings_saved', user_id=user_id, image_id=image_id, source_type=source_type)
        return settings

    async def list_operations(self, user_id: int, base_image_id: int) -> List[GeneratedImage]:
        """Refine variations derived from one uploaded image, newest first."""
        await self.images.get_input_image(user_id, base_image_id)
        result = await self.session.execute(
            select(GeneratedImage)
            .join(GenerationBatch, GenerationBatch.id == GeneratedImage.batch_id)
            .where(
                GenerationBatch.module_type == 'REFINE',
                GeneratedImage.user_id == user_id,
                GeneratedImage.original_base_image_id == base_image_id,
            )
            .order_by(GeneratedImage.created_at.desc(), GeneratedImage.id.desc())
        )
        return list(result.scalars().all())

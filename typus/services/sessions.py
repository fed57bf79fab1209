from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from typus.db.models import CreationSession, GeneratedImage, GenerationBatch
from typus.utils.text import session_name_from_prompt
from typus.utils.time import utcnow


MODULE_TYPES = ('CREATE', 'TWEAK', 'UPSCALE', 'REFINE')
MAX_NAME_LENGTH = 100


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_image(image: GeneratedImage) -> Dict[str, Any]:
    return {
        'id': image.id,
        'batchId': image.batch_id,
        'variationNumber': image.variation_number,
        'status': image.status,
        'provider': image.provider,
        'providerStatus': image.provider_status,
        'imageUrl': image.processed_image_url or image.original_image_url,
        'originalImageUrl': image.original_image_url,
        'thumbnailUrl': image.thumbnail_url,
        'width': image.width,
        'height': image.height,
        'failureReason': image.failure_reason,
        'originalBaseImageId': image.original_base_image_id,
        'createdAt': _iso(image.created_at),
        'completedAt': _iso(image.completed_at),
    }


def serialize_batch(batch: GenerationBatch, variations: List[GeneratedImage] | None = None) -> Dict[str, Any]:
    data = {
        'id': batch.id,
        'sessionId': batch.session_id,
        'inputImageId': batch.input_image_id,
        'moduleType': batch.module_type,
        'status': batch.status,
        'prompt': batch.prompt,
        'totalVariations': batch.total_variations,
        'creditsUsed': batch.credits_used,
        'meta': batch.meta or {},
        'createdAt': _iso(batch.created_at),
        'updatedAt': _iso(batch.updated_at),
    }
    if variations is not None:
        data['variations'] = [serialize_image(v) for v in variations]
    return data


def serialize_session(session: CreationSession) -> Dict[str, Any]:
    return {
        'id': session.id,
        'name': session.name,
        'createdAt': _iso(session.created_at),
        'updatedAt': _iso(session.updated_at),
    }


class SessionsService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_session(self, user_id: int, prompt: str | None = None) -> CreationSession:
        now = utcnow()
        creation = CreationSession(
            user_id=user_id,
            name=session_name_from_prompt(prompt),
            created_at=now,
            updated_at=now,
        )
        self.session.add(creation)
        await self.session.flush()
        return creation

    async def get_owned(self, user_id: int, session_id: int) -> CreationSession:
        creation = await self.session.get(CreationSession, session_id)
        if not creation or creation.user_id != user_id:
            raise ValueError('session_not_found')
        return creation

    async def touch(self, session_id: int | None) -> None:
        if session_id is None:
            return
        await self.session.execute(
            update(CreationSession).where(CreationSession.id == session_id).values(updated_at=utcnow())
        )

    async def get_session(self, user_id: int, session_id: int) -> Dict[str, Any]:
        result = await self.session.execute(
            select(CreationSession)
            .where(CreationSession.id == session_id)
            .where(CreationSession.user_id == user_id)
            .options(selectinload(CreationSession.batches).selectinload(GenerationBatch.variations))
        )
        creation = result.scalar_one_or_none()
        if not creation:
            raise ValueError('session_not_found')
        data = serialize_session(creation)
        data['batches'] = [serialize_batch(b, list(b.variations)) for b in creation.batches]
        return data

    async def list_sessions(self, user_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        result = await self.session.execute(
            select(CreationSession)
            .where(CreationSession.user_id == user_id)
            .order_by(CreationSession.updated_at.desc(), CreationSession.id.desc())
            .limit(limit)
        )
        sessions = list(result.scalars().all())
        if not sessions:
            return []
        ids = [s.id for s in sessions]

        counts_rows = await self.session.execute(
            select(GenerationBatch.session_id, func.count(GenerationBatch.id))
            .where(GenerationBatch.session_id.in_(ids))
            .group_by(GenerationBatch.session_id)
        )
        counts = {row[0]: int(row[1]) for row in counts_rows.all()}

        thumb_rows = await self.session.execute(
            select(GenerationBatch.session_id, GeneratedImage.thumbnail_url, GeneratedImage.processed_image_url)
            .join(GeneratedImage, GeneratedImage.batch_id == GenerationBatch.id)
            .where(GenerationBatch.session_id.in_(ids))
            .where(GeneratedImage.status == 'COMPLETED')
            .order_by(GeneratedImage.created_at, GeneratedImage.id)
        )
        thumbnails: Dict[int, str] = {}
        for session_id, thumbnail_url, processed_url in thumb_rows.all():
            if session_id not in thumbnails and (thumbnail_url or processed_url):
                thumbnails[session_id] = thumbnail_url or processed_url

        items = []
        for creation in sessions:
            data = serialize_session(creation)
            data['batchCount'] = counts.get(creation.id, 0)
            data['thumbnailUrl'] = thumbnails.get(creation.id)
            items.append(data)
        return items

    async def rename_session(self, user_id: int, session_id: int, name: str) -> CreationSession:
        cleaned = (name or '').strip()
        if not cleaned:
            raise ValueError('name_required')
        if len(cleaned) > MAX_NAME_LENGTH:
            raise ValueError('name_too_long')
        creation = await self.get_owned(user_id, session_id)
        creation.name = cleaned
        creation.updated_at = utcnow()
        return creation

    async def delete_session(self, user_id: int, session_id: int) -> None:
        creation = await self.get_owned(user_id, session_id)
        await self.session.execute(
            update(GenerationBatch).where(GenerationBatch.session_id == session_id).values(session_id=None)
        )
        await self.session.delete(creation)

    async def get_batch(self, user_id: int, batch_id: int) -> GenerationBatch:
        result = await self.session.execute(
            select(GenerationBatch)
            .where(GenerationBatch.id == batch_id)
            .options(selectinload(GenerationBatch.variations))
        )
        batch = result.scalar_one_or_none()
        if not batch or batch.user_id != user_id:
            raise ValueError('batch_not_found')
        return batch

    async def list_batches(
        self,
        user_id: int,
        module_type: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        if module_type and module_type not in MODULE_TYPES:
            raise ValueError('invalid_module_type')
        page = max(1, page)
        limit = min(max(1, limit), 100)
        base = select(GenerationBatch).where(GenerationBatch.user_id == user_id)
        count_stmt = select(func.count(GenerationBatch.id)).where(GenerationBatch.user_id == user_id)
        if module_type:
            base = base.where(GenerationBatch.module_type == module_type)
            count_stmt = count_stmt.where(GenerationBatch.module_type == module_type)
        total = int((await self.session.execute(count_stmt)).scalar_one() or 0)
        result = await self.session.execute(
            base.options(selectinload(GenerationBatch.variations))
            .order_by(GenerationBatch.created_at.desc(), GenerationBatch.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        batches = list(result.scalars().all())
        return {
            'batches': [serialize_batch(b, list(b.variations)) for b in batches],
            'pagination': {
                'page': page,
                'limit': limit,
                'total': total,
                'pages': (total + limit - 1) // limit,
            },
        }

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from typus.db.models import CustomizationCategory, CustomizationOption, MaskRegion


def prompt_for_region(region: MaskRegion, option: Optional[CustomizationOption] = None) -> str:
    custom = (region.custom_text or '').strip()
    if custom:
        return custom
    if option is None:
        return ''
    return (option.prompt_text or '').strip() or option.name


def serialize_option(option: CustomizationOption) -> Dict[str, Any]:
    return {
        'id': option.id,
        'slug': option.slug,
        'name': option.name,
        'promptText': option.prompt_text,
        'imageUrl': option.image_url,
        'thumbnailUrl': option.thumbnail_url,
        'categoryId': option.category_id,
    }


class CustomizationService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_option(self, option_id: int) -> Optional[CustomizationOption]:
        return await self.session.get(CustomizationOption, option_id)

    async def get_category(self, category_id: int) -> Optional[CustomizationCategory]:
        return await self.session.get(CustomizationCategory, category_id)

    async def list_catalog(self) -> List[Dict[str, Any]]:
        result = await self.session.execute(
            select(CustomizationCategory)
            .options(selectinload(CustomizationCategory.options))
            .order_by(CustomizationCategory.sort_order, CustomizationCategory.id)
        )
        catalog = []
        for category in result.scalars().all():
            catalog.append(
                {
                    'id': category.id,
                    'slug': category.slug,
                    'name': category.name,
                    'parentId': category.parent_id,
                    'options': [serialize_option(o) for o in category.options if o.is_active],
                }
            )
        return catalog

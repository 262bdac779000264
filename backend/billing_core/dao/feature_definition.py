"""
Feature definition Data Access Object (DAO).
"""

from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.dao.base import BaseDAO
from billing_core.models.feature_definition import FeatureDefinition, FeatureCategory


class FeatureDefinitionDAO(BaseDAO[FeatureDefinition]):
    """Data Access Object for FeatureDefinition model."""

    def __init__(self, session: AsyncSession):
        super().__init__(FeatureDefinition, session)

    async def get_by_keys(self, keys: Iterable[str]) -> List[FeatureDefinition]:
        keys = list(keys)
        if not keys:
            return []
        result = await self.session.execute(
            select(FeatureDefinition).where(FeatureDefinition.key.in_(keys))
        )
        return list(result.scalars().all())

    async def existing_keys(self) -> set:
        result = await self.session.execute(select(FeatureDefinition.key))
        return set(result.scalars().all())

    async def list_features(
        self,
        category: Optional[FeatureCategory] = None,
        active_only: bool = True,
    ) -> List[FeatureDefinition]:
        query = select(FeatureDefinition)
        if category is not None:
            query = query.where(FeatureDefinition.category == category)
        if active_only:
            query = query.where(FeatureDefinition.is_active.is_(True))
        query = query.order_by(FeatureDefinition.category.asc(), FeatureDefinition.key.asc())
        result = await self.session.execute(query)
        return list(result.scalars().all())

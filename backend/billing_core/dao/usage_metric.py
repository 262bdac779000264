"""
Usage metric Data Access Object (DAO).
"""

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.dao.base import BaseDAO
from billing_core.models.usage_metric import UsageMetric, MetricType


class UsageMetricDAO(BaseDAO[UsageMetric]):
    """Data Access Object for UsageMetric model."""

    def __init__(self, session: AsyncSession):
        super().__init__(UsageMetric, session)

    async def get_metric(
        self, user_id: str, metric_type: MetricType, for_update: bool = False
    ) -> Optional[UsageMetric]:
        """
        Counter for one user and metric.

        Args:
            for_update: Lock the row (RecordUsage read-modify-write)
        """
        query = select(UsageMetric).where(
            UsageMetric.user_id == user_id,
            UsageMetric.metric_type == metric_type,
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str) -> List[UsageMetric]:
        result = await self.session.execute(
            select(UsageMetric)
            .where(UsageMetric.user_id == user_id)
            .order_by(UsageMetric.metric_type.asc())
        )
        return list(result.scalars().all())

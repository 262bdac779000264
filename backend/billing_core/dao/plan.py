"""
Plan Data Access Object (DAO).

WHAT: Queries over the plans table.

WHY: Plans are read on nearly every billing path (purchase, upgrade,
effective features) and written only by administrators.
"""

import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.dao.base import BaseDAO
from billing_core.models.plan import Plan


class PlanDAO(BaseDAO[Plan]):
    """Data Access Object for Plan model."""

    def __init__(self, session: AsyncSession):
        super().__init__(Plan, session)

    async def list_plans(self, active_only: bool = True) -> List[Plan]:
        """
        List plans ordered by priority (lowest tier first).

        Args:
            active_only: Exclude deactivated plans
        """
        query = select(Plan)
        if active_only:
            query = query.where(Plan.is_active.is_(True))
        query = query.order_by(Plan.priority.asc(), Plan.name.asc())
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_active(self, plan_id: uuid.UUID) -> Optional[Plan]:
        result = await self.session.execute(
            select(Plan).where(Plan.id == plan_id, Plan.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    async def get_by_upstream_price_id(self, price_id: str) -> Optional[Plan]:
        """
        Find the plan linked to a gateway price.

        WHY: Reconciliation recovers the plan of an upstream subscription
        from its price when metadata is missing.
        """
        result = await self.session.execute(
            select(Plan).where(Plan.upstream_price_id == price_id)
        )
        return result.scalar_one_or_none()

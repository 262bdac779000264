"""
License batch Data Access Object (DAO).

WHAT: Queries over license_batches, including the batch row lock.

WHY: Every counter change (assign, revoke, resize) happens under the
batch lock, taken before any of the batch's license rows.
"""

import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.dao.base import BaseDAO
from billing_core.models.license_batch import LicenseBatch, LicenseBatchStatus


class LicenseBatchDAO(BaseDAO[LicenseBatch]):
    """Data Access Object for LicenseBatch model."""

    def __init__(self, session: AsyncSession):
        super().__init__(LicenseBatch, session)

    async def lock(self, batch_id: uuid.UUID) -> Optional[LicenseBatch]:
        """Load a batch with SELECT ... FOR UPDATE."""
        return await self.get_by_id_for_update(batch_id)

    async def get_by_upstream_subscription_id(
        self, upstream_subscription_id: str, for_update: bool = False
    ) -> Optional[LicenseBatch]:
        query = select(LicenseBatch).where(
            LicenseBatch.upstream_subscription_id == upstream_subscription_id
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_by_purchaser(self, purchaser_user_id: str) -> List[LicenseBatch]:
        result = await self.session.execute(
            select(LicenseBatch)
            .where(LicenseBatch.purchaser_user_id == purchaser_user_id)
            .order_by(LicenseBatch.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_active_for_group(self, group_id: uuid.UUID) -> List[LicenseBatch]:
        """
        Active batches linked to a group, oldest first.

        WHY: Group auto-licensing draws from the oldest batch with a free seat.
        """
        result = await self.session.execute(
            select(LicenseBatch)
            .where(
                LicenseBatch.group_id == group_id,
                LicenseBatch.status == LicenseBatchStatus.ACTIVE,
                LicenseBatch.assigned_quantity < LicenseBatch.total_quantity,
            )
            .order_by(LicenseBatch.created_at.asc())
        )
        return list(result.scalars().all())

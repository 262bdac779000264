"""
Invoice Data Access Object (DAO).
"""

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.dao.base import BaseDAO
from billing_core.models.invoice import Invoice


class InvoiceDAO(BaseDAO[Invoice]):
    """Data Access Object for Invoice model."""

    def __init__(self, session: AsyncSession):
        super().__init__(Invoice, session)

    async def get_by_upstream_invoice_id(self, upstream_invoice_id: str) -> Optional[Invoice]:
        result = await self.session.execute(
            select(Invoice).where(Invoice.upstream_invoice_id == upstream_invoice_id)
        )
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str) -> List[Invoice]:
        result = await self.session.execute(
            select(Invoice).where(Invoice.user_id == user_id).order_by(Invoice.created_at.desc())
        )
        return list(result.scalars().all())

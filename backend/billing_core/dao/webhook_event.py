"""
Webhook event record Data Access Object (DAO).

WHAT: Dedup records for processed gateway events.

WHY: The insert happens inside the transaction that applies the event.
A concurrent delivery of the same event id fails on the unique constraint
at flush time and is answered as a duplicate.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.dao.base import BaseDAO
from billing_core.models.webhook_event import WebhookEventRecord


class DuplicateEventError(Exception):
    """Raised when another transaction already recorded this event id."""


class WebhookEventDAO(BaseDAO[WebhookEventRecord]):
    """Data Access Object for WebhookEventRecord model."""

    def __init__(self, session: AsyncSession):
        super().__init__(WebhookEventRecord, session)

    async def get_by_event_id(self, event_id: str) -> Optional[WebhookEventRecord]:
        result = await self.session.execute(
            select(WebhookEventRecord).where(WebhookEventRecord.event_id == event_id)
        )
        return result.scalar_one_or_none()

    async def record(
        self,
        event_id: str,
        event_type: str,
        expires_at: datetime,
        payload: Optional[Dict[str, Any]] = None,
    ) -> WebhookEventRecord:
        """
        Insert the dedup record and flush immediately.

        Raises:
            DuplicateEventError: If the event id is already recorded
        """
        record = WebhookEventRecord(
            event_id=event_id,
            event_type=event_type,
            expires_at=expires_at,
            payload=payload,
        )
        self.session.add(record)
        try:
            await self.session.flush()
        except IntegrityError:
            raise DuplicateEventError(event_id)
        return record

    async def delete_expired(self, now: datetime) -> int:
        """Remove records past their retention. Returns rows deleted."""
        result = await self.session.execute(
            WebhookEventRecord.__table__.delete().where(WebhookEventRecord.expires_at < now)
        )
        return result.rowcount or 0

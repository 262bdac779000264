"""
Audit Log Data Access Object (DAO).

WHAT: Data access layer for audit log operations.

WHY: Audit logs are append-only. This DAO:
- Creates records
- Answers filtered, paginated queries (newest first)
- Deletes expired records for the retention sweep only

HOW: Standalone class (not BaseDAO) so the generic update/delete are not
inherited; both are overridden to raise AuditLogImmutableError.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List, Any, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.models.audit_log import AuditLog, AuditSeverity, AuditStatus
from billing_core.core.exceptions import AuditLogImmutableError


@dataclass
class AuditLogFilter:
    """
    Query filter; every field is optional and fields are AND-combined.
    """

    actor_id: Optional[str] = None
    target_id: Optional[str] = None
    organization_id: Optional[uuid.UUID] = None
    event_type: Optional[str] = None
    severity: Optional[AuditSeverity] = None
    status: Optional[AuditStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = 50
    offset: int = 0


class AuditLogDAO:
    """
    Data Access Object for audit log operations.
    """

    def __init__(self, session: AsyncSession):
        """
        Args:
            session: Async database session
        """
        self.session = session

    async def create(self, **fields: Any) -> AuditLog:
        """
        Persist one audit record.

        Returns:
            The created AuditLog entry
        """
        log = AuditLog(**fields)
        self.session.add(log)
        await self.session.flush()
        await self.session.refresh(log)
        return log

    async def get_by_id(self, log_id: uuid.UUID) -> Optional[AuditLog]:
        result = await self.session.execute(select(AuditLog).where(AuditLog.id == log_id))
        return result.scalar_one_or_none()

    def _apply_filter(self, query, f: AuditLogFilter):
        if f.actor_id:
            query = query.where(AuditLog.actor_id == f.actor_id)
        if f.target_id:
            query = query.where(AuditLog.target_id == f.target_id)
        if f.organization_id:
            query = query.where(AuditLog.organization_id == f.organization_id)
        if f.event_type:
            query = query.where(AuditLog.event_type == f.event_type)
        if f.severity:
            query = query.where(AuditLog.severity == f.severity)
        if f.status:
            query = query.where(AuditLog.status == f.status)
        if f.start_date:
            query = query.where(AuditLog.created_at >= f.start_date)
        if f.end_date:
            query = query.where(AuditLog.created_at <= f.end_date)
        return query

    async def query(self, f: AuditLogFilter) -> Tuple[List[AuditLog], int]:
        """
        Filtered page of audit logs, newest first, with the total count.

        Returns:
            (items, total) where total ignores limit/offset
        """
        items_query = self._apply_filter(select(AuditLog), f)
        items_query = (
            items_query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .offset(f.offset)
            .limit(f.limit)
        )
        items = list((await self.session.execute(items_query)).scalars().all())

        count_query = self._apply_filter(select(func.count()).select_from(AuditLog), f)
        total = int((await self.session.execute(count_query)).scalar_one())

        return items, total

    async def delete_expired(self, now: datetime) -> int:
        """
        Hard-delete records whose retention has elapsed.

        WHY: This is the only deletion path; it is driven by expires_at,
        never by a caller-chosen id.

        Returns:
            Number of records deleted
        """
        result = await self.session.execute(
            AuditLog.__table__.delete().where(AuditLog.expires_at < now)
        )
        return result.rowcount or 0

    async def update(self, log_id: uuid.UUID, **kwargs: Any) -> None:
        """
        Attempt to update an audit log (BLOCKED).

        Raises:
            AuditLogImmutableError: Always raised - updates not allowed
        """
        raise AuditLogImmutableError(
            "Audit logs are immutable and cannot be updated.",
            log_id=str(log_id),
        )

    async def delete(self, log_id: uuid.UUID) -> None:
        """
        Attempt to delete an audit log (BLOCKED).

        Raises:
            AuditLogImmutableError: Always raised - deletions not allowed
        """
        raise AuditLogImmutableError(
            "Audit logs cannot be deleted individually.",
            log_id=str(log_id),
        )

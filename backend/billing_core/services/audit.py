"""
Audit logging service.

WHAT: Service layer for appending, querying and expiring audit records.

WHY: Every state-changing billing outcome (success and failure) is
recorded for security review and customer support. This service provides:
- One append path with automatic request context capture
- Severity derivation so callers only pass what happened
- Validated, paginated queries
- The retention sweep used by the background scheduler

HOW: Uses AuditLogDAO for persistence and the RequestContext middleware
for IP / user agent / request id. Appending never raises: a failed audit
write is logged and the business operation continues. Failure records are
committed in a session of their own, since the request transaction that
raised is rolled back.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_core.core.config import settings
from billing_core.core.exceptions import (
    InvalidDateRangeError,
    InvalidUUIDError,
    LimitOutOfRangeError,
    ValidationError,
)
from billing_core.dao.audit_log import AuditLogDAO, AuditLogFilter
from billing_core.middleware.request_context import get_request_context
from billing_core.models.audit_log import AuditEventType, AuditLog, AuditSeverity, AuditStatus
from billing_core.models.base import utcnow

# Logger for audit service errors (not audit events themselves)
logger = logging.getLogger(__name__)


# Events that are always at least a warning, whatever their outcome
WARNING_EVENTS = frozenset(
    {
        AuditEventType.USER_DELETED.value,
        AuditEventType.USER_SUSPENDED.value,
        AuditEventType.USER_ROLE_REVOKED.value,
        AuditEventType.ORGANIZATION_DELETED.value,
        AuditEventType.LICENSE_REVOKED.value,
        AuditEventType.PAYMENT_FAILED.value,
    }
)

CRITICAL_EVENTS = frozenset({AuditEventType.SUSPICIOUS_ACTIVITY.value})

EventTypeArg = Union[AuditEventType, str]


def _event_value(event_type: EventTypeArg) -> str:
    return event_type.value if isinstance(event_type, AuditEventType) else str(event_type)


def derive_severity(event_type: EventTypeArg, status: AuditStatus) -> AuditSeverity:
    """
    Severity for an event when the caller did not choose one.

    Rules:
    - failed outcome: warning, or error for billing events
    - suspicious activity: critical
    - destructive or payment-failure events: warning
    - everything else: info
    """
    value = _event_value(event_type)

    if value in CRITICAL_EVENTS:
        return AuditSeverity.CRITICAL
    if status == AuditStatus.FAILED:
        if value.startswith("billing."):
            return AuditSeverity.ERROR
        return AuditSeverity.WARNING
    if value in WARNING_EVENTS:
        return AuditSeverity.WARNING
    return AuditSeverity.INFO


class AuditService:
    """
    Service for creating and reading audit log entries.

    Example:
        audit = AuditService(db)
        await audit.log(
            AuditEventType.LICENSE_ASSIGNED,
            action="Assigned license",
            actor_id=principal.user_id,
            target_id=str(license.id),
            target_type="license",
        )
    """

    def __init__(
        self,
        session: AsyncSession,
        failure_session_factory: Optional[async_sessionmaker] = None,
    ):
        """
        Args:
            session: Async database session for audit log persistence
            failure_session_factory: Sessions for failure records; defaults
                to new sessions on the same engine as `session`
        """
        self.dao = AuditLogDAO(session)
        self._session = session
        self._failure_session_factory = failure_session_factory

    async def log(
        self,
        event_type: EventTypeArg,
        action: str,
        *,
        actor_id: Optional[str] = None,
        actor_email: Optional[str] = None,
        target_id: Optional[Any] = None,
        target_type: Optional[str] = None,
        target_name: Optional[str] = None,
        organization_id: Optional[uuid.UUID] = None,
        status: AuditStatus = AuditStatus.SUCCESS,
        severity: Optional[AuditSeverity] = None,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        actor_ip: Optional[str] = None,
        actor_user_agent: Optional[str] = None,
        request_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Optional[AuditLog]:
        """
        Append one audit record.

        HOW:
        1. Fills IP / user agent / request id / session id from the request
           context when not given
        2. Derives severity when not given
        3. Sets expires_at from AUDIT_RETENTION_DAYS

        Returns:
            Created AuditLog or None if logging failed

        Note:
            This method never raises; audit logging must not break the
            operation being audited.
        """
        try:
            ctx = get_request_context()
            if ctx:
                actor_ip = actor_ip or ctx.ip_address
                actor_user_agent = actor_user_agent or ctx.user_agent
                request_id = request_id or ctx.request_id
                session_id = session_id or ctx.session_id

            now = utcnow()
            return await self.dao.create(
                event_type=_event_value(event_type),
                severity=severity or derive_severity(event_type, status),
                actor_id=actor_id,
                actor_email=actor_email,
                actor_ip=actor_ip,
                actor_user_agent=actor_user_agent[:500] if actor_user_agent else None,
                target_id=str(target_id) if target_id is not None else None,
                target_type=target_type,
                target_name=target_name,
                organization_id=organization_id,
                action=action,
                status=status,
                error_message=error_message,
                event_metadata=metadata or {},
                amount=amount,
                currency=currency,
                request_id=request_id,
                session_id=session_id,
                created_at=now,
                expires_at=now + timedelta(days=settings.AUDIT_RETENTION_DAYS),
            )

        except Exception as e:
            # WHY: A logging failure shouldn't prevent the billing operation
            logger.error(f"Failed to create audit log: {e}", exc_info=True)
            return None

    async def log_failure(
        self,
        event_type: EventTypeArg,
        action: str,
        error: Exception,
        **fields: Any,
    ) -> Optional[AuditLog]:
        """
        Append a failed-outcome record for an operation that raised.

        WHY: The error propagates and get_db rolls the request session
        back, so the record is written and committed in a separate short
        transaction that the rollback cannot discard.

        Returns:
            Created AuditLog or None if logging failed
        """
        message = getattr(error, "message", None) or str(error)
        factory = self._failure_session_factory or async_sessionmaker(
            self._session.bind,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        try:
            async with factory() as session:
                log = await AuditService(session).log(
                    event_type,
                    action,
                    status=AuditStatus.FAILED,
                    error_message=message,
                    **fields,
                )
                await session.commit()
                return log
        except Exception as e:
            logger.error(f"Failed to commit failure audit log: {e}", exc_info=True)
            return None

    # =========================================================================
    # Queries
    # =========================================================================

    async def query(
        self,
        *,
        actor_id: Optional[str] = None,
        target_id: Optional[str] = None,
        organization_id: Optional[Union[str, uuid.UUID]] = None,
        event_type: Optional[str] = None,
        severity: Optional[AuditSeverity] = None,
        status: Optional[AuditStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Tuple[List[AuditLog], int]:
        """
        Filtered audit records, newest first.

        Raises:
            LimitOutOfRangeError: limit outside [1, AUDIT_QUERY_MAX_LIMIT]
            ValidationError: negative offset
            InvalidDateRangeError: start_date after end_date
            InvalidUUIDError: organization_id is not a UUID

        Returns:
            (items, total)
        """
        if limit is None:
            limit = settings.AUDIT_QUERY_DEFAULT_LIMIT
        if limit < 1 or limit > settings.AUDIT_QUERY_MAX_LIMIT:
            raise LimitOutOfRangeError(
                message=f"limit must be between 1 and {settings.AUDIT_QUERY_MAX_LIMIT}",
                limit=limit,
            )
        if offset < 0:
            raise ValidationError(message="offset must be >= 0", offset=offset)
        if start_date and end_date and start_date > end_date:
            raise InvalidDateRangeError(
                start_date=start_date.isoformat(),
                end_date=end_date.isoformat(),
            )

        org_uuid: Optional[uuid.UUID] = None
        if organization_id is not None:
            if isinstance(organization_id, uuid.UUID):
                org_uuid = organization_id
            else:
                try:
                    org_uuid = uuid.UUID(str(organization_id))
                except ValueError:
                    raise InvalidUUIDError(field="organization_id", value=str(organization_id))

        return await self.dao.query(
            AuditLogFilter(
                actor_id=actor_id,
                target_id=target_id,
                organization_id=org_uuid,
                event_type=event_type,
                severity=severity,
                status=status,
                start_date=start_date,
                end_date=end_date,
                limit=limit,
                offset=offset,
            )
        )

    # =========================================================================
    # Retention
    # =========================================================================

    async def sweep_expired(self) -> int:
        """
        Delete records whose expires_at has passed.

        Returns:
            Number of records deleted
        """
        deleted = await self.dao.delete_expired(utcnow())
        if deleted:
            logger.info(f"Audit retention sweep deleted {deleted} records", extra={"deleted": deleted})
        return deleted

"""
Audit log API endpoints.

WHAT: Read access to the audit trail.

SECURITY:
- Administrators may query everything
- Other users must scope the query to an organization they belong to
"""

import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.core.auth import Principal
from billing_core.core.config import settings
from billing_core.core.deps import get_current_principal
from billing_core.core.exceptions import AccessDeniedError, InvalidUUIDError
from billing_core.db.session import get_db
from billing_core.models.audit_log import AuditSeverity, AuditStatus
from billing_core.schemas.audit import AuditLogListResponse, AuditLogResponse
from billing_core.services.audit import AuditService
from billing_core.services.organization_subscription_service import OrganizationSubscriptionService


router = APIRouter(prefix="/audit", tags=["audit"])


@router.get(
    "/logs",
    response_model=AuditLogListResponse,
    summary="Query audit logs",
)
async def list_audit_logs(
    actor_id: Optional[str] = Query(None),
    target_id: Optional[str] = Query(None),
    organization_id: Optional[str] = Query(None),
    event_type: Optional[str] = Query(None),
    severity: Optional[AuditSeverity] = Query(None),
    status: Optional[AuditStatus] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: Optional[int] = Query(None, description="Defaults to AUDIT_QUERY_DEFAULT_LIMIT"),
    offset: int = Query(0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> AuditLogListResponse:
    """
    Filtered audit records, newest first.

    Raises:
        AccessDeniedError (403): Non-admin without an organization filter
        LimitOutOfRangeError (400): limit outside the allowed range
        InvalidDateRangeError (400): start_date after end_date
        InvalidUUIDError (400): organization_id is not a UUID
    """
    if not principal.is_admin:
        if organization_id is None:
            raise AccessDeniedError(message="organization_id is required")
        try:
            org_uuid = uuid.UUID(organization_id)
        except ValueError:
            raise InvalidUUIDError(field="organization_id", value=organization_id)
        await OrganizationSubscriptionService(db).ensure_org_access(org_uuid, principal)

    service = AuditService(db)
    items, total = await service.query(
        actor_id=actor_id,
        target_id=target_id,
        organization_id=organization_id,
        event_type=event_type,
        severity=severity,
        status=status,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(item) for item in items],
        total=total,
        limit=limit if limit is not None else settings.AUDIT_QUERY_DEFAULT_LIMIT,
        offset=offset,
    )

"""
Audit log schemas.

WHY: Audit records are read-only through the API; there is no create or
update schema.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from billing_core.models.audit_log import AuditSeverity, AuditStatus


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: uuid.UUID
    event_type: str
    severity: AuditSeverity
    actor_id: Optional[str] = None
    actor_email: Optional[str] = None
    actor_ip: Optional[str] = None
    target_id: Optional[str] = None
    target_type: Optional[str] = None
    target_name: Optional[str] = None
    organization_id: Optional[uuid.UUID] = None
    action: str
    status: AuditStatus
    error_message: Optional[str] = None
    # WHY: The model attribute is event_metadata ("metadata" is reserved)
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="event_metadata")
    amount: Optional[int] = None
    currency: Optional[str] = None
    request_id: Optional[str] = None
    created_at: datetime


class AuditLogListResponse(BaseModel):
    items: List[AuditLogResponse]
    total: int
    limit: int
    offset: int

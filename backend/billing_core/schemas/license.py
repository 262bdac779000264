"""
License batch schemas for API request/response validation.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from billing_core.models.group import GroupRole
from billing_core.models.license_batch import LicenseBatchStatus
from billing_core.schemas.subscription import SubscriptionResponse


class BatchCreate(BaseModel):
    plan_id: uuid.UUID
    quantity: int = Field(ge=1, description="Number of licenses to buy")
    group_id: Optional[uuid.UUID] = Field(
        default=None,
        description="Group whose new members receive a license automatically",
    )


class AssignLicenseRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=255)


class QuantityUpdate(BaseModel):
    # WHY: No lower bound here; the service answers < 1 with a typed error
    quantity: int


class BatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    purchaser_user_id: str
    plan_id: uuid.UUID
    group_id: Optional[uuid.UUID] = None
    total_quantity: int
    assigned_quantity: int
    available_quantity: int
    status: LicenseBatchStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    upstream_subscription_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class BatchListResponse(BaseModel):
    batches: List[BatchResponse]
    total: int


class LicenseListResponse(BaseModel):
    licenses: List[SubscriptionResponse]
    total: int
    available: int


# ============================================================================
# Groups
# ============================================================================


class GroupMemberCreate(BaseModel):
    user_id: str = Field(min_length=1, max_length=255)
    role: GroupRole = GroupRole.MEMBER


class GroupMemberResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    group_id: uuid.UUID
    user_id: str
    role: GroupRole
    is_active: bool
    joined_at: datetime


class GroupMemberAddResponse(BaseModel):
    """The membership plus the license auto-assigned on join (if any)."""

    member: GroupMemberResponse
    license: Optional[SubscriptionResponse] = None

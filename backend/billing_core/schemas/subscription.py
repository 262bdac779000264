"""
Subscription schemas for API request/response validation.

WHAT: Pydantic schemas for personal subscriptions, admin assignment,
upgrades and usage metering.

HOW: Uses Pydantic v2 with Field validators and model_config. Status
values are the model enums so JSON matches the stored strings.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from billing_core.models.subscription import SubscriptionKind, SubscriptionStatus, SubscriptionType
from billing_core.models.usage_metric import MetricType


# ============================================================================
# Request Schemas
# ============================================================================


class SubscriptionCreate(BaseModel):
    plan_id: uuid.UUID


class AdminAssignRequest(BaseModel):
    """
    Admin assignment of a plan to a user.

    WHY: duration_days 0 (or omitted) means the configured default.
    """

    user_id: str = Field(min_length=1, max_length=255)
    plan_id: uuid.UUID
    duration_days: int = Field(default=0, description="Length of the assignment; 0 = default")


class UpgradeRequest(BaseModel):
    new_plan_id: uuid.UUID
    proration_behavior: str = Field(
        default="create_prorations",
        pattern="^(create_prorations|none|always_invoice)$",
    )


class CancelRequest(BaseModel):
    at_period_end: bool = True


class UsageCheckRequest(BaseModel):
    metric_type: MetricType
    increment: int = Field(default=1, ge=0)


# ============================================================================
# Response Schemas
# ============================================================================


class SubscriptionResponse(BaseModel):
    """
    Schema for subscription response data.

    WHY: Upstream identifiers are exposed read-only for support tooling;
    they are never accepted from clients.
    """

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: Optional[str] = None
    plan_id: Optional[uuid.UUID] = None
    batch_id: Optional[uuid.UUID] = None
    purchaser_user_id: Optional[str] = None
    assigned_by_user_id: Optional[str] = None

    kind: SubscriptionKind
    subscription_type: SubscriptionType
    status: SubscriptionStatus

    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancelled_at: Optional[datetime] = None

    upstream_subscription_id: Optional[str] = None
    upstream_customer_id: Optional[str] = None

    created_at: datetime
    updated_at: datetime


class CurrentSubscriptionResponse(BaseModel):
    """GET /subscriptions/me; subscription is null when the user has none."""

    subscription: Optional[SubscriptionResponse] = None
    has_subscription: bool


class UsageMetricResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    metric_type: MetricType
    current_value: int
    limit_value: int = Field(description="-1 = unlimited")
    period_start: datetime
    period_end: datetime


class UsageResponse(BaseModel):
    metrics: List[UsageMetricResponse]


class UsageCheckResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    allowed: bool
    current: int
    limit: int
    remaining: int = Field(description="-1 = unlimited")
    message: str

"""
Organization subscription and entitlement schemas.

WHAT: Pydantic schemas for organization subscriptions, plan feature
payloads and a user's effective (merged) features.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from billing_core.models.subscription import SubscriptionStatus


class OrganizationSubscribeRequest(BaseModel):
    plan_id: uuid.UUID
    quantity: int = Field(default=1, description="Seats; values below 1 are treated as 1")
    admin_assigned: bool = Field(
        default=False,
        description="Administrator grant without payment (admins only)",
    )


class OrganizationSubscriptionUpdate(BaseModel):
    plan_id: uuid.UUID


class OrganizationCancelRequest(BaseModel):
    at_period_end: bool = True


class OrganizationSubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    organization_id: uuid.UUID
    plan_id: uuid.UUID
    created_by_user_id: Optional[str] = None
    quantity: int
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancelled_at: Optional[datetime] = None
    upstream_subscription_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class OrganizationFeaturesResponse(BaseModel):
    """
    Plan feature payload of an organization.

    WHY: features is empty when the organization has no active
    subscription; callers treat that as "no entitlements".
    """

    organization_id: uuid.UUID
    has_subscription: bool
    features: Dict[str, Any] = Field(default_factory=dict)


class OrganizationLimitsResponse(BaseModel):
    organization_id: uuid.UUID
    limits: Dict[str, int] = Field(description="-1 = unlimited")


class OrganizationEntitlementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    organization_id: uuid.UUID
    organization_name: str
    plan_id: uuid.UUID
    plan_name: str
    is_owner: bool
    is_manager: bool


class EffectiveFeaturesResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    highest_plan_id: uuid.UUID
    highest_plan_name: str
    all_features: List[str]
    limits: Dict[str, int]
    organizations: List[OrganizationEntitlementResponse]


class FeatureAccessResponse(BaseModel):
    """Whether the caller holds a feature and which organization provides it."""

    feature: str
    has_access: bool
    organization_id: Optional[uuid.UUID] = None
    organization_name: Optional[str] = None

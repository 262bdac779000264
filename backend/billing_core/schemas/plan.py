"""
Plan schemas for API request/response validation.

WHAT: Pydantic schemas for plans, pricing tiers and price quotes.

WHY: Plan creation and updates are admin operations that must reject
malformed tiers and limits before the service layer validates feature
keys against the catalog.

HOW: Uses Pydantic v2 with Field constraints and model_config.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from billing_core.models.feature_definition import FeatureCategory, FeatureValueType
from billing_core.models.plan import BillingInterval


# ============================================================================
# Pricing
# ============================================================================


class PricingTier(BaseModel):
    """
    One tier of a graduated price.

    WHY: max_quantity 0 marks the unbounded last tier.
    """

    min_quantity: int = Field(ge=1)
    max_quantity: int = Field(ge=0, description="Inclusive upper bound, 0 = unbounded")
    unit_price: int = Field(ge=0, description="Price per unit in minor units")


class TierCostResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    range: str
    quantity: int
    unit_price: int
    subtotal: int


class PriceResponse(BaseModel):
    """
    Price quote for N units of a plan.

    WHY: The purchase UI shows the breakdown and the savings against the
    flat unit price before a bulk purchase.
    """

    model_config = ConfigDict(from_attributes=True)

    plan_name: str
    quantity: int
    currency: str
    total: int
    flat_total: int
    savings: int
    average_per_unit: float = Field(description="Average price per unit in major units")
    tiers: List[TierCostResponse]


# ============================================================================
# Plan Schemas
# ============================================================================


class PlanBase(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    priority: int = 0

    unit_price: int = Field(default=0, ge=0)
    currency: str = Field(default="eur", min_length=3, max_length=3)
    billing_interval: BillingInterval = BillingInterval.MONTH
    trial_days: int = Field(default=0, ge=0)

    uses_tiered_pricing: bool = False
    pricing_tiers: List[PricingTier] = Field(default_factory=list)

    features: List[str] = Field(default_factory=list)
    planned_features: List[str] = Field(default_factory=list)

    max_concurrent_terminals: int = Field(default=1, ge=-1)
    max_session_duration_minutes: int = Field(default=60, ge=-1)
    max_courses: int = Field(default=-1, ge=-1)
    max_lab_sessions: int = Field(default=-1, ge=-1)
    max_concurrent_users: int = Field(default=1, ge=-1)
    storage_gb: int = Field(default=0, ge=-1)

    allowed_machine_sizes: List[str] = Field(default_factory=list)
    allowed_templates: List[str] = Field(default_factory=list)
    allowed_backends: List[str] = Field(default_factory=list)
    network_access_enabled: bool = False
    data_persistence_enabled: bool = False

    required_role: Optional[str] = None


class PlanCreate(PlanBase):
    """
    Schema for creating a plan.

    sync_to_gateway creates the upstream product / price for paid plans
    that have no upstream_price_id yet.
    """

    upstream_price_id: Optional[str] = None
    sync_to_gateway: bool = False


class PlanUpdate(BaseModel):
    """Partial plan update; only provided fields change."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    priority: Optional[int] = None
    unit_price: Optional[int] = Field(default=None, ge=0)
    trial_days: Optional[int] = Field(default=None, ge=0)
    uses_tiered_pricing: Optional[bool] = None
    pricing_tiers: Optional[List[PricingTier]] = None
    features: Optional[List[str]] = None
    planned_features: Optional[List[str]] = None
    max_concurrent_terminals: Optional[int] = Field(default=None, ge=-1)
    max_session_duration_minutes: Optional[int] = Field(default=None, ge=-1)
    max_courses: Optional[int] = Field(default=None, ge=-1)
    max_lab_sessions: Optional[int] = Field(default=None, ge=-1)
    max_concurrent_users: Optional[int] = Field(default=None, ge=-1)
    storage_gb: Optional[int] = Field(default=None, ge=-1)
    allowed_machine_sizes: Optional[List[str]] = None
    allowed_templates: Optional[List[str]] = None
    allowed_backends: Optional[List[str]] = None
    network_access_enabled: Optional[bool] = None
    data_persistence_enabled: Optional[bool] = None
    required_role: Optional[str] = None
    is_active: Optional[bool] = None
    upstream_price_id: Optional[str] = None


class PlanResponse(PlanBase):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    is_active: bool
    upstream_product_id: Optional[str] = None
    upstream_price_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PlanListResponse(BaseModel):
    plans: List[PlanResponse]
    total: int


# ============================================================================
# Feature Catalog
# ============================================================================


class FeatureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: str
    display_name_en: str
    display_name_fr: str
    description: Optional[str] = None
    category: FeatureCategory
    value_type: FeatureValueType
    unit: Optional[str] = None
    default_value: Optional[str] = None
    is_active: bool


class FeatureListResponse(BaseModel):
    features: List[FeatureResponse]
    total: int

"""
Plan and feature catalog API endpoints.

WHAT: Plan listing, admin plan management, price quotes and the feature
catalog.

HOW: FastAPI router with:
- Public reads for authenticated users
- Admin-only writes (catalog validation runs in PlanService)
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.core.auth import Principal
from billing_core.core.deps import get_current_principal, require_admin
from billing_core.db.session import get_db
from billing_core.models.feature_definition import FeatureCategory
from billing_core.schemas.plan import (
    FeatureListResponse,
    FeatureResponse,
    PlanCreate,
    PlanListResponse,
    PlanResponse,
    PlanUpdate,
    PriceResponse,
)
from billing_core.services.feature_catalog import FeatureCatalogService
from billing_core.services.gateway import StripeGateway, get_gateway
from billing_core.services.plan_service import PlanService
from billing_core.services.pricing_service import PricingService


router = APIRouter(prefix="/plans", tags=["plans"])
features_router = APIRouter(prefix="/features", tags=["features"])


# ============================================================================
# Plan Endpoints
# ============================================================================


@router.get(
    "",
    response_model=PlanListResponse,
    summary="List plans",
)
async def list_plans(
    include_inactive: bool = Query(False, description="Admins only: include inactive plans"),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> PlanListResponse:
    service = PlanService(db)
    plans = await service.list_plans(active_only=not (include_inactive and principal.is_admin))
    return PlanListResponse(
        plans=[PlanResponse.model_validate(plan) for plan in plans],
        total=len(plans),
    )


@router.get(
    "/{plan_id}",
    response_model=PlanResponse,
    summary="Get plan",
)
async def get_plan(
    plan_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> PlanResponse:
    plan = await PlanService(db).get_plan(plan_id)
    return PlanResponse.model_validate(plan)


@router.post(
    "",
    response_model=PlanResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create plan",
    description="Create a plan (admin only). Feature keys must exist in the catalog.",
)
async def create_plan(
    data: PlanCreate,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
) -> PlanResponse:
    """
    Create a plan.

    Raises:
        UnknownFeatureError (400): Unknown or inactive feature keys
        InvalidPricingTiersError (400): Tiers overlap or leave gaps
        GatewayError (502): Upstream price creation failed
    """
    values = data.model_dump(exclude={"sync_to_gateway"})
    plan = await PlanService(db, gateway).create_plan(
        values,
        actor_id=admin.user_id,
        sync_to_gateway=data.sync_to_gateway,
    )
    return PlanResponse.model_validate(plan)


@router.patch(
    "/{plan_id}",
    response_model=PlanResponse,
    summary="Update plan",
)
async def update_plan(
    plan_id: uuid.UUID,
    data: PlanUpdate,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> PlanResponse:
    changes = data.model_dump(exclude_unset=True)
    plan = await PlanService(db).update_plan(plan_id, changes, actor_id=admin.user_id)
    return PlanResponse.model_validate(plan)


@router.get(
    "/{plan_id}/price",
    response_model=PriceResponse,
    summary="Price quote",
    description="Total cost of N units, with tier breakdown and savings.",
)
async def get_plan_price(
    plan_id: uuid.UUID,
    quantity: int = Query(1, description="Number of units"),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> PriceResponse:
    plan = await PlanService(db).get_plan(plan_id)
    breakdown = PricingService().compute_price(plan, quantity)
    return PriceResponse.model_validate(breakdown)


# ============================================================================
# Feature Catalog
# ============================================================================


@features_router.get(
    "",
    response_model=FeatureListResponse,
    summary="List feature catalog",
)
async def list_features(
    category: Optional[FeatureCategory] = Query(None),
    active_only: bool = Query(True),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> FeatureListResponse:
    features = await FeatureCatalogService(db).list_features(category=category, active_only=active_only)
    return FeatureListResponse(
        features=[FeatureResponse.model_validate(feature) for feature in features],
        total=len(features),
    )

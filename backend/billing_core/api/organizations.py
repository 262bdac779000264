"""
Organization subscription and entitlement API endpoints.

WHAT: Organization plans and the features members inherit from them.

HOW:
- /organizations/{id}/... endpoints check membership (managers for
  writes); administrators bypass the membership check
- /users/me/... endpoints merge every organization plan the caller
  reaches through membership
"""

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.core.auth import Principal
from billing_core.core.deps import get_current_principal
from billing_core.core.exceptions import ResourceNotFoundError, SubscriptionNotFoundError
from billing_core.db.session import get_db
from billing_core.schemas.organization import (
    EffectiveFeaturesResponse,
    FeatureAccessResponse,
    OrganizationCancelRequest,
    OrganizationFeaturesResponse,
    OrganizationLimitsResponse,
    OrganizationSubscribeRequest,
    OrganizationSubscriptionResponse,
    OrganizationSubscriptionUpdate,
)
from billing_core.services.gateway import StripeGateway, get_gateway
from billing_core.services.organization_subscription_service import OrganizationSubscriptionService


router = APIRouter(prefix="/organizations", tags=["organizations"])
users_router = APIRouter(prefix="/users", tags=["entitlements"])


def get_org_subscription_service(
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
) -> OrganizationSubscriptionService:
    return OrganizationSubscriptionService(db, gateway)


# ============================================================================
# Organization Subscription Endpoints
# ============================================================================


@router.post(
    "/{organization_id}/subscribe",
    response_model=OrganizationSubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Subscribe an organization",
)
async def subscribe_organization(
    organization_id: uuid.UUID,
    data: OrganizationSubscribeRequest,
    principal: Principal = Depends(get_current_principal),
    service: OrganizationSubscriptionService = Depends(get_org_subscription_service),
) -> OrganizationSubscriptionResponse:
    """
    Create the organization's subscription.

    Raises:
        OrganizationNotFoundError (404): Unknown organization
        AccessDeniedError (403): Not a manager, or admin_assigned by a non-admin
        ConflictError (409): The organization already has an active subscription
    """
    subscription = await service.create_organization_subscription(
        organization_id,
        data.plan_id,
        principal,
        quantity=data.quantity,
        admin_assigned=data.admin_assigned,
    )
    return OrganizationSubscriptionResponse.model_validate(subscription)


@router.get(
    "/{organization_id}/subscription",
    response_model=OrganizationSubscriptionResponse,
    summary="Get organization subscription",
)
async def get_organization_subscription(
    organization_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    service: OrganizationSubscriptionService = Depends(get_org_subscription_service),
) -> OrganizationSubscriptionResponse:
    subscription = await service.get_organization_subscription(organization_id, principal)
    return OrganizationSubscriptionResponse.model_validate(subscription)


@router.patch(
    "/{organization_id}/subscription",
    response_model=OrganizationSubscriptionResponse,
    summary="Change organization plan",
)
async def update_organization_subscription(
    organization_id: uuid.UUID,
    data: OrganizationSubscriptionUpdate,
    principal: Principal = Depends(get_current_principal),
    service: OrganizationSubscriptionService = Depends(get_org_subscription_service),
) -> OrganizationSubscriptionResponse:
    subscription = await service.update_organization_subscription(organization_id, data.plan_id, principal)
    return OrganizationSubscriptionResponse.model_validate(subscription)


@router.post(
    "/{organization_id}/subscription/cancel",
    response_model=OrganizationSubscriptionResponse,
    summary="Cancel organization subscription",
)
async def cancel_organization_subscription(
    organization_id: uuid.UUID,
    data: OrganizationCancelRequest = OrganizationCancelRequest(),
    principal: Principal = Depends(get_current_principal),
    service: OrganizationSubscriptionService = Depends(get_org_subscription_service),
) -> OrganizationSubscriptionResponse:
    subscription = await service.cancel_organization_subscription(
        organization_id, principal, at_period_end=data.at_period_end
    )
    return OrganizationSubscriptionResponse.model_validate(subscription)


@router.get(
    "/{organization_id}/features",
    response_model=OrganizationFeaturesResponse,
    summary="Organization plan features",
)
async def get_organization_features(
    organization_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    service: OrganizationSubscriptionService = Depends(get_org_subscription_service),
) -> OrganizationFeaturesResponse:
    try:
        features = await service.get_organization_features(organization_id, principal)
    except SubscriptionNotFoundError:
        return OrganizationFeaturesResponse(organization_id=organization_id, has_subscription=False)
    return OrganizationFeaturesResponse(
        organization_id=organization_id,
        has_subscription=True,
        features=features,
    )


@router.get(
    "/{organization_id}/limits",
    response_model=OrganizationLimitsResponse,
    summary="Organization usage limits",
)
async def get_organization_limits(
    organization_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    service: OrganizationSubscriptionService = Depends(get_org_subscription_service),
) -> OrganizationLimitsResponse:
    usage = await service.get_organization_usage_limits(organization_id, principal)
    return OrganizationLimitsResponse(organization_id=organization_id, limits=usage["limits"])


# ============================================================================
# Effective Entitlements
# ============================================================================


@users_router.get(
    "/me/effective-features",
    response_model=EffectiveFeaturesResponse,
    summary="My effective features",
    description="Union of features and max-take of limits across all my organizations.",
)
async def get_my_effective_features(
    principal: Principal = Depends(get_current_principal),
    service: OrganizationSubscriptionService = Depends(get_org_subscription_service),
) -> EffectiveFeaturesResponse:
    """
    Raises:
        NoOrganizationSubscriptionsError (404): No organization plan reaches the caller
    """
    effective = await service.get_user_effective_features(principal.user_id)
    return EffectiveFeaturesResponse.model_validate(effective)


@users_router.get(
    "/me/features/{feature_key}",
    response_model=FeatureAccessResponse,
    summary="Check feature access",
)
async def check_my_feature(
    feature_key: str,
    principal: Principal = Depends(get_current_principal),
    service: OrganizationSubscriptionService = Depends(get_org_subscription_service),
) -> FeatureAccessResponse:
    try:
        provider = await service.get_user_organization_with_feature(principal.user_id, feature_key)
    except ResourceNotFoundError:
        return FeatureAccessResponse(feature=feature_key, has_access=False)
    return FeatureAccessResponse(
        feature=feature_key,
        has_access=True,
        organization_id=provider.organization_id,
        organization_name=provider.organization_name,
    )

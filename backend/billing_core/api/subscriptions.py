"""
Subscription management API endpoints.

WHAT: REST API for personal subscriptions and usage metering.

Endpoints:
1. POST /subscriptions - Subscribe to a plan (verified email)
2. POST /subscriptions/admin-assign - Assign a plan to a user (admin)
3. GET /subscriptions/me - Current subscription
4. POST /subscriptions/{id}/cancel - Cancel
5. POST /subscriptions/upgrade - Change plan
6. GET /subscriptions/usage - Usage counters
7. POST /subscriptions/usage/check - Would an increment stay within limits?

SECURITY:
- Purchases require a verified email (gateway customers are keyed on it)
- Upstream identifiers are never accepted from request bodies
"""

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.core.auth import Principal
from billing_core.core.deps import get_current_principal, require_admin, require_verified_email
from billing_core.db.session import get_db
from billing_core.schemas.subscription import (
    AdminAssignRequest,
    CancelRequest,
    CurrentSubscriptionResponse,
    SubscriptionCreate,
    SubscriptionResponse,
    UpgradeRequest,
    UsageCheckRequest,
    UsageCheckResponse,
    UsageMetricResponse,
    UsageResponse,
)
from billing_core.services.directory import DirectoryClient, get_directory_client
from billing_core.services.gateway import StripeGateway, get_gateway
from billing_core.services.subscription_service import SubscriptionService
from billing_core.services.usage_service import UsageService


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def get_subscription_service(
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    directory: DirectoryClient = Depends(get_directory_client),
) -> SubscriptionService:
    return SubscriptionService(db, gateway, directory)


@router.post(
    "",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Subscribe to a plan",
)
async def create_subscription(
    data: SubscriptionCreate,
    principal: Principal = Depends(require_verified_email),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    """
    Subscribe the caller to a plan.

    Free plans are active immediately. Paid plans start incomplete and
    become active when the gateway reports the first payment.

    Raises:
        InvalidPlanError (400): Unknown/inactive plan or no gateway price
        GatewayError (502): Gateway call failed
    """
    subscription = await service.create_subscription(principal, data.plan_id)
    return SubscriptionResponse.model_validate(subscription)


@router.post(
    "/admin-assign",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Assign a plan to a user (admin)",
)
async def admin_assign(
    data: AdminAssignRequest,
    admin: Principal = Depends(require_admin),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    """
    Replace the user's access-granting subscriptions with an assigned one.

    WHY: Support and sales grant plans without payment; previous rows are
    kept as 'replaced' for history.
    """
    subscription = await service.admin_assign(data.user_id, data.plan_id, data.duration_days, admin)
    return SubscriptionResponse.model_validate(subscription)


@router.get(
    "/me",
    response_model=CurrentSubscriptionResponse,
    summary="Current subscription",
)
async def get_my_subscription(
    principal: Principal = Depends(get_current_principal),
    service: SubscriptionService = Depends(get_subscription_service),
) -> CurrentSubscriptionResponse:
    subscription = await service.get_current_subscription(principal.user_id)
    return CurrentSubscriptionResponse(
        subscription=SubscriptionResponse.model_validate(subscription) if subscription else None,
        has_subscription=subscription is not None,
    )


@router.post(
    "/upgrade",
    response_model=SubscriptionResponse,
    summary="Change plan",
)
async def upgrade_subscription(
    data: UpgradeRequest,
    principal: Principal = Depends(require_verified_email),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    subscription = await service.upgrade(principal, data.new_plan_id, data.proration_behavior)
    return SubscriptionResponse.model_validate(subscription)


@router.post(
    "/{subscription_id}/cancel",
    response_model=SubscriptionResponse,
    summary="Cancel subscription",
)
async def cancel_subscription(
    subscription_id: uuid.UUID,
    data: CancelRequest = CancelRequest(),
    principal: Principal = Depends(get_current_principal),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    """
    Cancel at period end (default) or immediately.

    Raises:
        SubscriptionNotFoundError (404): Unknown subscription
        AccessDeniedError (403): Not the owner (and not an admin)
        InvalidStateTransitionError (400): Already cancelled or replaced
    """
    subscription = await service.cancel(subscription_id, principal, at_period_end=data.at_period_end)
    return SubscriptionResponse.model_validate(subscription)


# ============================================================================
# Usage
# ============================================================================


@router.get(
    "/usage",
    response_model=UsageResponse,
    summary="Usage counters",
)
async def get_usage(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> UsageResponse:
    metrics = await UsageService(db).get_usage_metrics(principal.user_id)
    return UsageResponse(metrics=[UsageMetricResponse.model_validate(metric) for metric in metrics])


@router.post(
    "/usage/check",
    response_model=UsageCheckResponse,
    summary="Check a usage limit",
)
async def check_usage(
    data: UsageCheckRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> UsageCheckResponse:
    check = await UsageService(db).check_usage_limit(principal.user_id, data.metric_type, data.increment)
    return UsageCheckResponse.model_validate(check)

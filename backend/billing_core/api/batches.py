"""
Bulk license API endpoints.

WHAT: REST API for license batches, their seats and group membership.

Endpoints:
1. POST /batches - Buy N licenses of a plan
2. GET /batches - Caller's batches
3. GET /batches/{id} - Batch detail (purchaser or admin)
4. GET /batches/{id}/licenses - Seats of a batch
5. POST /batches/{id}/assign - Give one seat to a user
6. PATCH /batches/{id}/quantity - Grow or shrink
7. DELETE /batches/{id} - Cancel upstream and delete
8. POST /licenses/{id}/revoke - Take a seat back
9. POST /groups/{id}/members - Add a group member (auto-license hook)
"""

import uuid

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.core.auth import Principal
from billing_core.core.deps import get_current_principal, require_verified_email
from billing_core.db.session import get_db
from billing_core.models.subscription import SubscriptionStatus
from billing_core.schemas.license import (
    AssignLicenseRequest,
    BatchCreate,
    BatchListResponse,
    BatchResponse,
    GroupMemberAddResponse,
    GroupMemberCreate,
    GroupMemberResponse,
    LicenseListResponse,
    QuantityUpdate,
)
from billing_core.schemas.subscription import SubscriptionResponse
from billing_core.services.directory import DirectoryClient, get_directory_client
from billing_core.services.gateway import StripeGateway, get_gateway
from billing_core.services.group_service import GroupService
from billing_core.services.license_service import LicenseService


router = APIRouter(prefix="/batches", tags=["licenses"])
licenses_router = APIRouter(prefix="/licenses", tags=["licenses"])
groups_router = APIRouter(prefix="/groups", tags=["groups"])


def get_license_service(
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    directory: DirectoryClient = Depends(get_directory_client),
) -> LicenseService:
    return LicenseService(db, gateway, directory)


# ============================================================================
# Batch Endpoints
# ============================================================================


@router.post(
    "",
    response_model=BatchResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Buy licenses",
)
async def create_batch(
    data: BatchCreate,
    principal: Principal = Depends(require_verified_email),
    service: LicenseService = Depends(get_license_service),
) -> BatchResponse:
    """
    Buy `quantity` licenses of a plan as one upstream subscription.

    Raises:
        InvalidPlanError (400): Unknown/inactive plan or no gateway price
        GroupNotFoundError (404) / AccessDeniedError (403): Invalid group link
        GatewayError (502): Gateway call failed
    """
    batch = await service.create_batch(principal, data.plan_id, data.quantity, data.group_id)
    return BatchResponse.model_validate(batch)


@router.get(
    "",
    response_model=BatchListResponse,
    summary="List my batches",
)
async def list_batches(
    principal: Principal = Depends(get_current_principal),
    service: LicenseService = Depends(get_license_service),
) -> BatchListResponse:
    batches = await service.get_batches_by_purchaser(principal)
    return BatchListResponse(
        batches=[BatchResponse.model_validate(batch) for batch in batches],
        total=len(batches),
    )


@router.get(
    "/{batch_id}",
    response_model=BatchResponse,
    summary="Get batch",
)
async def get_batch(
    batch_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    service: LicenseService = Depends(get_license_service),
) -> BatchResponse:
    batch = await service.get_batch(batch_id, principal)
    return BatchResponse.model_validate(batch)


@router.get(
    "/{batch_id}/licenses",
    response_model=LicenseListResponse,
    summary="List licenses of a batch",
)
async def list_batch_licenses(
    batch_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    service: LicenseService = Depends(get_license_service),
) -> LicenseListResponse:
    seats = await service.get_batch_licenses(batch_id, principal)
    return LicenseListResponse(
        licenses=[SubscriptionResponse.model_validate(seat) for seat in seats],
        total=len(seats),
        available=sum(1 for seat in seats if seat.status == SubscriptionStatus.UNASSIGNED),
    )


@router.post(
    "/{batch_id}/assign",
    response_model=SubscriptionResponse,
    summary="Assign a license",
)
async def assign_license(
    batch_id: uuid.UUID,
    data: AssignLicenseRequest,
    principal: Principal = Depends(get_current_principal),
    service: LicenseService = Depends(get_license_service),
) -> SubscriptionResponse:
    """
    Raises:
        NoAvailableLicensesError (409): Every seat is taken
        ConflictError (409): The user already holds a seat in this batch
    """
    seat = await service.assign_license(batch_id, principal, data.user_id)
    return SubscriptionResponse.model_validate(seat)


@router.patch(
    "/{batch_id}/quantity",
    response_model=BatchResponse,
    summary="Change batch quantity",
)
async def update_batch_quantity(
    batch_id: uuid.UUID,
    data: QuantityUpdate,
    principal: Principal = Depends(get_current_principal),
    service: LicenseService = Depends(get_license_service),
) -> BatchResponse:
    """
    Raises:
        ValidationError (400): quantity < 1
        QuantityBelowAssignedError (409): Would drop assigned seats
    """
    batch = await service.update_batch_quantity(batch_id, principal, data.quantity)
    return BatchResponse.model_validate(batch)


@router.delete(
    "/{batch_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete batch",
)
async def delete_batch(
    batch_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    service: LicenseService = Depends(get_license_service),
) -> Response:
    await service.permanently_delete_batch(batch_id, principal)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# License Endpoints
# ============================================================================


@licenses_router.post(
    "/{license_id}/revoke",
    response_model=SubscriptionResponse,
    summary="Revoke a license",
)
async def revoke_license(
    license_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    service: LicenseService = Depends(get_license_service),
) -> SubscriptionResponse:
    seat = await service.revoke_license(license_id, principal)
    return SubscriptionResponse.model_validate(seat)


# ============================================================================
# Group Endpoints
# ============================================================================


@groups_router.post(
    "/{group_id}/members",
    response_model=GroupMemberAddResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add group member",
    description="Adds a member; plain members receive a license from a linked batch when one is free.",
)
async def add_group_member(
    group_id: uuid.UUID,
    data: GroupMemberCreate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    directory: DirectoryClient = Depends(get_directory_client),
) -> GroupMemberAddResponse:
    member, seat = await GroupService(db, gateway, directory).add_member(
        group_id, principal, data.user_id, data.role
    )
    return GroupMemberAddResponse(
        member=GroupMemberResponse.model_validate(member),
        license=SubscriptionResponse.model_validate(seat) if seat else None,
    )

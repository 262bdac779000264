"""
Bulk license service.

WHAT: Business logic for license batches and the seats they own.

WHY: A purchaser buys N seats of a plan in one upstream subscription and
hands them out to other users. The counters on the batch must always
match its seats:
- count(seats in batch) == total_quantity
- count(seats assigned) == assigned_quantity

HOW:
- Every counter change locks the batch row first, then its seats, so
  concurrent assignments and quantity changes serialize on the batch
- Creation inserts the batch skeleton, calls the gateway, then creates
  the seats; a local failure after the gateway call cancels upstream
- Seats are Subscription rows with batch_id set; a free seat has
  user_id NULL and status unassigned
"""

import logging
import uuid
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.core.auth import Principal
from billing_core.core.exceptions import (
    AccessDeniedError,
    AppException,
    BatchNotFoundError,
    ConflictError,
    DirectoryUnavailableError,
    GatewayError,
    GroupNotFoundError,
    InvalidPlanError,
    InvalidStateTransitionError,
    LicenseNotFoundError,
    NoAvailableLicensesError,
    QuantityBelowAssignedError,
    ResourceNotFoundError,
    ValidationError,
)
from billing_core.dao.group import GroupDAO, GroupMemberDAO
from billing_core.dao.license_batch import LicenseBatchDAO
from billing_core.dao.plan import PlanDAO
from billing_core.dao.subscription import SubscriptionDAO
from billing_core.models.audit_log import AuditEventType
from billing_core.models.base import add_months, utcnow
from billing_core.models.group import Group, GroupRole
from billing_core.models.license_batch import LicenseBatch, LicenseBatchStatus
from billing_core.models.plan import Plan
from billing_core.models.subscription import (
    ASSIGNED_LICENSE_STATUSES,
    Subscription,
    SubscriptionStatus,
    SubscriptionType,
)
from billing_core.services.audit import AuditService
from billing_core.services.directory import DirectoryClient
from billing_core.services.gateway import StripeGateway
from billing_core.services.pricing_service import PricingService
from billing_core.services.role_sync import RoleSync
from billing_core.services.usage_service import UsageService

logger = logging.getLogger(__name__)


def new_license_seats(batch: LicenseBatch, count: int) -> List[Subscription]:
    """Unassigned seats for a batch (not yet added to a session)."""
    return [
        Subscription(
            batch_id=batch.id,
            plan_id=batch.plan_id,
            purchaser_user_id=batch.purchaser_user_id,
            subscription_type=SubscriptionType.ASSIGNED,
            status=SubscriptionStatus.UNASSIGNED,
            current_period_start=batch.current_period_start,
            current_period_end=batch.current_period_end,
        )
        for _ in range(count)
    ]


class LicenseService:
    """
    Service for bulk license batches.

    Example:
        service = LicenseService(db, gateway, directory)
        batch = await service.create_batch(principal, plan_id, quantity=10)
        seat = await service.assign_license(batch.id, principal, "user-42")
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: StripeGateway,
        directory: DirectoryClient,
    ):
        self.session = session
        self.gateway = gateway
        self.directory = directory
        self.batch_dao = LicenseBatchDAO(session)
        self.subscription_dao = SubscriptionDAO(session)
        self.plan_dao = PlanDAO(session)
        self.group_dao = GroupDAO(session)
        self.group_member_dao = GroupMemberDAO(session)
        self.usage = UsageService(session)
        self.roles = RoleSync(directory)
        self.audit = AuditService(session)
        self.pricing = PricingService()

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _get_batch(self, batch_id: uuid.UUID, lock: bool = False) -> LicenseBatch:
        batch = await (self.batch_dao.lock(batch_id) if lock else self.batch_dao.get_by_id(batch_id))
        if batch is None:
            raise BatchNotFoundError(batch_id=str(batch_id))
        return batch

    def _ensure_purchaser(self, batch: LicenseBatch, principal: Principal, allow_admin: bool = False) -> None:
        if batch.purchaser_user_id == principal.user_id:
            return
        if allow_admin and principal.is_admin:
            return
        raise AccessDeniedError(message="Only the purchaser can manage this batch", batch_id=str(batch.id))

    async def _ensure_group_manager(self, group_id: uuid.UUID, principal: Principal) -> Group:
        group = await self.group_dao.get_by_id(group_id)
        if group is None or not group.is_active:
            raise GroupNotFoundError(group_id=str(group_id))
        if group.owner_user_id == principal.user_id or principal.is_admin:
            return group
        member = await self.group_member_dao.get_membership(group_id, principal.user_id)
        if member and member.is_active and member.role in (GroupRole.OWNER, GroupRole.ADMIN):
            return group
        raise AccessDeniedError(message="Only the group owner or a group admin can link a batch")

    def _new_seats(self, batch: LicenseBatch, count: int) -> List[Subscription]:
        seats = new_license_seats(batch, count)
        self.session.add_all(seats)
        return seats

    async def _compensate(self, upstream_subscription_id: str) -> None:
        try:
            await self.gateway.cancel_subscription(upstream_subscription_id, cancel_at_period_end=False)
            logger.warning(f"Cancelled orphaned upstream batch subscription {upstream_subscription_id}")
        except GatewayError as e:
            logger.error(
                f"Compensation failed for upstream batch subscription {upstream_subscription_id}: {e.message}"
            )

    async def _enroll_in_group(self, batch: LicenseBatch, user_id: str) -> None:
        """
        Enroll a seat holder in the batch's group.

        NOTE: Failures are logged, never raised; the seat stays assigned.
        """
        if batch.group_id is None:
            return
        try:
            await self.group_member_dao.enroll(batch.group_id, user_id, GroupRole.MEMBER)
        except AppException as e:
            logger.warning(
                f"Could not enroll user {user_id} in group {batch.group_id}: {e.message}",
                extra={"batch_id": str(batch.id), "group_id": str(batch.group_id)},
            )

    async def _occupy_seat(
        self,
        batch: LicenseBatch,
        seat: Subscription,
        user_id: str,
        assigned_by: Optional[str],
    ) -> Subscription:
        """Give a locked free seat to a user and bump the batch counter."""
        seat.user_id = user_id
        seat.status = SubscriptionStatus.ACTIVE
        seat.subscription_type = SubscriptionType.ASSIGNED
        seat.assigned_by_user_id = assigned_by
        seat.current_period_start = batch.current_period_start
        seat.current_period_end = batch.current_period_end
        batch.assigned_quantity += 1
        await self.batch_dao.flush()

        plan = await self.plan_dao.get_by_id(batch.plan_id)
        await self.usage.initialize_metrics(user_id, seat.id, plan)
        await self.roles.grant(user_id, plan)
        return seat

    # =========================================================================
    # Create
    # =========================================================================

    async def create_batch(
        self,
        purchaser: Principal,
        plan_id: uuid.UUID,
        quantity: int,
        group_id: Optional[uuid.UUID] = None,
    ) -> LicenseBatch:
        """
        Buy `quantity` seats of a plan.

        HOW:
        1. Insert the batch skeleton and flush (its id goes into metadata)
        2. Create the upstream subscription with quantity N (paid plans)
        3. Store upstream ids and create N unassigned seats

        Raises:
            ValidationError: quantity < 1
            InvalidPlanError: Unknown/inactive plan or no gateway price
            GroupNotFoundError / AccessDeniedError: Invalid group link
            GatewayError: Gateway call failed (transaction rolls back)
        """
        try:
            if quantity < 1:
                raise ValidationError(message="quantity must be at least 1", quantity=quantity)

            plan = await self.plan_dao.get_active(plan_id)
            if plan is None:
                raise InvalidPlanError(message="Plan not found or inactive", plan_id=str(plan_id))
            if not plan.is_free and not plan.upstream_price_id:
                raise InvalidPlanError(message="Plan has no gateway price configured", plan_id=str(plan.id))

            if group_id is not None:
                await self._ensure_group_manager(group_id, purchaser)

            now = utcnow()
            batch = await self.batch_dao.create(
                purchaser_user_id=purchaser.user_id,
                plan_id=plan.id,
                group_id=group_id,
                total_quantity=quantity,
                assigned_quantity=0,
                status=LicenseBatchStatus.ACTIVE,
                current_period_start=now,
                current_period_end=add_months(now, 1),
            )

            if not plan.is_free:
                await self._attach_upstream(batch, plan, purchaser, quantity)

            self._new_seats(batch, quantity)
            await self.batch_dao.flush()
        except AppException as e:
            await self.audit.log_failure(
                AuditEventType.BULK_PURCHASE,
                "Create license batch",
                e,
                actor_id=purchaser.user_id,
                actor_email=purchaser.email,
                target_id=plan_id,
                target_type="plan",
                metadata={"quantity": quantity},
            )
            raise

        await self.audit.log(
            AuditEventType.BULK_PURCHASE,
            action=f"Purchased {quantity} licenses of {plan.name}",
            actor_id=purchaser.user_id,
            actor_email=purchaser.email,
            target_id=batch.id,
            target_type="license_batch",
            target_name=plan.name,
            amount=self.pricing.total_cost(plan, quantity),
            currency=plan.currency,
            metadata={"quantity": quantity, "group_id": str(group_id) if group_id else None},
        )
        logger.info(
            f"Created license batch {batch.id} ({quantity} x {plan.name}) for {purchaser.user_id}",
            extra={"batch_id": str(batch.id), "quantity": quantity},
        )
        return batch

    async def _attach_upstream(
        self,
        batch: LicenseBatch,
        plan: Plan,
        purchaser: Principal,
        quantity: int,
    ) -> None:
        customer_id = await self.gateway.create_customer(
            purchaser.user_id, purchaser.email, purchaser.name
        )
        upstream = await self.gateway.create_subscription(
            price_id=plan.upstream_price_id,
            customer_id=customer_id,
            quantity=quantity,
            metadata={
                "bulk_purchase": "true",
                "batch_id": str(batch.id),
                "user_id": purchaser.user_id,
                "plan_id": str(plan.id),
                "quantity": str(quantity),
                "group_id": str(batch.group_id) if batch.group_id else None,
            },
            trial_days=plan.trial_days or 0,
            idempotency_key=f"batch-{batch.id}",
        )

        try:
            batch.upstream_subscription_id = upstream.id
            batch.upstream_subscription_item_id = upstream.item_id
            batch.upstream_customer_id = customer_id
            batch.last_event_at = upstream.created
            if upstream.current_period_start and upstream.current_period_end:
                batch.current_period_start = upstream.current_period_start
                batch.current_period_end = upstream.current_period_end
            await self.batch_dao.flush()
        except AppException:
            await self._compensate(upstream.id)
            raise

    # =========================================================================
    # Assign / revoke
    # =========================================================================

    async def assign_license(
        self,
        batch_id: uuid.UUID,
        requester: Principal,
        target_user_id: str,
    ) -> Subscription:
        """
        Give one free seat of the batch to a user.

        Raises:
            BatchNotFoundError / AccessDeniedError: Unknown batch or not purchaser
            ResourceNotFoundError: Directory does not know the user
            ConflictError: User already holds a seat in this batch
            NoAvailableLicensesError: Every seat is taken
        """
        try:
            batch = await self._get_batch(batch_id)
            self._ensure_purchaser(batch, requester)
            if not batch.is_active:
                raise InvalidStateTransitionError(message="Batch is not active", status=batch.status.value)

            # WHY: The directory call happens before any lock is taken
            try:
                user = await self.directory.get_user(target_user_id)
                if user is None:
                    raise ResourceNotFoundError(message="User not found", user_id=target_user_id)
            except DirectoryUnavailableError as e:
                logger.warning(
                    f"Directory unavailable, assigning license to unverified user {target_user_id}: {e.message}",
                    extra={"batch_id": str(batch_id), "user_id": target_user_id},
                )

            batch = await self._get_batch(batch_id, lock=True)
            if await self.subscription_dao.get_license_for_user(batch.id, target_user_id):
                raise ConflictError(
                    message="User already holds a license in this batch",
                    user_id=target_user_id,
                )

            seat = await self.subscription_dao.lock_first_unassigned_license(batch.id)
            if seat is None:
                raise NoAvailableLicensesError(batch_id=str(batch.id))

            await self._occupy_seat(batch, seat, target_user_id, requester.user_id)
        except AppException as e:
            await self.audit.log_failure(
                AuditEventType.LICENSE_ASSIGNED,
                "Assign license",
                e,
                actor_id=requester.user_id,
                actor_email=requester.email,
                target_id=target_user_id,
                target_type="user",
                metadata={"batch_id": str(batch_id)},
            )
            raise

        await self._enroll_in_group(batch, target_user_id)

        await self.audit.log(
            AuditEventType.LICENSE_ASSIGNED,
            action="Assigned license",
            actor_id=requester.user_id,
            actor_email=requester.email,
            target_id=seat.id,
            target_type="license",
            metadata={"batch_id": str(batch.id), "user_id": target_user_id},
        )
        logger.info(
            f"Assigned license {seat.id} of batch {batch.id} to {target_user_id}",
            extra={"batch_id": str(batch.id), "assigned": batch.assigned_quantity},
        )
        return seat

    async def revoke_license(self, license_id: uuid.UUID, requester: Principal) -> Subscription:
        """
        Take a seat back from its holder (group membership is kept).

        Raises:
            LicenseNotFoundError: Unknown seat
            AccessDeniedError: Not the purchaser
            InvalidStateTransitionError: Seat is not assigned
        """
        try:
            seat = await self.subscription_dao.get_by_id(license_id)
            if seat is None or not seat.is_license:
                raise LicenseNotFoundError(license_id=str(license_id))

            batch = await self._get_batch(seat.batch_id, lock=True)
            self._ensure_purchaser(batch, requester)

            seat = await self.subscription_dao.get_by_id_for_update(license_id)
            if seat.status not in ASSIGNED_LICENSE_STATUSES:
                raise InvalidStateTransitionError(message="License is not assigned")

            previous_user = seat.user_id
            seat.user_id = None
            seat.assigned_by_user_id = None
            seat.status = SubscriptionStatus.UNASSIGNED
            batch.assigned_quantity -= 1
            await self.batch_dao.flush()
        except AppException as e:
            await self.audit.log_failure(
                AuditEventType.LICENSE_REVOKED,
                "Revoke license",
                e,
                actor_id=requester.user_id,
                actor_email=requester.email,
                target_id=license_id,
                target_type="license",
            )
            raise

        plan = await self.plan_dao.get_by_id(batch.plan_id)
        await self.roles.revoke(previous_user, plan)

        await self.audit.log(
            AuditEventType.LICENSE_REVOKED,
            action="Revoked license",
            actor_id=requester.user_id,
            actor_email=requester.email,
            target_id=seat.id,
            target_type="license",
            metadata={"batch_id": str(batch.id), "user_id": previous_user},
        )
        return seat

    # =========================================================================
    # Quantity
    # =========================================================================

    async def update_batch_quantity(
        self,
        batch_id: uuid.UUID,
        requester: Principal,
        new_quantity: int,
    ) -> LicenseBatch:
        """
        Grow or shrink a batch.

        HOW: The gateway quantity changes first; free seats are then added
        or removed (newest free seats first) to match.

        Raises:
            ValidationError: new_quantity < 1
            QuantityBelowAssignedError: Would drop assigned seats
        """
        try:
            if new_quantity < 1:
                raise ValidationError(message="quantity must be at least 1", quantity=new_quantity)

            batch = await self._get_batch(batch_id, lock=True)
            self._ensure_purchaser(batch, requester)
            if not batch.is_active:
                raise InvalidStateTransitionError(message="Batch is not active", status=batch.status.value)
            if new_quantity < batch.assigned_quantity:
                raise QuantityBelowAssignedError(
                    requested=new_quantity,
                    assigned=batch.assigned_quantity,
                )

            old_quantity = batch.total_quantity
            if new_quantity == old_quantity:
                return batch

            if batch.upstream_subscription_id:
                await self.gateway.update_subscription_quantity(
                    batch.upstream_subscription_id,
                    new_quantity,
                    item_id=batch.upstream_subscription_item_id,
                )

            if new_quantity > old_quantity:
                self._new_seats(batch, new_quantity - old_quantity)
            else:
                surplus = await self.subscription_dao.lock_unassigned_licenses(
                    batch.id, old_quantity - new_quantity
                )
                await self.subscription_dao.delete_by_ids([seat.id for seat in surplus])

            batch.total_quantity = new_quantity
            await self.batch_dao.flush()
        except AppException as e:
            await self.audit.log_failure(
                AuditEventType.BULK_QUANTITY_UPDATED,
                "Update batch quantity",
                e,
                actor_id=requester.user_id,
                actor_email=requester.email,
                target_id=batch_id,
                target_type="license_batch",
                metadata={"requested": new_quantity},
            )
            raise

        await self.audit.log(
            AuditEventType.BULK_QUANTITY_UPDATED,
            action=f"Changed batch quantity from {old_quantity} to {new_quantity}",
            actor_id=requester.user_id,
            actor_email=requester.email,
            target_id=batch.id,
            target_type="license_batch",
            metadata={"old_quantity": old_quantity, "new_quantity": new_quantity},
        )
        return batch

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_batch(self, batch_id: uuid.UUID, principal: Principal) -> LicenseBatch:
        batch = await self._get_batch(batch_id)
        self._ensure_purchaser(batch, principal, allow_admin=True)
        return batch

    async def get_batches_by_purchaser(self, principal: Principal) -> List[LicenseBatch]:
        return await self.batch_dao.list_by_purchaser(principal.user_id)

    async def get_batch_licenses(self, batch_id: uuid.UUID, principal: Principal) -> List[Subscription]:
        batch = await self.get_batch(batch_id, principal)
        return await self.subscription_dao.list_licenses(batch.id)

    async def get_available_licenses(self, batch_id: uuid.UUID, principal: Principal) -> List[Subscription]:
        batch = await self.get_batch(batch_id, principal)
        return await self.subscription_dao.list_licenses(batch.id, SubscriptionStatus.UNASSIGNED)

    # =========================================================================
    # Delete
    # =========================================================================

    async def permanently_delete_batch(self, batch_id: uuid.UUID, requester: Principal) -> None:
        """
        Cancel the batch upstream (immediately) and hard-delete it with
        its seats.

        Raises:
            GatewayError: Upstream cancellation failed (nothing deleted)
        """
        try:
            batch = await self._get_batch(batch_id, lock=True)
            self._ensure_purchaser(batch, requester)

            if batch.upstream_subscription_id and batch.status == LicenseBatchStatus.ACTIVE:
                await self.gateway.cancel_subscription(
                    batch.upstream_subscription_id, cancel_at_period_end=False
                )

            holders = [
                seat.user_id
                for seat in await self.subscription_dao.list_licenses(batch.id)
                if seat.user_id and seat.status in ASSIGNED_LICENSE_STATUSES
            ]
            deleted_seats = await self.subscription_dao.delete_licenses(batch.id)
            await self.batch_dao.delete(batch.id)
        except AppException as e:
            await self.audit.log_failure(
                AuditEventType.BULK_DELETED,
                "Delete license batch",
                e,
                actor_id=requester.user_id,
                actor_email=requester.email,
                target_id=batch_id,
                target_type="license_batch",
            )
            raise

        plan = await self.plan_dao.get_by_id(batch.plan_id)
        for user_id in holders:
            await self.roles.revoke(user_id, plan)

        await self.audit.log(
            AuditEventType.BULK_DELETED,
            action=f"Deleted license batch with {deleted_seats} licenses",
            actor_id=requester.user_id,
            actor_email=requester.email,
            target_id=batch_id,
            target_type="license_batch",
            metadata={"revoked_users": holders},
        )

    # =========================================================================
    # Group hook
    # =========================================================================

    async def auto_assign_for_group_member(
        self, group_id: uuid.UUID, user_id: str
    ) -> Optional[Subscription]:
        """
        Give a new group member a free seat from a batch linked to the group.

        Returns:
            The seat, or None when no linked batch has a free seat (no-op)
        """
        for candidate in await self.batch_dao.list_active_for_group(group_id):
            batch = await self._get_batch(candidate.id, lock=True)
            existing = await self.subscription_dao.get_license_for_user(batch.id, user_id)
            if existing:
                return existing

            seat = await self.subscription_dao.lock_first_unassigned_license(batch.id)
            if seat is None:
                continue

            await self._occupy_seat(batch, seat, user_id, batch.purchaser_user_id)
            await self.audit.log(
                AuditEventType.LICENSE_ASSIGNED,
                action="Assigned license on group join",
                actor_id=batch.purchaser_user_id,
                target_id=seat.id,
                target_type="license",
                metadata={"batch_id": str(batch.id), "user_id": user_id, "group_id": str(group_id)},
            )
            logger.info(
                f"Auto-assigned license {seat.id} of batch {batch.id} to group member {user_id}"
            )
            return seat

        return None

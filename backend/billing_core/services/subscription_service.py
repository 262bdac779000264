"""
Subscription service (personal and admin-assigned subscriptions).

WHAT: Business logic for the lifecycle of a user's own subscription.

WHY: Subscriptions gate access to every paid capability. This service:
1. Activates free plans locally and starts paid plans at the gateway
2. Lets administrators assign a plan, replacing what the user had
3. Upgrades and cancels, keeping the gateway and local state aligned
4. Keeps usage limits and directory roles in step with the plan

HOW:
- Paid subscriptions start incomplete; invoice.payment_succeeded
  activates them through the webhook reconciler
- If the local write fails after the gateway created a subscription,
  the upstream subscription is cancelled again (compensation)
- Admin replacement locks the user's current rows first so concurrent
  assignments for one user are serialized
"""

import logging
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.core.auth import Principal
from billing_core.core.config import settings
from billing_core.core.exceptions import (
    AccessDeniedError,
    AppException,
    GatewayError,
    InvalidPlanError,
    InvalidStateTransitionError,
    SubscriptionNotFoundError,
    ValidationError,
)
from billing_core.dao.plan import PlanDAO
from billing_core.dao.subscription import SubscriptionDAO
from billing_core.models.audit_log import AuditEventType
from billing_core.models.base import add_months, utcnow
from billing_core.models.plan import Plan
from billing_core.models.subscription import (
    Subscription,
    SubscriptionStatus,
    SubscriptionType,
)
from billing_core.services.audit import AuditService
from billing_core.services.directory import DirectoryClient
from billing_core.services.gateway import StripeGateway, to_local_status
from billing_core.services.role_sync import RoleSync
from billing_core.services.usage_service import UsageService

logger = logging.getLogger(__name__)


class SubscriptionService:
    """
    Service for personal subscription operations.

    Example:
        service = SubscriptionService(db, gateway, directory)
        subscription = await service.create_subscription(principal, plan_id)
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: StripeGateway,
        directory: DirectoryClient,
    ):
        self.session = session
        self.gateway = gateway
        self.subscription_dao = SubscriptionDAO(session)
        self.plan_dao = PlanDAO(session)
        self.usage = UsageService(session)
        self.roles = RoleSync(directory)
        self.audit = AuditService(session)

    async def _get_active_plan(self, plan_id: uuid.UUID) -> Plan:
        plan = await self.plan_dao.get_active(plan_id)
        if not plan:
            raise InvalidPlanError(message="Plan not found or inactive", plan_id=str(plan_id))
        return plan

    async def _compensate(self, upstream_subscription_id: str) -> None:
        """
        Cancel an upstream subscription whose local row could not be saved.

        WHY: Otherwise the customer would be billed for a subscription we
        have no record of. Failure here is logged, never raised.
        """
        try:
            await self.gateway.cancel_subscription(upstream_subscription_id, cancel_at_period_end=False)
            logger.warning(
                f"Cancelled orphaned upstream subscription {upstream_subscription_id}",
                extra={"upstream_subscription_id": upstream_subscription_id},
            )
        except GatewayError as e:
            logger.error(
                f"Compensation failed for upstream subscription {upstream_subscription_id}: {e.message}",
                extra={"upstream_subscription_id": upstream_subscription_id},
            )

    # =========================================================================
    # Create
    # =========================================================================

    async def create_subscription(self, principal: Principal, plan_id: uuid.UUID) -> Subscription:
        """
        Subscribe the principal to a plan.

        Free plans: active immediately, no gateway ids, one-month period.
        Paid plans: gateway subscription created incomplete; the local row
        mirrors it and waits for payment.

        Raises:
            InvalidPlanError: Unknown/inactive plan or paid plan without price
            GatewayError: Gateway call failed (nothing persisted)
            DuplicateUpstreamIDError: Upstream id already linked locally
        """
        try:
            plan = await self._get_active_plan(plan_id)
            if plan.is_free:
                subscription = await self._create_free(principal.user_id, plan)
            else:
                subscription = await self._create_paid(principal, plan)
        except AppException as e:
            await self.audit.log_failure(
                AuditEventType.SUBSCRIPTION_CREATED,
                "Create subscription",
                e,
                actor_id=principal.user_id,
                actor_email=principal.email,
                target_id=plan_id,
                target_type="plan",
            )
            raise

        await self.audit.log(
            AuditEventType.SUBSCRIPTION_CREATED,
            action=f"Subscribed to {plan.name}",
            actor_id=principal.user_id,
            actor_email=principal.email,
            target_id=subscription.id,
            target_type="subscription",
            target_name=plan.name,
            amount=plan.unit_price or None,
            currency=plan.currency if plan.unit_price else None,
            metadata={"plan_id": str(plan.id), "status": subscription.status.value},
        )
        return subscription

    async def _create_free(self, user_id: str, plan: Plan) -> Subscription:
        now = utcnow()
        subscription = await self.subscription_dao.create(
            user_id=user_id,
            plan_id=plan.id,
            subscription_type=SubscriptionType.PERSONAL,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=now,
            current_period_end=add_months(now, 1),
        )
        await self.usage.initialize_metrics(user_id, subscription.id, plan)
        await self.roles.grant(user_id, plan)

        logger.info(
            f"Activated free subscription {subscription.id} for user {user_id}",
            extra={"subscription_id": str(subscription.id), "plan_id": str(plan.id)},
        )
        return subscription

    async def _create_paid(self, principal: Principal, plan: Plan) -> Subscription:
        if not plan.upstream_price_id:
            raise InvalidPlanError(
                message="Plan has no gateway price configured",
                plan_id=str(plan.id),
            )

        subscription_id = uuid.uuid4()
        customer_id = await self.gateway.create_customer(
            principal.user_id, principal.email, principal.name
        )
        upstream = await self.gateway.create_subscription(
            price_id=plan.upstream_price_id,
            customer_id=customer_id,
            quantity=1,
            metadata={
                "user_id": principal.user_id,
                "plan_id": str(plan.id),
                "subscription_plan_id": str(plan.id),
                "subscription_id": str(subscription_id),
            },
            trial_days=plan.trial_days or 0,
            idempotency_key=f"subscription-{subscription_id}",
        )

        try:
            subscription = await self.subscription_dao.create(
                id=subscription_id,
                user_id=principal.user_id,
                plan_id=plan.id,
                subscription_type=SubscriptionType.PERSONAL,
                status=to_local_status(upstream.status),
                current_period_start=upstream.current_period_start,
                current_period_end=upstream.current_period_end,
                trial_end=upstream.trial_end,
                upstream_subscription_id=upstream.id,
                upstream_customer_id=customer_id,
                last_event_at=upstream.created,
            )
        except AppException:
            await self._compensate(upstream.id)
            raise

        logger.info(
            f"Created paid subscription {subscription.id} (upstream {upstream.id})",
            extra={"subscription_id": str(subscription.id), "upstream_subscription_id": upstream.id},
        )
        return subscription

    # =========================================================================
    # Admin assignment
    # =========================================================================

    async def admin_assign(
        self,
        user_id: str,
        plan_id: uuid.UUID,
        duration_days: int,
        admin: Principal,
    ) -> Subscription:
        """
        Assign a plan to a user without payment.

        HOW:
        1. Lock the user's current personal subscriptions
        2. Mark each replaced (terminal) with cancelled_at = now
        3. Create the assigned subscription for duration_days

        Args:
            duration_days: 0 means DEFAULT_ADMIN_ASSIGN_DAYS

        Raises:
            ValidationError: Negative duration
            InvalidPlanError: Unknown or inactive plan
        """
        try:
            if duration_days < 0:
                raise ValidationError(
                    message="duration_days must not be negative",
                    duration_days=duration_days,
                )
            if duration_days == 0:
                duration_days = settings.DEFAULT_ADMIN_ASSIGN_DAYS

            plan = await self._get_active_plan(plan_id)
            now = utcnow()

            previous_plan: Optional[Plan] = None
            replaced = await self.subscription_dao.lock_entitled_for_user(user_id)
            for old in replaced:
                old.status = SubscriptionStatus.REPLACED
                old.cancelled_at = now
                if old.plan_id and previous_plan is None:
                    previous_plan = await self.plan_dao.get_by_id(old.plan_id)
            if replaced:
                await self.subscription_dao.flush()

            subscription = await self.subscription_dao.create(
                user_id=user_id,
                plan_id=plan.id,
                assigned_by_user_id=admin.user_id,
                subscription_type=SubscriptionType.ASSIGNED,
                status=SubscriptionStatus.ACTIVE,
                current_period_start=now,
                current_period_end=now + timedelta(days=duration_days),
            )
        except AppException as e:
            await self.audit.log_failure(
                AuditEventType.SUBSCRIPTION_ASSIGNED,
                "Admin assign subscription",
                e,
                actor_id=admin.user_id,
                actor_email=admin.email,
                target_id=user_id,
                target_type="user",
            )
            raise

        await self.usage.initialize_metrics(user_id, subscription.id, plan)
        await self.roles.swap(user_id, previous_plan, plan)

        for old in replaced:
            await self.audit.log(
                AuditEventType.SUBSCRIPTION_REPLACED,
                action="Subscription replaced by admin assignment",
                actor_id=admin.user_id,
                actor_email=admin.email,
                target_id=old.id,
                target_type="subscription",
                metadata={"replaced_by": str(subscription.id), "user_id": user_id},
            )
        await self.audit.log(
            AuditEventType.SUBSCRIPTION_ASSIGNED,
            action=f"Assigned {plan.name} for {duration_days} days",
            actor_id=admin.user_id,
            actor_email=admin.email,
            target_id=subscription.id,
            target_type="subscription",
            target_name=plan.name,
            metadata={"user_id": user_id, "duration_days": duration_days},
        )
        logger.info(
            f"Admin {admin.user_id} assigned plan {plan.id} to user {user_id} "
            f"({len(replaced)} replaced)",
            extra={"subscription_id": str(subscription.id)},
        )
        return subscription

    # =========================================================================
    # Upgrade
    # =========================================================================

    async def upgrade(
        self,
        principal: Principal,
        new_plan_id: uuid.UUID,
        proration_behavior: str = "create_prorations",
    ) -> Subscription:
        """
        Move the principal's active subscription to another plan.

        Raises:
            SubscriptionNotFoundError: No active personal subscription
            InvalidPlanError: Unknown plan, or no gateway price for a
                gateway-backed subscription
        """
        user_id = principal.user_id
        try:
            subscription = await self.subscription_dao.get_current_for_user(user_id)
            if subscription is None or subscription.is_license:
                raise SubscriptionNotFoundError(message="No active subscription to upgrade")

            new_plan = await self._get_active_plan(new_plan_id)
            if subscription.plan_id == new_plan.id:
                raise ValidationError(message="Subscription is already on this plan")
            old_plan = await self.plan_dao.get_by_id(subscription.plan_id)

            if subscription.is_gateway_backed:
                if not new_plan.upstream_price_id:
                    raise InvalidPlanError(
                        message="New plan has no gateway price configured",
                        plan_id=str(new_plan.id),
                    )
                await self.gateway.update_subscription_price(
                    subscription.upstream_subscription_id,
                    new_plan.upstream_price_id,
                    proration_behavior=proration_behavior,
                )

            await self.subscription_dao.update(subscription, plan_id=new_plan.id)
        except AppException as e:
            await self.audit.log_failure(
                AuditEventType.SUBSCRIPTION_UPGRADED,
                "Upgrade subscription",
                e,
                actor_id=user_id,
                actor_email=principal.email,
                target_id=new_plan_id,
                target_type="plan",
            )
            raise

        await self.usage.initialize_metrics(user_id, subscription.id, new_plan)
        await self.roles.swap(user_id, old_plan, new_plan)

        await self.audit.log(
            AuditEventType.SUBSCRIPTION_UPGRADED,
            action=f"Changed plan to {new_plan.name}",
            actor_id=user_id,
            actor_email=principal.email,
            target_id=subscription.id,
            target_type="subscription",
            target_name=new_plan.name,
            metadata={
                "old_plan_id": str(old_plan.id) if old_plan else None,
                "new_plan_id": str(new_plan.id),
                "proration_behavior": proration_behavior,
            },
        )
        return subscription

    # =========================================================================
    # Cancel
    # =========================================================================

    async def cancel(
        self,
        subscription_id: uuid.UUID,
        principal: Principal,
        at_period_end: bool = True,
    ) -> Subscription:
        """
        Cancel a subscription (owner or admin).

        Args:
            at_period_end: Keep access until the period ends

        Raises:
            SubscriptionNotFoundError: Unknown subscription
            AccessDeniedError: Caller is neither owner nor admin
            InvalidStateTransitionError: Already cancelled or replaced
        """
        try:
            subscription = await self.subscription_dao.get_by_id_for_update(subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundError(subscription_id=str(subscription_id))
            if subscription.user_id != principal.user_id and not principal.is_admin:
                raise AccessDeniedError(message="Only the owner or an administrator can cancel")
            if subscription.is_terminal:
                raise InvalidStateTransitionError(
                    message=f"Subscription is already {subscription.status.value}",
                    status=subscription.status.value,
                )
            if subscription.is_license:
                raise ValidationError(message="Licenses are revoked by their purchaser, not cancelled")

            if subscription.is_gateway_backed:
                await self.gateway.cancel_subscription(
                    subscription.upstream_subscription_id,
                    cancel_at_period_end=at_period_end,
                )

            now = utcnow()
            if at_period_end:
                await self.subscription_dao.update(subscription, cancel_at_period_end=True)
            else:
                await self.subscription_dao.update(
                    subscription,
                    status=SubscriptionStatus.CANCELLED,
                    cancelled_at=now,
                )
        except AppException as e:
            await self.audit.log_failure(
                AuditEventType.SUBSCRIPTION_CANCELED,
                "Cancel subscription",
                e,
                actor_id=principal.user_id,
                actor_email=principal.email,
                target_id=subscription_id,
                target_type="subscription",
            )
            raise

        if not at_period_end and subscription.plan_id:
            plan = await self.plan_dao.get_by_id(subscription.plan_id)
            await self.roles.revoke(subscription.user_id, plan)

        await self.audit.log(
            AuditEventType.SUBSCRIPTION_CANCELED,
            action="Cancelled subscription" + (" at period end" if at_period_end else ""),
            actor_id=principal.user_id,
            actor_email=principal.email,
            target_id=subscription.id,
            target_type="subscription",
            metadata={"at_period_end": at_period_end},
        )
        return subscription

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_current_subscription(self, user_id: str) -> Optional[Subscription]:
        return await self.subscription_dao.get_current_for_user(user_id)

"""
Organization subscription and entitlement service.

WHAT: Subscriptions held by organizations, and the features a user gets
through the organizations they belong to.

WHY: A user can belong to several organizations, each on its own plan.
Access checks need one answer per user, so entitlements are merged:
- features: union over every active organization plan
- numeric limits: the largest value wins, -1 (unlimited) beats all
- highest plan: max priority, ties go to the oldest subscription

HOW: One join (OrganizationSubscriptionDAO.list_entitlements_for_user)
loads (subscription, plan, organization, membership) rows in creation
order; everything else is computed in memory.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.core.auth import Principal
from billing_core.core.config import settings
from billing_core.core.exceptions import (
    AccessDeniedError,
    AppException,
    ConflictError,
    GatewayError,
    InvalidPlanError,
    NoOrganizationSubscriptionsError,
    OrganizationNotFoundError,
    ResourceNotFoundError,
    SubscriptionNotFoundError,
)
from billing_core.dao.organization import (
    OrganizationDAO,
    OrganizationMemberDAO,
    OrganizationSubscriptionDAO,
)
from billing_core.dao.plan import PlanDAO
from billing_core.models.audit_log import AuditEventType
from billing_core.models.base import utcnow
from billing_core.models.organization import (
    Organization,
    OrganizationMember,
    OrganizationRole,
    OrganizationSubscription,
)
from billing_core.models.plan import UNLIMITED, Plan
from billing_core.models.subscription import SubscriptionStatus
from billing_core.services.audit import AuditService
from billing_core.services.gateway import StripeGateway, to_local_status

logger = logging.getLogger(__name__)


# Limits merged across organizations
AGGREGATED_LIMITS = (
    "max_concurrent_terminals",
    "max_courses",
    "max_lab_sessions",
    "max_concurrent_users",
    "max_session_duration_minutes",
    "storage_gb",
)


def max_take(current: int, candidate: int) -> int:
    """Larger of two limits where -1 means unlimited."""
    if current == UNLIMITED or candidate == UNLIMITED:
        return UNLIMITED
    return max(current, candidate)


def plan_feature_payload(plan: Plan) -> Dict[str, Any]:
    """Feature and limit view of a plan."""
    return {
        "plan_id": plan.id,
        "plan_name": plan.name,
        "priority": plan.priority,
        "features": sorted(plan.features or []),
        "planned_features": sorted(plan.planned_features or []),
        "limits": plan.limits,
        "allowed_machine_sizes": list(plan.allowed_machine_sizes or []),
        "allowed_templates": list(plan.allowed_templates or []),
        "allowed_backends": list(plan.allowed_backends or []),
        "network_access_enabled": plan.network_access_enabled,
        "data_persistence_enabled": plan.data_persistence_enabled,
    }


@dataclass
class OrganizationEntitlement:
    """One organization contributing to a user's effective features."""

    organization_id: uuid.UUID
    organization_name: str
    plan_id: uuid.UUID
    plan_name: str
    is_owner: bool
    is_manager: bool


@dataclass
class EffectiveFeatures:
    """Merged entitlements of a user across organizations."""

    user_id: str
    highest_plan_id: uuid.UUID
    highest_plan_name: str
    all_features: List[str]
    limits: Dict[str, int]
    organizations: List[OrganizationEntitlement] = field(default_factory=list)


class OrganizationSubscriptionService:
    """
    Service for organization subscriptions and merged entitlements.

    Example:
        service = OrganizationSubscriptionService(db, gateway)
        effective = await service.get_user_effective_features("user-1")
        "advanced_labs" in effective.all_features
    """

    def __init__(self, session: AsyncSession, gateway: Optional[StripeGateway] = None):
        self.session = session
        self.gateway = gateway
        self.org_dao = OrganizationDAO(session)
        self.member_dao = OrganizationMemberDAO(session)
        self.org_subscription_dao = OrganizationSubscriptionDAO(session)
        self.plan_dao = PlanDAO(session)
        self.audit = AuditService(session)

    # =========================================================================
    # Access policy
    # =========================================================================

    async def ensure_org_access(
        self,
        organization_id: uuid.UUID,
        principal: Principal,
        require_manager: bool = False,
    ) -> Tuple[Organization, Optional[OrganizationMember]]:
        """
        Shared policy for organization-scoped operations.

        Admins always pass. Otherwise the principal must be an active
        member (owner or manager when require_manager is set).

        Raises:
            OrganizationNotFoundError: Unknown or inactive organization
            AccessDeniedError: Policy not satisfied
        """
        organization = await self.org_dao.get_by_id(organization_id)
        if organization is None or not organization.is_active:
            raise OrganizationNotFoundError(organization_id=str(organization_id))

        membership = await self.member_dao.get_membership(organization_id, principal.user_id)
        if principal.is_admin:
            return organization, membership

        if membership is None:
            raise AccessDeniedError(message="Not a member of this organization")
        if require_manager and membership.role not in (OrganizationRole.OWNER, OrganizationRole.MANAGER):
            raise AccessDeniedError(message="Only owners and managers can manage the subscription")
        return organization, membership

    async def _get_active_plan(self, plan_id: uuid.UUID) -> Plan:
        plan = await self.plan_dao.get_active(plan_id)
        if plan is None:
            raise InvalidPlanError(message="Plan not found or inactive", plan_id=str(plan_id))
        return plan

    async def _require_active(
        self, organization_id: uuid.UUID, for_update: bool = False
    ) -> OrganizationSubscription:
        subscription = await self.org_subscription_dao.get_active_for_org(
            organization_id, for_update=for_update
        )
        if subscription is None:
            raise SubscriptionNotFoundError(
                message="Organization has no active subscription",
                organization_id=str(organization_id),
            )
        return subscription

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create_organization_subscription(
        self,
        organization_id: uuid.UUID,
        plan_id: uuid.UUID,
        creator: Principal,
        quantity: int = 1,
        admin_assigned: bool = False,
    ) -> OrganizationSubscription:
        """
        Subscribe an organization to a plan.

        Free plans and admin assignments are active for one year; paid
        plans start incomplete at the gateway.

        Raises:
            ConflictError: Organization already has an active subscription
            InvalidPlanError: Unknown/inactive plan or no gateway price
        """
        quantity = quantity if quantity and quantity > 0 else 1
        try:
            if admin_assigned and not creator.is_admin:
                raise AccessDeniedError(message="Only administrators can assign organization plans")
            organization, _ = await self.ensure_org_access(organization_id, creator, require_manager=True)

            if await self.org_subscription_dao.get_active_for_org(organization_id, for_update=True):
                raise ConflictError(
                    message="Organization already has an active subscription",
                    organization_id=str(organization_id),
                )

            plan = await self._get_active_plan(plan_id)
            now = utcnow()

            if plan.is_free or admin_assigned:
                subscription = await self.org_subscription_dao.create(
                    organization_id=organization_id,
                    plan_id=plan.id,
                    created_by_user_id=creator.user_id,
                    quantity=quantity,
                    status=SubscriptionStatus.ACTIVE,
                    current_period_start=now,
                    current_period_end=now + timedelta(days=settings.ORGANIZATION_PERIOD_DAYS),
                )
            else:
                subscription = await self._create_paid(organization, plan, creator, quantity)
        except AppException as e:
            await self.audit.log_failure(
                AuditEventType.ORGANIZATION_SUBSCRIPTION_CREATED,
                "Create organization subscription",
                e,
                actor_id=creator.user_id,
                actor_email=creator.email,
                target_id=plan_id,
                target_type="plan",
                organization_id=organization_id,
            )
            raise

        await self.audit.log(
            AuditEventType.ORGANIZATION_SUBSCRIPTION_CREATED,
            action=f"Subscribed organization to {plan.name}",
            actor_id=creator.user_id,
            actor_email=creator.email,
            target_id=subscription.id,
            target_type="organization_subscription",
            target_name=organization.name,
            organization_id=organization_id,
            metadata={
                "plan_id": str(plan.id),
                "quantity": quantity,
                "admin_assigned": admin_assigned,
                "status": subscription.status.value,
            },
        )
        logger.info(
            f"Created organization subscription {subscription.id} for org {organization_id}",
            extra={"organization_id": str(organization_id), "plan_id": str(plan.id)},
        )
        return subscription

    async def _create_paid(
        self,
        organization: Organization,
        plan: Plan,
        creator: Principal,
        quantity: int,
    ) -> OrganizationSubscription:
        if not plan.upstream_price_id:
            raise InvalidPlanError(message="Plan has no gateway price configured", plan_id=str(plan.id))

        subscription_id = uuid.uuid4()
        customer_id = await self.gateway.create_customer(creator.user_id, creator.email, creator.name)
        upstream = await self.gateway.create_subscription(
            price_id=plan.upstream_price_id,
            customer_id=customer_id,
            quantity=quantity,
            metadata={
                "organization_id": str(organization.id),
                "plan_id": str(plan.id),
                "user_id": creator.user_id,
                "organization_subscription_id": str(subscription_id),
            },
            trial_days=plan.trial_days or 0,
            idempotency_key=f"org-subscription-{subscription_id}",
        )

        try:
            return await self.org_subscription_dao.create(
                id=subscription_id,
                organization_id=organization.id,
                plan_id=plan.id,
                created_by_user_id=creator.user_id,
                quantity=quantity,
                status=to_local_status(upstream.status),
                current_period_start=upstream.current_period_start,
                current_period_end=upstream.current_period_end,
                trial_end=upstream.trial_end,
                upstream_subscription_id=upstream.id,
                upstream_customer_id=customer_id,
                last_event_at=upstream.created,
            )
        except AppException:
            try:
                await self.gateway.cancel_subscription(upstream.id, cancel_at_period_end=False)
            except GatewayError as e:
                logger.error(f"Compensation failed for upstream org subscription {upstream.id}: {e.message}")
            raise

    async def update_organization_subscription(
        self,
        organization_id: uuid.UUID,
        plan_id: uuid.UUID,
        principal: Principal,
    ) -> OrganizationSubscription:
        """Switch an organization's active subscription to another plan."""
        try:
            await self.ensure_org_access(organization_id, principal, require_manager=True)
            subscription = await self._require_active(organization_id, for_update=True)
            plan = await self._get_active_plan(plan_id)

            if subscription.is_gateway_backed:
                if not plan.upstream_price_id:
                    raise InvalidPlanError(message="Plan has no gateway price configured", plan_id=str(plan.id))
                await self.gateway.update_subscription_price(
                    subscription.upstream_subscription_id, plan.upstream_price_id
                )

            old_plan_id = subscription.plan_id
            await self.org_subscription_dao.update(subscription, plan_id=plan.id)
        except AppException as e:
            await self.audit.log_failure(
                AuditEventType.ORGANIZATION_SUBSCRIPTION_UPDATED,
                "Change organization plan",
                e,
                actor_id=principal.user_id,
                actor_email=principal.email,
                target_id=plan_id,
                target_type="plan",
                organization_id=organization_id,
            )
            raise

        await self.audit.log(
            AuditEventType.ORGANIZATION_SUBSCRIPTION_UPDATED,
            action=f"Changed organization plan to {plan.name}",
            actor_id=principal.user_id,
            actor_email=principal.email,
            target_id=subscription.id,
            target_type="organization_subscription",
            organization_id=organization_id,
            metadata={"old_plan_id": str(old_plan_id), "new_plan_id": str(plan.id)},
        )
        return subscription

    async def cancel_organization_subscription(
        self,
        organization_id: uuid.UUID,
        principal: Principal,
        at_period_end: bool = True,
    ) -> OrganizationSubscription:
        """Cancel the organization's active subscription."""
        try:
            await self.ensure_org_access(organization_id, principal, require_manager=True)
            subscription = await self._require_active(organization_id, for_update=True)

            if subscription.is_gateway_backed:
                await self.gateway.cancel_subscription(
                    subscription.upstream_subscription_id, cancel_at_period_end=at_period_end
                )

            if at_period_end:
                await self.org_subscription_dao.update(subscription, cancel_at_period_end=True)
            else:
                await self.org_subscription_dao.update(
                    subscription,
                    status=SubscriptionStatus.CANCELLED,
                    cancelled_at=utcnow(),
                )
        except AppException as e:
            await self.audit.log_failure(
                AuditEventType.ORGANIZATION_SUBSCRIPTION_CANCELED,
                "Cancel organization subscription",
                e,
                actor_id=principal.user_id,
                actor_email=principal.email,
                target_id=organization_id,
                target_type="organization",
                organization_id=organization_id,
            )
            raise

        await self.audit.log(
            AuditEventType.ORGANIZATION_SUBSCRIPTION_CANCELED,
            action="Cancelled organization subscription" + (" at period end" if at_period_end else ""),
            actor_id=principal.user_id,
            actor_email=principal.email,
            target_id=subscription.id,
            target_type="organization_subscription",
            organization_id=organization_id,
            metadata={"at_period_end": at_period_end},
        )
        return subscription

    # =========================================================================
    # Organization views
    # =========================================================================

    async def get_organization_subscription(
        self, organization_id: uuid.UUID, principal: Principal
    ) -> OrganizationSubscription:
        """Active subscription, else the newest one of any status."""
        await self.ensure_org_access(organization_id, principal)
        subscription = await self.org_subscription_dao.get_active_for_org(organization_id)
        if subscription is None:
            subscription = await self.org_subscription_dao.get_latest_for_org(organization_id)
        if subscription is None:
            raise SubscriptionNotFoundError(
                message="Organization has no subscription",
                organization_id=str(organization_id),
            )
        return subscription

    async def get_organization_features(
        self, organization_id: uuid.UUID, principal: Principal
    ) -> Dict[str, Any]:
        await self.ensure_org_access(organization_id, principal)
        subscription = await self._require_active(organization_id)
        plan = await self.plan_dao.get_by_id(subscription.plan_id)
        return plan_feature_payload(plan)

    async def can_organization_access_feature(self, organization_id: uuid.UUID, key: str) -> bool:
        subscription = await self.org_subscription_dao.get_active_for_org(organization_id)
        if subscription is None:
            return False
        plan = await self.plan_dao.get_by_id(subscription.plan_id)
        return plan is not None and plan.has_feature(key)

    async def get_organization_usage_limits(
        self, organization_id: uuid.UUID, principal: Principal
    ) -> Dict[str, Any]:
        await self.ensure_org_access(organization_id, principal)
        subscription = await self._require_active(organization_id)
        plan = await self.plan_dao.get_by_id(subscription.plan_id)
        return {
            "organization_id": organization_id,
            "plan_id": plan.id,
            "plan_name": plan.name,
            "quantity": subscription.quantity,
            "limits": plan.limits,
        }

    # =========================================================================
    # User entitlements
    # =========================================================================

    async def get_user_effective_features(self, user_id: str) -> EffectiveFeatures:
        """
        Merge every active organization plan reachable by the user.

        Raises:
            NoOrganizationSubscriptionsError: User has no organization plan
        """
        rows = await self.org_subscription_dao.list_entitlements_for_user(user_id)
        if not rows:
            raise NoOrganizationSubscriptionsError(user_id=user_id)

        highest: Optional[Plan] = None
        features = set()
        limits: Dict[str, int] = {}
        organizations: List[OrganizationEntitlement] = []

        for subscription, plan, organization, membership in rows:
            # WHY: Rows come oldest first; strict > keeps the oldest on ties
            if highest is None or plan.priority > highest.priority:
                highest = plan

            features.update(plan.features or [])

            for attribute in AGGREGATED_LIMITS:
                value = getattr(plan, attribute)
                limits[attribute] = value if attribute not in limits else max_take(limits[attribute], value)

            organizations.append(
                OrganizationEntitlement(
                    organization_id=organization.id,
                    organization_name=organization.display_name or organization.name,
                    plan_id=plan.id,
                    plan_name=plan.name,
                    is_owner=membership.is_owner,
                    is_manager=membership.is_manager,
                )
            )

        return EffectiveFeatures(
            user_id=user_id,
            highest_plan_id=highest.id,
            highest_plan_name=highest.name,
            all_features=sorted(features),
            limits=limits,
            organizations=organizations,
        )

    async def can_user_access_feature(self, user_id: str, key: str) -> bool:
        try:
            effective = await self.get_user_effective_features(user_id)
        except NoOrganizationSubscriptionsError:
            return False
        return key in effective.all_features

    async def get_user_organization_with_feature(
        self, user_id: str, key: str
    ) -> OrganizationEntitlement:
        """
        Organization whose plan provides `key`, preferring the highest plan.

        Raises:
            ResourceNotFoundError: No organization provides the feature
        """
        best: Optional[Tuple[Plan, OrganizationEntitlement]] = None

        for subscription, plan, organization, membership in await self.org_subscription_dao.list_entitlements_for_user(user_id):
            if not plan.has_feature(key):
                continue
            if best is None or plan.priority > best[0].priority:
                best = (
                    plan,
                    OrganizationEntitlement(
                        organization_id=organization.id,
                        organization_name=organization.display_name or organization.name,
                        plan_id=plan.id,
                        plan_name=plan.name,
                        is_owner=membership.is_owner,
                        is_manager=membership.is_manager,
                    ),
                )

        if best is None:
            raise ResourceNotFoundError(
                message=f"No organization provides feature {key}",
                feature=key,
            )
        return best[1]

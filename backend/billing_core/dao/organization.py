"""
Organization Data Access Objects (DAO).

WHAT: DAOs for organizations, their members and their subscriptions.

WHY: Effective-feature resolution needs, for one user, every active
organization subscription of every organization the user is an active
member of, together with the plan and the membership role. That is one
join here instead of N+1 lookups in the engine.
"""

import uuid
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.dao.base import BaseDAO
from billing_core.models.organization import (
    Organization,
    OrganizationMember,
    OrganizationSubscription,
)
from billing_core.models.plan import Plan
from billing_core.models.subscription import SubscriptionStatus


ORG_ENTITLED_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


class OrganizationDAO(BaseDAO[Organization]):
    """Data Access Object for Organization model."""

    def __init__(self, session: AsyncSession):
        super().__init__(Organization, session)


class OrganizationMemberDAO(BaseDAO[OrganizationMember]):
    """Data Access Object for OrganizationMember model."""

    def __init__(self, session: AsyncSession):
        super().__init__(OrganizationMember, session)

    async def get_membership(
        self, organization_id: uuid.UUID, user_id: str
    ) -> Optional[OrganizationMember]:
        """Active membership of a user in an organization."""
        result = await self.session.execute(
            select(OrganizationMember).where(
                OrganizationMember.organization_id == organization_id,
                OrganizationMember.user_id == user_id,
                OrganizationMember.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()


class OrganizationSubscriptionDAO(BaseDAO[OrganizationSubscription]):
    """Data Access Object for OrganizationSubscription model."""

    def __init__(self, session: AsyncSession):
        super().__init__(OrganizationSubscription, session)

    async def get_active_for_org(
        self, organization_id: uuid.UUID, for_update: bool = False
    ) -> Optional[OrganizationSubscription]:
        query = (
            select(OrganizationSubscription)
            .where(
                OrganizationSubscription.organization_id == organization_id,
                OrganizationSubscription.status.in_(ORG_ENTITLED_STATUSES),
            )
            .order_by(OrganizationSubscription.created_at.desc())
            .limit(1)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_latest_for_org(
        self, organization_id: uuid.UUID
    ) -> Optional[OrganizationSubscription]:
        """Newest subscription of any status (incomplete ones included)."""
        result = await self.session.execute(
            select(OrganizationSubscription)
            .where(OrganizationSubscription.organization_id == organization_id)
            .order_by(OrganizationSubscription.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_by_upstream_subscription_id(
        self, upstream_subscription_id: str
    ) -> Optional[OrganizationSubscription]:
        result = await self.session.execute(
            select(OrganizationSubscription).where(
                OrganizationSubscription.upstream_subscription_id == upstream_subscription_id
            )
        )
        return result.scalar_one_or_none()

    async def list_entitlements_for_user(
        self, user_id: str
    ) -> List[Tuple[OrganizationSubscription, Plan, Organization, OrganizationMember]]:
        """
        Active org subscriptions reachable by a user through membership.

        Returns:
            (subscription, plan, organization, membership) tuples ordered by
            subscription creation time (oldest first)
        """
        result = await self.session.execute(
            select(OrganizationSubscription, Plan, Organization, OrganizationMember)
            .join(Plan, Plan.id == OrganizationSubscription.plan_id)
            .join(Organization, Organization.id == OrganizationSubscription.organization_id)
            .join(
                OrganizationMember,
                OrganizationMember.organization_id == OrganizationSubscription.organization_id,
            )
            .where(
                OrganizationMember.user_id == user_id,
                OrganizationMember.is_active.is_(True),
                Organization.is_active.is_(True),
                OrganizationSubscription.status.in_(ORG_ENTITLED_STATUSES),
            )
            .order_by(OrganizationSubscription.created_at.asc(), OrganizationSubscription.id.asc())
        )
        return [tuple(row) for row in result.all()]

    async def count_entitled_for_plan(self, plan_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(OrganizationSubscription)
            .where(
                OrganizationSubscription.plan_id == plan_id,
                OrganizationSubscription.status.in_(ORG_ENTITLED_STATUSES),
            )
        )
        return int(result.scalar_one())

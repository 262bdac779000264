"""
Subscription Data Access Object (DAO).

WHAT: DAO for personal, assigned and license subscription rows.

WHY: Subscriptions are looked up by owner, by upstream identifier (for
webhooks and reconciliation), and by batch (for license seats). Lock-taking
variants serialize admin replacement and license assignment.

HOW: Extends BaseDAO with subscription-specific queries. License queries
always filter on batch_id so personal rows are never touched.
"""

import uuid
from typing import List, Optional

from sqlalchemy import select, func, delete
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.dao.base import BaseDAO
from billing_core.models.subscription import (
    Subscription,
    SubscriptionStatus,
    ENTITLED_STATUSES,
    ASSIGNED_LICENSE_STATUSES,
)


class SubscriptionDAO(BaseDAO[Subscription]):
    """Data Access Object for Subscription model."""

    def __init__(self, session: AsyncSession):
        super().__init__(Subscription, session)

    # =========================================================================
    # Owner lookups
    # =========================================================================

    async def get_current_for_user(self, user_id: str) -> Optional[Subscription]:
        """
        Get the newest subscription that grants access to the user.

        Returns:
            Subscription if found, None otherwise
        """
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_(ENTITLED_STATUSES),
                Subscription.plan_id.isnot(None),
            )
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def lock_entitled_for_user(self, user_id: str) -> List[Subscription]:
        """
        Lock every access-granting personal subscription of a user.

        WHY: Admin assignment replaces these rows; locking them first makes
        concurrent replacements for the same user linearizable. License
        seats are excluded because they belong to their batch.
        """
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.batch_id.is_(None),
                Subscription.status.in_(ENTITLED_STATUSES | {SubscriptionStatus.INCOMPLETE}),
            )
            .order_by(Subscription.created_at.asc())
            .with_for_update()
        )
        return list(result.scalars().all())

    async def list_for_user(self, user_id: str) -> List[Subscription]:
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
        )
        return list(result.scalars().all())

    # =========================================================================
    # Upstream lookups
    # =========================================================================

    async def get_by_upstream_subscription_id(
        self, upstream_subscription_id: str
    ) -> Optional[Subscription]:
        """
        Get the personal (non-license) row mirroring an upstream subscription.

        WHY: Essential for webhook processing. License seats never carry the
        upstream id; their batch does.
        """
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.upstream_subscription_id == upstream_subscription_id
            )
        )
        return result.scalar_one_or_none()

    async def get_by_checkout_session_id(self, session_id: str) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(Subscription.checkout_session_id == session_id)
        )
        return result.scalar_one_or_none()

    async def list_missing_plan(self) -> List[Subscription]:
        """
        Rows mirrored from the gateway whose plan is still unknown.

        WHY: Input set for the missing-metadata reconciliation sweep.
        """
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.upstream_subscription_id.isnot(None),
                Subscription.plan_id.is_(None),
            )
            .order_by(Subscription.created_at.asc())
        )
        return list(result.scalars().all())

    # =========================================================================
    # License seats
    # =========================================================================

    async def list_licenses(
        self,
        batch_id: uuid.UUID,
        status: Optional[SubscriptionStatus] = None,
    ) -> List[Subscription]:
        query = select(Subscription).where(Subscription.batch_id == batch_id)
        if status is not None:
            query = query.where(Subscription.status == status)
        query = query.order_by(Subscription.created_at.asc(), Subscription.id.asc())
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def lock_first_unassigned_license(
        self, batch_id: uuid.UUID
    ) -> Optional[Subscription]:
        """
        Pick and lock one free seat.

        NOTE: Callers must already hold the batch row lock.
        """
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.batch_id == batch_id,
                Subscription.status == SubscriptionStatus.UNASSIGNED,
            )
            .order_by(Subscription.created_at.asc(), Subscription.id.asc())
            .limit(1)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def lock_unassigned_licenses(
        self, batch_id: uuid.UUID, limit: int
    ) -> List[Subscription]:
        """Lock up to `limit` free seats, newest first (removed first on shrink)."""
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.batch_id == batch_id,
                Subscription.status == SubscriptionStatus.UNASSIGNED,
            )
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(limit)
            .with_for_update()
        )
        return list(result.scalars().all())

    async def get_license_for_user(
        self, batch_id: uuid.UUID, user_id: str
    ) -> Optional[Subscription]:
        """Seat currently held by the user in this batch, if any."""
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.batch_id == batch_id,
                Subscription.user_id == user_id,
                Subscription.status.in_(ASSIGNED_LICENSE_STATUSES),
            )
        )
        return result.scalars().first()

    async def count_licenses(self, batch_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(Subscription).where(Subscription.batch_id == batch_id)
        )
        return int(result.scalar_one())

    async def count_assigned_licenses(self, batch_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(Subscription)
            .where(
                Subscription.batch_id == batch_id,
                Subscription.status.in_(ASSIGNED_LICENSE_STATUSES),
            )
        )
        return int(result.scalar_one())

    async def delete_licenses(self, batch_id: uuid.UUID) -> int:
        """Hard-delete every seat of a batch. Returns rows deleted."""
        result = await self.session.execute(
            delete(Subscription).where(Subscription.batch_id == batch_id)
        )
        return result.rowcount or 0

    async def delete_by_ids(self, ids: List[uuid.UUID]) -> int:
        if not ids:
            return 0
        result = await self.session.execute(delete(Subscription).where(Subscription.id.in_(ids)))
        return result.rowcount or 0

    # =========================================================================
    # Plan usage
    # =========================================================================

    async def count_entitled_for_plan(self, plan_id: uuid.UUID) -> int:
        """Access-granting rows (seats included) that reference a plan."""
        result = await self.session.execute(
            select(func.count())
            .select_from(Subscription)
            .where(
                Subscription.plan_id == plan_id,
                Subscription.status.in_(ENTITLED_STATUSES),
            )
        )
        return int(result.scalar_one())

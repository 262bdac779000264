"""
Usage metering service.

WHAT: Tracks per-user usage counters and checks them against plan limits.

WHY: Plans cap metered resources (terminals, courses, lab sessions,
concurrent users). Callers ask check_usage_limit() before granting a
resource and record_usage() after.

HOW:
- One UsageMetric row per (user, metric type), limit copied from the plan
- Counters only grow within a calendar-month period
- A row whose period has ended is rolled forward (reset to 0) lazily on
  the next read or write
- record_usage() locks the row so concurrent increments do not lose
  updates
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.core.exceptions import ValidationError
from billing_core.dao.plan import PlanDAO
from billing_core.dao.subscription import SubscriptionDAO
from billing_core.dao.usage_metric import UsageMetricDAO
from billing_core.models.base import month_bounds, utcnow
from billing_core.models.plan import UNLIMITED, Plan
from billing_core.models.usage_metric import METRIC_PLAN_LIMITS, MetricType, UsageMetric

logger = logging.getLogger(__name__)


@dataclass
class UsageCheck:
    """Result of a usage limit check."""

    allowed: bool
    current: int
    limit: int
    remaining: int
    message: str


def plan_limit(plan: Plan, metric_type: MetricType) -> int:
    value = plan.limit_for_attribute(METRIC_PLAN_LIMITS[metric_type])
    return UNLIMITED if value is None else value


class UsageService:
    """Service for usage counters."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.metric_dao = UsageMetricDAO(session)
        self.subscription_dao = SubscriptionDAO(session)
        self.plan_dao = PlanDAO(session)

    def _roll_period(self, metric: UsageMetric, now: datetime) -> bool:
        """
        Move an ended period forward and reset the counter.

        Returns:
            True if the metric was rolled over
        """
        if now < metric.period_end:
            return False
        metric.period_start, metric.period_end = month_bounds(now)
        metric.current_value = 0
        metric.last_updated = now
        return True

    async def _current_plan(self, user_id: str) -> Optional[Plan]:
        subscription = await self.subscription_dao.get_current_for_user(user_id)
        if subscription is None:
            return None
        return await self.plan_dao.get_by_id(subscription.plan_id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize_metrics(
        self,
        user_id: str,
        subscription_id: Optional[uuid.UUID],
        plan: Plan,
    ) -> List[UsageMetric]:
        """
        Create or refresh every metric of a user for a plan.

        WHY: Called when a subscription starts, is replaced or is upgraded.
        limit_value follows the new plan; current_value is preserved inside
        the running period.
        """
        now = utcnow()
        metrics = []

        for metric_type in MetricType:
            limit = plan_limit(plan, metric_type)
            metric = await self.metric_dao.get_metric(user_id, metric_type, for_update=True)

            if metric is None:
                period_start, period_end = month_bounds(now)
                metric = UsageMetric(
                    user_id=user_id,
                    subscription_id=subscription_id,
                    metric_type=metric_type,
                    current_value=0,
                    limit_value=limit,
                    period_start=period_start,
                    period_end=period_end,
                    last_updated=now,
                )
                self.session.add(metric)
            else:
                self._roll_period(metric, now)
                metric.subscription_id = subscription_id
                metric.limit_value = limit
                metric.last_updated = now

            metrics.append(metric)

        await self.metric_dao.flush()
        return metrics

    # =========================================================================
    # Checks and recording
    # =========================================================================

    async def check_usage_limit(
        self,
        user_id: str,
        metric_type: MetricType,
        increment: int = 1,
    ) -> UsageCheck:
        """
        Would `increment` more units stay within the user's limit?

        Returns:
            UsageCheck; remaining is -1 when unlimited
        """
        plan = await self._current_plan(user_id)
        if plan is None:
            return UsageCheck(
                allowed=False,
                current=0,
                limit=0,
                remaining=0,
                message="No active subscription",
            )

        metric = await self.metric_dao.get_metric(user_id, metric_type)
        now = utcnow()

        if metric is None:
            current, limit = 0, plan_limit(plan, metric_type)
        else:
            current = 0 if now >= metric.period_end else metric.current_value
            limit = metric.limit_value

        if limit == UNLIMITED:
            return UsageCheck(
                allowed=True,
                current=current,
                limit=limit,
                remaining=UNLIMITED,
                message="Unlimited usage",
            )

        allowed = current + increment <= limit
        remaining = max(limit - current, 0)
        message = (
            "Usage within limits"
            if allowed
            else f"Usage limit reached for {metric_type.value} ({current}/{limit})"
        )
        return UsageCheck(
            allowed=allowed,
            current=current,
            limit=limit,
            remaining=remaining,
            message=message,
        )

    async def record_usage(
        self,
        user_id: str,
        metric_type: MetricType,
        delta: int = 1,
    ) -> UsageMetric:
        """
        Add `delta` to the user's counter in the current period.

        Raises:
            ValidationError: If delta is negative (counters never decrease
                within a period)
        """
        if delta < 0:
            raise ValidationError(message="Usage delta must not be negative", delta=delta)

        now = utcnow()
        metric = await self.metric_dao.get_metric(user_id, metric_type, for_update=True)

        if metric is None:
            subscription = await self.subscription_dao.get_current_for_user(user_id)
            plan = await self.plan_dao.get_by_id(subscription.plan_id) if subscription else None
            period_start, period_end = month_bounds(now)
            metric = UsageMetric(
                user_id=user_id,
                subscription_id=subscription.id if subscription else None,
                metric_type=metric_type,
                current_value=0,
                limit_value=plan_limit(plan, metric_type) if plan else 0,
                period_start=period_start,
                period_end=period_end,
            )
            self.session.add(metric)
        else:
            self._roll_period(metric, now)

        metric.current_value = (metric.current_value or 0) + delta
        metric.last_updated = now
        await self.metric_dao.flush()

        logger.debug(
            f"Recorded {delta} {metric_type.value} for user {user_id}",
            extra={"user_id": user_id, "metric": metric_type.value, "value": metric.current_value},
        )
        return metric

    async def reset_monthly_usage(self, user_id: str) -> int:
        """
        Reset every counter of a user to 0 and start the current month.

        Returns:
            Number of metrics reset
        """
        now = utcnow()
        period_start, period_end = month_bounds(now)
        metrics = await self.metric_dao.list_for_user(user_id)

        for metric in metrics:
            metric.current_value = 0
            metric.period_start = period_start
            metric.period_end = period_end
            metric.last_updated = now

        await self.metric_dao.flush()
        logger.info(f"Reset {len(metrics)} usage metrics for user {user_id}")
        return len(metrics)

    async def get_usage_metrics(self, user_id: str) -> List[UsageMetric]:
        """Every counter of a user, with ended periods rolled over."""
        now = utcnow()
        metrics = await self.metric_dao.list_for_user(user_id)
        rolled = [self._roll_period(metric, now) for metric in metrics]
        if any(rolled):
            await self.metric_dao.flush()
        return metrics

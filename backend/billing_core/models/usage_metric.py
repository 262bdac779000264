"""
Usage metric model.

WHAT: Per-user counter for a metered resource within a monthly period.

WHY: Plans cap concurrent terminals, created courses, lab sessions and
concurrent users. The counter is compared to limit_value (copied from the
plan, -1 = unlimited) before the resource is granted.

HOW: One row per (user, metric type). When the period has ended the next
write resets current_value to 0 and moves the period forward.
"""

import enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint, Uuid

from billing_core.models.base import Base, PrimaryKeyMixin, TimestampMixin, str_enum, utcnow


class MetricType(str, enum.Enum):
    """Metered resources."""

    CONCURRENT_TERMINALS = "concurrent_terminals"
    COURSES_CREATED = "courses_created"
    LAB_SESSIONS = "lab_sessions"
    CONCURRENT_USERS = "concurrent_users"


# Plan attribute holding the limit for each metric
METRIC_PLAN_LIMITS = {
    MetricType.CONCURRENT_TERMINALS: "max_concurrent_terminals",
    MetricType.COURSES_CREATED: "max_courses",
    MetricType.LAB_SESSIONS: "max_lab_sessions",
    MetricType.CONCURRENT_USERS: "max_concurrent_users",
}


class UsageMetric(Base, PrimaryKeyMixin, TimestampMixin):
    """Usage counter for one user and metric type."""

    __tablename__ = "usage_metrics"

    user_id = Column(String(255), nullable=False, index=True)
    subscription_id = Column(
        Uuid, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True
    )
    metric_type = Column(str_enum(MetricType), nullable=False)
    current_value = Column(Integer, nullable=False, default=0)
    limit_value = Column(Integer, nullable=False, default=-1)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    last_updated = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "metric_type", name="uq_usage_metrics_user_metric"),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageMetric(user={self.user_id}, metric={self.metric_type.value}, "
            f"{self.current_value}/{self.limit_value})>"
        )

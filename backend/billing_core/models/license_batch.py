"""
License batch model.

WHAT: A bulk purchase of N identical licenses against one upstream
subscription with quantity N.

WHY: Organizations and instructors buy seats in bulk and hand them out.
The batch owns its license rows (subscriptions with batch_id set) and
keeps two counters that must always match them:
- total_quantity == count(licenses in batch)
- assigned_quantity == count(licenses with status active/assigned)

HOW: Counters are only changed while holding the batch row lock
(SELECT ... FOR UPDATE), taken before touching any license row.
"""

import enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Uuid, CheckConstraint

from billing_core.models.base import (
    Base,
    PrimaryKeyMixin,
    TimestampMixin,
    str_enum,
    unique_when_present,
)


class LicenseBatchStatus(str, enum.Enum):
    """Lifecycle of a batch."""

    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class LicenseBatch(Base, PrimaryKeyMixin, TimestampMixin):
    """Bulk license purchase."""

    __tablename__ = "license_batches"

    purchaser_user_id = Column(String(255), nullable=False, index=True)
    plan_id = Column(Uuid, ForeignKey("plans.id"), nullable=False, index=True)
    group_id = Column(
        Uuid, ForeignKey("groups.id", ondelete="SET NULL"), nullable=True, index=True
    )

    total_quantity = Column(Integer, nullable=False)
    assigned_quantity = Column(Integer, nullable=False, default=0)

    status = Column(
        str_enum(LicenseBatchStatus), nullable=False, default=LicenseBatchStatus.ACTIVE
    )

    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    # Gateway linkage (NULL for free plans)
    upstream_subscription_id = Column(String(255), nullable=True)
    upstream_subscription_item_id = Column(String(255), nullable=True)
    upstream_customer_id = Column(String(255), nullable=True)
    last_event_at = Column(DateTime, nullable=True)

    __table_args__ = (
        unique_when_present(
            "uq_license_batches_upstream_subscription_id", upstream_subscription_id
        ),
        CheckConstraint("total_quantity >= 1", name="ck_license_batches_total_positive"),
        CheckConstraint(
            "assigned_quantity >= 0 AND assigned_quantity <= total_quantity",
            name="ck_license_batches_assigned_range",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<LicenseBatch(id={self.id}, purchaser={self.purchaser_user_id}, "
            f"assigned={self.assigned_quantity}/{self.total_quantity})>"
        )

    @property
    def available_quantity(self) -> int:
        return self.total_quantity - self.assigned_quantity

    @property
    def is_active(self) -> bool:
        return self.status == LicenseBatchStatus.ACTIVE

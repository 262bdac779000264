"""
Plan model.

WHAT: A priced bundle of capabilities and numeric limits.

WHY: Plans drive everything downstream:
1. Subscriptions reference a plan for their feature set
2. Usage metrics copy their limit_value from the plan
3. Effective features take the union / max across plans
4. Bulk purchases are priced with the plan's tiers

HOW: Feature keys are stored as JSON lists and validated against the
feature catalog before any write. Numeric limits use -1 for unlimited.
Upstream (gateway) identifiers are optional and unique only when set.
"""

import enum
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, Column, Integer, JSON, String, Text

from billing_core.models.base import (
    Base,
    PrimaryKeyMixin,
    TimestampMixin,
    str_enum,
    unique_when_present,
)


UNLIMITED = -1


class BillingInterval(str, enum.Enum):
    """Recurring billing interval."""

    MONTH = "month"
    YEAR = "year"


class Plan(Base, PrimaryKeyMixin, TimestampMixin):
    """
    Subscription plan.

    LIMITS (-1 = unlimited):
    - max_concurrent_terminals
    - max_session_duration_minutes
    - max_courses
    - max_lab_sessions
    - max_concurrent_users
    - storage_gb
    """

    __tablename__ = "plans"

    name = Column(String(100), nullable=False, index=True)
    description = Column(Text, nullable=True)
    priority = Column(Integer, nullable=False, default=0)

    # Pricing (minor units, e.g. cents)
    unit_price = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="eur")
    billing_interval = Column(
        str_enum(BillingInterval), nullable=False, default=BillingInterval.MONTH
    )
    trial_days = Column(Integer, nullable=False, default=0)

    # Tiered pricing for bulk purchases
    # Each tier: {"min_quantity": int, "max_quantity": int (0 = unbounded), "unit_price": int}
    uses_tiered_pricing = Column(Boolean, nullable=False, default=False)
    pricing_tiers = Column(JSON, nullable=False, default=list)

    # Capabilities (feature catalog keys)
    features = Column(JSON, nullable=False, default=list)
    planned_features = Column(JSON, nullable=False, default=list)

    # Numeric limits
    max_concurrent_terminals = Column(Integer, nullable=False, default=1)
    max_session_duration_minutes = Column(Integer, nullable=False, default=60)
    max_courses = Column(Integer, nullable=False, default=UNLIMITED)
    max_lab_sessions = Column(Integer, nullable=False, default=UNLIMITED)
    max_concurrent_users = Column(Integer, nullable=False, default=1)
    storage_gb = Column(Integer, nullable=False, default=0)

    # Environment constraints
    allowed_machine_sizes = Column(JSON, nullable=False, default=list)
    allowed_templates = Column(JSON, nullable=False, default=list)
    allowed_backends = Column(JSON, nullable=False, default=list)
    network_access_enabled = Column(Boolean, nullable=False, default=False)
    data_persistence_enabled = Column(Boolean, nullable=False, default=False)

    # Directory role granted to holders of an active subscription
    required_role = Column(String(100), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)

    # Gateway linkage (NULL for free plans)
    upstream_product_id = Column(String(255), nullable=True)
    upstream_price_id = Column(String(255), nullable=True)

    __table_args__ = (
        unique_when_present("uq_plans_upstream_product_id", upstream_product_id),
        unique_when_present("uq_plans_upstream_price_id", upstream_price_id),
    )

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, name={self.name}, priority={self.priority})>"

    @property
    def is_free(self) -> bool:
        return (self.unit_price or 0) == 0

    @property
    def feature_set(self) -> set:
        return set(self.features or [])

    @property
    def limits(self) -> Dict[str, int]:
        """Numeric limits keyed by attribute name."""
        return {
            "max_concurrent_terminals": self.max_concurrent_terminals,
            "max_session_duration_minutes": self.max_session_duration_minutes,
            "max_courses": self.max_courses,
            "max_lab_sessions": self.max_lab_sessions,
            "max_concurrent_users": self.max_concurrent_users,
            "storage_gb": self.storage_gb,
        }

    def has_feature(self, key: str) -> bool:
        return key in (self.features or [])

    def sorted_tiers(self) -> List[Dict[str, Any]]:
        return sorted(self.pricing_tiers or [], key=lambda t: t["min_quantity"])

    def limit_for_attribute(self, attribute: str) -> Optional[int]:
        return self.limits.get(attribute)

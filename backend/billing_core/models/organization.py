"""
Organization models.

WHAT: Organizations, their members and their subscriptions.

WHY: Entitlements can come from every organization a user belongs to.
OrganizationSubscription is kept separate from the personal subscriptions
table: it is owned by an organization, carries a seat quantity and never
belongs to a batch.
"""

import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)

from billing_core.models.base import (
    Base,
    PrimaryKeyMixin,
    TimestampMixin,
    str_enum,
    unique_when_present,
)
from billing_core.models.subscription import SubscriptionStatus


class OrganizationRole(str, enum.Enum):
    """Member roles inside an organization."""

    OWNER = "owner"
    MANAGER = "manager"
    MEMBER = "member"


class Organization(Base, PrimaryKeyMixin, TimestampMixin):
    """Tenant organization."""

    __tablename__ = "organizations"

    name = Column(String(255), nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    owner_user_id = Column(String(255), nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, name={self.name})>"


class OrganizationMember(Base, PrimaryKeyMixin, TimestampMixin):
    """Membership of a user in an organization."""

    __tablename__ = "organization_members"

    organization_id = Column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(String(255), nullable=False, index=True)
    role = Column(str_enum(OrganizationRole), nullable=False, default=OrganizationRole.MEMBER)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_organization_members_org_user"),
    )

    def __repr__(self) -> str:
        return (
            f"<OrganizationMember(org={self.organization_id}, user={self.user_id}, "
            f"role={self.role.value if self.role else None})>"
        )

    @property
    def is_owner(self) -> bool:
        return self.role == OrganizationRole.OWNER

    @property
    def is_manager(self) -> bool:
        return self.role in (OrganizationRole.OWNER, OrganizationRole.MANAGER)


class OrganizationSubscription(Base, PrimaryKeyMixin, TimestampMixin):
    """
    Subscription owned by an organization.

    WHY: Members of the organization inherit the plan's features; the
    quantity is the number of seats paid upstream.
    """

    __tablename__ = "organization_subscriptions"

    organization_id = Column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    plan_id = Column(Uuid, ForeignKey("plans.id"), nullable=False, index=True)
    created_by_user_id = Column(String(255), nullable=True)

    quantity = Column(Integer, nullable=False, default=1)
    status = Column(
        str_enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.INCOMPLETE
    )

    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(DateTime, nullable=True)

    upstream_subscription_id = Column(String(255), nullable=True)
    upstream_customer_id = Column(String(255), nullable=True)
    last_event_at = Column(DateTime, nullable=True)

    __table_args__ = (
        unique_when_present(
            "uq_organization_subscriptions_upstream_subscription_id",
            upstream_subscription_id,
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<OrganizationSubscription(id={self.id}, org={self.organization_id}, "
            f"status={self.status.value if self.status else None})>"
        )

    @property
    def is_entitled(self) -> bool:
        return self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)

    @property
    def is_gateway_backed(self) -> bool:
        return self.upstream_subscription_id is not None

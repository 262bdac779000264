"""
Subscription model for personal, assigned and license subscriptions.

WHAT: A user's grant of a plan over a billing period.

WHY: One table carries several logical variants, told apart by kind:
- personal: bought by the user, possibly mirrored from the gateway
- license: a row owned by a LicenseBatch and assigned to a user
- unassigned_license: a free seat in a batch (user_id is NULL)
- parked: mirrored from the gateway before its owner/plan is known

Organization subscriptions live in their own table (see organization.py).

SECURITY:
- Upstream identifiers come from verified webhooks or gateway responses,
  never from client input
- Upstream identifiers are unique only when present; free plans store NULL

LIFECYCLE:
  incomplete -> active -> (cancel at period end) -> cancelled
  active -> past_due -> active
  active -> replaced (admin assignment)
  unassigned <-> active (license assign / revoke)
"""

import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Uuid,
)

from billing_core.models.base import (
    Base,
    PrimaryKeyMixin,
    TimestampMixin,
    str_enum,
    unique_when_present,
)


class SubscriptionStatus(str, enum.Enum):
    """
    Subscription status values.

    Statuses:
    - INCOMPLETE: Upstream created, first payment pending
    - TRIALING: Trial period, full access
    - ACTIVE: Payment successful (or free / admin assigned)
    - PAST_DUE: Payment failed, grace period with access
    - UNPAID: Payment retries exhausted, no access
    - CANCELLED: Terminal
    - UNASSIGNED: Free license seat in a batch
    - ASSIGNED: License seat held by a user (billing-equivalent to active)
    - REPLACED: Terminal, superseded by an admin assignment
    """

    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELLED = "cancelled"
    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"
    REPLACED = "replaced"


class SubscriptionType(str, enum.Enum):
    """How the subscription was obtained."""

    PERSONAL = "personal"
    ASSIGNED = "assigned"


class SubscriptionKind(str, enum.Enum):
    """Logical variant of a subscription row."""

    PERSONAL = "personal"
    LICENSE = "license"
    UNASSIGNED_LICENSE = "unassigned_license"
    PARKED = "parked"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.REPLACED})

# Statuses that grant access to the plan's features
ENTITLED_STATUSES = frozenset(
    {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.ASSIGNED,
    }
)

# Seat statuses counted in a batch's assigned_quantity
ASSIGNED_LICENSE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.ASSIGNED})

ALLOWED_TRANSITIONS = {
    SubscriptionStatus.INCOMPLETE: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.CANCELLED,
    },
    SubscriptionStatus.TRIALING: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.REPLACED,
    },
    SubscriptionStatus.ACTIVE: {
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.REPLACED,
        SubscriptionStatus.UNASSIGNED,
    },
    SubscriptionStatus.PAST_DUE: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.REPLACED,
    },
    SubscriptionStatus.UNPAID: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.REPLACED,
    },
    SubscriptionStatus.UNASSIGNED: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.ASSIGNED,
        SubscriptionStatus.CANCELLED,
    },
    SubscriptionStatus.ASSIGNED: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.UNASSIGNED,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.REPLACED,
    },
    SubscriptionStatus.CANCELLED: set(),
    SubscriptionStatus.REPLACED: set(),
}


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    """Whether a status change is allowed (same-status is a no-op)."""
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())


class Subscription(Base, PrimaryKeyMixin, TimestampMixin):
    """
    Subscription held by a user (or a seat in a license batch).

    RELATIONS:
    - plan_id -> plans (NULL only while parked)
    - batch_id -> license_batches (licenses only)
    """

    __tablename__ = "subscriptions"

    # Owner (NULL for unassigned licenses and parked upstream records)
    user_id = Column(String(255), nullable=True, index=True)
    purchaser_user_id = Column(String(255), nullable=True, index=True)
    assigned_by_user_id = Column(String(255), nullable=True)

    plan_id = Column(Uuid, ForeignKey("plans.id"), nullable=True, index=True)
    batch_id = Column(
        Uuid,
        ForeignKey("license_batches.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    subscription_type = Column(
        str_enum(SubscriptionType), nullable=False, default=SubscriptionType.PERSONAL
    )
    status = Column(
        str_enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.INCOMPLETE
    )

    # Billing period
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)

    # Cancellation
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(DateTime, nullable=True)

    # Gateway linkage (NULL for free, assigned and license rows)
    upstream_subscription_id = Column(String(255), nullable=True)
    upstream_customer_id = Column(String(255), nullable=True, index=True)
    checkout_session_id = Column(String(255), nullable=True)
    last_invoice_id = Column(String(255), nullable=True)

    # WHY: Webhooks can arrive out of order; only newer events may
    # overwrite status and period fields
    last_event_at = Column(DateTime, nullable=True)

    __table_args__ = (
        unique_when_present(
            "uq_subscriptions_upstream_subscription_id", upstream_subscription_id
        ),
        unique_when_present("uq_subscriptions_checkout_session_id", checkout_session_id),
        Index("ix_subscriptions_user_status", "user_id", "status"),
        Index("ix_subscriptions_batch_status", "batch_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"status={self.status.value if self.status else None}, kind={self.kind.value})>"
        )

    @property
    def kind(self) -> SubscriptionKind:
        if self.batch_id is not None:
            if self.user_id is None or self.status == SubscriptionStatus.UNASSIGNED:
                return SubscriptionKind.UNASSIGNED_LICENSE
            return SubscriptionKind.LICENSE
        if self.plan_id is None or self.user_id is None:
            return SubscriptionKind.PARKED
        return SubscriptionKind.PERSONAL

    @property
    def is_license(self) -> bool:
        return self.batch_id is not None

    @property
    def is_entitled(self) -> bool:
        """Check if subscription grants access to the plan's features."""
        return self.status in ENTITLED_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_gateway_backed(self) -> bool:
        return self.upstream_subscription_id is not None

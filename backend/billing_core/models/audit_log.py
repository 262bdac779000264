"""
Audit Log Model.

WHAT: SQLAlchemy model for storing billing and security audit events.

WHY: Every state-changing billing operation is recorded, success and
failure alike, with:
- Actor (id, email, IP, user agent)
- Target (id, type, name)
- Organization context
- Optional monetary amount
- Request/session identifiers for correlation

HOW: Immutable append-only table. Rows expire (expires_at) and are
hard-deleted by the retention sweep only. The JSON metadata column is
never NULL; empty metadata is stored as {}.
"""

import enum

from sqlalchemy import Column, DateTime, Index, Integer, JSON, String, Text, Uuid

from billing_core.models.base import Base, PrimaryKeyMixin, str_enum, utcnow


class AuditEventType(str, enum.Enum):
    """
    Known audit event types.

    WHY: Event types are dotted names grouped by area so queries can
    filter on a prefix. The column accepts any string; this enum lists
    the ones this service emits or derives severity for.
    """

    # Authentication
    AUTH_LOGIN = "auth.login"
    AUTH_LOGIN_FAILED = "auth.login.failed"

    # User lifecycle
    USER_DELETED = "user.deleted"
    USER_SUSPENDED = "user.suspended"
    USER_ROLE_ASSIGNED = "user.role.assigned"
    USER_ROLE_REVOKED = "user.role.revoked"

    # Billing
    SUBSCRIPTION_CREATED = "billing.subscription.created"
    SUBSCRIPTION_UPDATED = "billing.subscription.updated"
    SUBSCRIPTION_CANCELED = "billing.subscription.canceled"
    SUBSCRIPTION_REPLACED = "billing.subscription.replaced"
    SUBSCRIPTION_UPGRADED = "billing.subscription.upgraded"
    SUBSCRIPTION_ASSIGNED = "billing.subscription.assigned"
    PAYMENT_SUCCEEDED = "billing.payment.succeeded"
    PAYMENT_FAILED = "billing.payment.failed"
    BULK_PURCHASE = "billing.bulk.purchase"
    BULK_QUANTITY_UPDATED = "billing.bulk.quantity_updated"
    BULK_DELETED = "billing.bulk.deleted"
    LICENSE_ASSIGNED = "billing.license.assigned"
    LICENSE_REVOKED = "billing.license.revoked"
    PLAN_CREATED = "billing.plan.created"
    PLAN_UPDATED = "billing.plan.updated"
    RECONCILIATION_RUN = "billing.reconciliation.run"

    # Organizations
    ORGANIZATION_SUBSCRIPTION_CREATED = "organization.subscription.created"
    ORGANIZATION_SUBSCRIPTION_UPDATED = "organization.subscription.updated"
    ORGANIZATION_SUBSCRIPTION_CANCELED = "organization.subscription.canceled"
    ORGANIZATION_DELETED = "organization.deleted"

    # Groups
    GROUP_MEMBER_ADDED = "group.member.added"

    # Security
    ACCESS_DENIED = "security.access.denied"
    SUSPICIOUS_ACTIVITY = "security.suspicious.activity"

    # System
    SYSTEM_RETENTION_SWEEP = "system.retention.sweep"


class AuditSeverity(str, enum.Enum):
    """Severity levels."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditStatus(str, enum.Enum):
    """Outcome of the audited action."""

    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


class AuditLog(Base, PrimaryKeyMixin):
    """
    Immutable audit log entry.

    NOTE: No updated_at column; records are never modified.
    """

    __tablename__ = "audit_logs"

    event_type = Column(String(100), nullable=False, index=True)
    severity = Column(str_enum(AuditSeverity), nullable=False, default=AuditSeverity.INFO)

    # Actor
    actor_id = Column(String(255), nullable=True, index=True)
    actor_email = Column(String(255), nullable=True)
    actor_ip = Column(String(45), nullable=True)  # IPv6 max length
    actor_user_agent = Column(String(500), nullable=True)

    # Target
    target_id = Column(String(255), nullable=True, index=True)
    target_type = Column(String(100), nullable=True)
    target_name = Column(String(255), nullable=True)

    organization_id = Column(Uuid, nullable=True, index=True)

    action = Column(String(255), nullable=False)
    status = Column(str_enum(AuditStatus), nullable=False, default=AuditStatus.SUCCESS)
    error_message = Column(Text, nullable=True)

    # WHY: "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSON, nullable=False, default=dict)

    amount = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=True)

    request_id = Column(String(100), nullable=True)
    session_id = Column(String(255), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    expires_at = Column(DateTime, nullable=False, index=True)

    __table_args__ = (
        Index("ix_audit_logs_org_created", "organization_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditLog(id={self.id}, event_type={self.event_type}, "
            f"actor={self.actor_id}, status={self.status.value if self.status else None})>"
        )

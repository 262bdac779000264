"""
Database models package.

WHY: Centralizing model imports ensures Alembic and the test fixtures see
every table when they use Base.metadata.
"""

from billing_core.models.base import Base, TimestampMixin, PrimaryKeyMixin, utcnow
from billing_core.models.plan import Plan, BillingInterval, UNLIMITED
from billing_core.models.subscription import (
    Subscription,
    SubscriptionStatus,
    SubscriptionType,
    SubscriptionKind,
)
from billing_core.models.license_batch import LicenseBatch, LicenseBatchStatus
from billing_core.models.organization import (
    Organization,
    OrganizationMember,
    OrganizationRole,
    OrganizationSubscription,
)
from billing_core.models.group import Group, GroupMember, GroupRole
from billing_core.models.usage_metric import UsageMetric, MetricType, METRIC_PLAN_LIMITS
from billing_core.models.audit_log import AuditLog, AuditEventType, AuditSeverity, AuditStatus
from billing_core.models.webhook_event import WebhookEventRecord
from billing_core.models.feature_definition import (
    FeatureDefinition,
    FeatureCategory,
    FeatureValueType,
)
from billing_core.models.invoice import Invoice, InvoiceStatus
from billing_core.models.verification_token import VerificationToken, TokenType

__all__ = [
    "Base",
    "TimestampMixin",
    "PrimaryKeyMixin",
    "utcnow",
    "Plan",
    "BillingInterval",
    "UNLIMITED",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionType",
    "SubscriptionKind",
    "LicenseBatch",
    "LicenseBatchStatus",
    "Organization",
    "OrganizationMember",
    "OrganizationRole",
    "OrganizationSubscription",
    "Group",
    "GroupMember",
    "GroupRole",
    "UsageMetric",
    "MetricType",
    "METRIC_PLAN_LIMITS",
    "AuditLog",
    "AuditEventType",
    "AuditSeverity",
    "AuditStatus",
    "WebhookEventRecord",
    "FeatureDefinition",
    "FeatureCategory",
    "FeatureValueType",
    "Invoice",
    "InvoiceStatus",
    "VerificationToken",
    "TokenType",
]

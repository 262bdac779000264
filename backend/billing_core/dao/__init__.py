"""
Data Access Object (DAO) package.

WHY: DAOs provide a clean separation between database operations and
business logic, making the engines testable against a real session.
"""

from billing_core.dao.base import BaseDAO
from billing_core.dao.plan import PlanDAO
from billing_core.dao.subscription import SubscriptionDAO
from billing_core.dao.license_batch import LicenseBatchDAO
from billing_core.dao.organization import (
    OrganizationDAO,
    OrganizationMemberDAO,
    OrganizationSubscriptionDAO,
)
from billing_core.dao.group import GroupDAO, GroupMemberDAO
from billing_core.dao.usage_metric import UsageMetricDAO
from billing_core.dao.audit_log import AuditLogDAO, AuditLogFilter
from billing_core.dao.webhook_event import WebhookEventDAO, DuplicateEventError
from billing_core.dao.feature_definition import FeatureDefinitionDAO
from billing_core.dao.invoice import InvoiceDAO
from billing_core.dao.verification_token import VerificationTokenDAO

__all__ = [
    "BaseDAO",
    "PlanDAO",
    "SubscriptionDAO",
    "LicenseBatchDAO",
    "OrganizationDAO",
    "OrganizationMemberDAO",
    "OrganizationSubscriptionDAO",
    "GroupDAO",
    "GroupMemberDAO",
    "UsageMetricDAO",
    "AuditLogDAO",
    "AuditLogFilter",
    "WebhookEventDAO",
    "DuplicateEventError",
    "FeatureDefinitionDAO",
    "InvoiceDAO",
    "VerificationTokenDAO",
]

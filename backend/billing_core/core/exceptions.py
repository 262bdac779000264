"""
Custom exception hierarchy for structured error handling.

WHY: Engines raise typed errors and the HTTP layer maps them to status
codes in one place. Every exception carries:
1. An HTTP status code
2. A safe, human-readable message
3. Structured context for debugging (sensitive keys filtered out)

IMPORTANT: NEVER raise the base Exception class from service code.
"""

from typing import Any, Dict, Optional


class AppException(Exception):
    """
    Base exception class for all application exceptions.

    WHY: Centralizing exception handling in a base class ensures consistent
    error responses, HTTP status code mapping, and prevents sensitive data
    leaks in error messages.
    """

    status_code: int = 500
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        """
        Initialize exception with message and context.

        Args:
            message: Human-readable error message
            status_code: HTTP status code (overrides class default)
            **context: Additional context for debugging (filtered in to_dict)
        """
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize exception to dictionary for JSON response.

        Returns:
            Dictionary with error details (sensitive fields filtered out)
        """
        # WHY: Webhook secrets and signature headers must never echo back
        sensitive_fields = {"password", "token", "secret", "key", "api_key", "signature"}
        filtered_context = {
            k: v for k, v in self.context.items() if k.lower() not in sensitive_fields
        }

        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "status_code": self.status_code,
            "details": filtered_context if filtered_context else None,
        }


# ============================================================================
# Authentication & Authorization Exceptions
# ============================================================================


class AuthenticationError(AppException):
    """
    Raised when authentication fails.

    HTTP Status: 401 Unauthorized
    """

    status_code = 401
    default_message = "Authentication failed"


class TokenExpiredError(AuthenticationError):
    """Raised when a directory-issued JWT has expired."""

    default_message = "Token has expired"


class TokenInvalidError(AuthenticationError):
    """Raised when a JWT is malformed or has an invalid signature."""

    default_message = "Token is invalid"


class AuthorizationError(AppException):
    """
    Raised when the principal lacks permissions for an action.

    WHY: Distinguishing authorization (403) from authentication (401) helps
    clients show "You don't have permission" instead of "Please log in".

    HTTP Status: 403 Forbidden
    """

    status_code = 403
    default_message = "You do not have permission to perform this action"


class AccessDeniedError(AuthorizationError):
    """
    Raised when a principal is neither a member of the organization nor an
    administrator, or is not the purchaser of a batch.

    HTTP Status: 403 Forbidden
    """

    default_message = "Access denied"


class EmailNotVerifiedError(AuthorizationError):
    """
    Raised when an unverified account tries to purchase.

    HTTP Status: 403 Forbidden
    """

    default_message = "Email address must be verified"


# ============================================================================
# Validation & Input Exceptions
# ============================================================================


class ValidationError(AppException):
    """
    Raised when input validation fails.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Validation failed"


class InvalidUUIDError(ValidationError):
    """Raised when an identifier is not a valid UUID."""

    default_message = "Invalid UUID"


class InvalidDateRangeError(ValidationError):
    """Raised when start_date is after end_date."""

    default_message = "start_date must not be after end_date"


class LimitOutOfRangeError(ValidationError):
    """Raised when a page limit is outside the allowed bounds."""

    default_message = "Limit out of range"


class InvalidPlanError(ValidationError):
    """
    Raised when a plan is missing, inactive or not purchasable.

    WHY: Purchases and admin assignments reference plans by id; a wrong id
    is a client error, not a missing resource on the request path.

    HTTP Status: 400 Bad Request
    """

    default_message = "Invalid plan"


class UnknownFeatureError(ValidationError):
    """
    Raised when a plan references feature keys absent from the catalog.

    HTTP Status: 400 Bad Request
    """

    default_message = "Unknown or inactive feature keys"


class InvalidPricingTiersError(ValidationError):
    """Raised when pricing tiers overlap or leave gaps."""

    default_message = "Pricing tiers must be contiguous from 1"


# ============================================================================
# Resource Exceptions
# ============================================================================


class ResourceNotFoundError(AppException):
    """
    Raised when a requested resource doesn't exist.

    HTTP Status: 404 Not Found
    """

    status_code = 404
    default_message = "Resource not found"


class SubscriptionNotFoundError(ResourceNotFoundError):
    """Raised when a subscription doesn't exist."""

    default_message = "Subscription not found"


class BatchNotFoundError(ResourceNotFoundError):
    """Raised when a license batch doesn't exist."""

    default_message = "License batch not found"


class LicenseNotFoundError(ResourceNotFoundError):
    """Raised when a license doesn't exist."""

    default_message = "License not found"


class PlanNotFoundError(ResourceNotFoundError):
    """Raised when a plan doesn't exist."""

    default_message = "Plan not found"


class OrganizationNotFoundError(ResourceNotFoundError):
    """Raised when an organization doesn't exist."""

    default_message = "Organization not found"


class GroupNotFoundError(ResourceNotFoundError):
    """Raised when a group doesn't exist."""

    default_message = "Group not found"


class NoOrganizationSubscriptionsError(ResourceNotFoundError):
    """
    Raised when a user belongs to no organization with an active subscription.

    HTTP Status: 404 Not Found
    """

    default_message = "User has no active organization subscriptions"


# ============================================================================
# Conflict Exceptions
# ============================================================================


class ConflictError(AppException):
    """
    Raised when the request conflicts with current state.

    HTTP Status: 409 Conflict
    """

    status_code = 409
    default_message = "Conflict with current state"


class NoAvailableLicensesError(ConflictError):
    """Raised when every license in a batch is already assigned."""

    default_message = "No available licenses in this batch"


class QuantityBelowAssignedError(ConflictError):
    """
    Raised when a batch would shrink below its assigned license count.

    WHY: Shrinking would silently revoke access from assigned users.
    """

    default_message = "New quantity is below the number of assigned licenses"


class DuplicateUpstreamIDError(ConflictError):
    """Raised when an upstream identifier is already linked to another record."""

    default_message = "Upstream identifier already linked"


# ============================================================================
# Business Logic Exceptions
# ============================================================================


class InvalidStateTransitionError(AppException):
    """
    Raised when a subscription status change is not allowed.

    WHY: Terminal states (cancelled, replaced) never come back to life;
    attempting it is a client error.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Invalid state transition"


# ============================================================================
# Webhook Exceptions
# ============================================================================


class InvalidSignatureError(AuthenticationError):
    """
    Raised when a webhook signature fails verification.

    HTTP Status: 401 Unauthorized
    """

    default_message = "Invalid webhook signature"


class WebhookSourceRejectedError(AuthorizationError):
    """Raised when a webhook does not come from the payment gateway."""

    default_message = "Webhook source not recognised"


class PayloadTooLargeError(AppException):
    """
    Raised when a webhook body exceeds the configured limit.

    HTTP Status: 413 Payload Too Large
    """

    status_code = 413
    default_message = "Payload too large"


# ============================================================================
# External Service Exceptions
# ============================================================================


class ExternalServiceError(AppException):
    """
    Base exception for external service failures.

    HTTP Status: 502 Bad Gateway
    """

    status_code = 502
    default_message = "External service error"


class GatewayError(ExternalServiceError):
    """
    Raised when a payment gateway call fails.

    WHY: Callers decide whether to retry. Transport failures, rate limits
    and 5xx responses are retryable; 4xx responses are fatal.

    HTTP Status: 502 Bad Gateway
    """

    default_message = "Payment gateway error"

    def __init__(
        self,
        message: Optional[str] = None,
        retryable: bool = False,
        **context: Any,
    ):
        self.retryable = retryable
        super().__init__(message, retryable=retryable, **context)


class DirectoryUnavailableError(ExternalServiceError):
    """
    Raised when the identity provider cannot be reached.

    HTTP Status: 502 Bad Gateway
    """

    default_message = "Directory service unavailable"


# ============================================================================
# Database Exceptions
# ============================================================================


class DatabaseError(AppException):
    """
    Raised when database operations fail.

    WHY: Store errors are converted to a safe message (no SQL exposed).

    HTTP Status: 500 Internal Server Error
    """

    status_code = 500
    default_message = "Database error"


StoreError = DatabaseError


# ============================================================================
# Audit Log Exceptions
# ============================================================================


class AuditLogImmutableError(AppException):
    """
    Raised when attempting to update or delete an audit log.

    WHY: Audit records are append-only; only the retention sweep removes them.

    HTTP Status: 403 Forbidden
    """

    status_code = 403
    default_message = "Audit logs are immutable and cannot be modified"

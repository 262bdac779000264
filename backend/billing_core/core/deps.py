"""
FastAPI dependencies for authentication and authorization.

WHY: Dependencies provide reusable authentication and authorization logic
that can be injected into route handlers, keeping role checks consistent
across the API.
"""

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from billing_core.core.auth import Principal, principal_from_claims, verify_token
from billing_core.core.config import settings
from billing_core.core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    EmailNotVerifiedError,
    TokenExpiredError,
    TokenInvalidError,
)


# HTTP Bearer token security scheme
# Format: "Authorization: Bearer <token>"
security = HTTPBearer(auto_error=False)


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Principal:
    """
    Get the authenticated principal from the bearer token.

    Raises:
        AuthenticationError: If the token is missing, invalid or expired
    """
    if credentials is None:
        raise AuthenticationError(message="Missing bearer token")

    try:
        payload = verify_token(credentials.credentials)
    except (TokenExpiredError, TokenInvalidError) as e:
        raise AuthenticationError(
            message=e.message,
            status_code=e.status_code,
        )

    return principal_from_claims(payload)


async def require_admin(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    """
    Require the global administrator role.

    Raises:
        AuthorizationError: If the principal is not an administrator
    """
    if not principal.is_admin:
        raise AuthorizationError(
            message="Admin access required",
            user_id=principal.user_id,
            required_role=settings.ADMIN_ROLE,
        )

    return principal


async def require_verified_email(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    """
    Require a verified email address.

    WHY: Purchases create gateway customers keyed on the email address.
    """
    if not principal.email_verified:
        raise EmailNotVerifiedError(user_id=principal.user_id)

    return principal

"""
JWT verification for directory-issued tokens.

WHAT: Decodes bearer tokens issued by the identity provider (the
Directory) into a Principal.

WHY: Users live in the Directory, not in this service. Every request
carries a signed token whose claims are enough to authorize billing
operations:
- sub: user id
- email / name: used for gateway customers and audit records
- roles: global roles (the administrator role bypasses org checks)
- email_verified: purchases require a verified address

HOW: python-jose verifies signature, expiry and (optionally) audience.
create_access_token mints tokens with the same claims for service
accounts and tests.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional

from jose import jwt, JWTError, ExpiredSignatureError

from billing_core.core.config import settings
from billing_core.core.exceptions import (
    TokenExpiredError,
    TokenInvalidError,
)


@dataclass
class Principal:
    """
    The authenticated caller.

    WHAT: Verified claims of a directory-issued token.
    """

    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    email_verified: bool = False

    @property
    def is_admin(self) -> bool:
        return settings.ADMIN_ROLE in self.roles


# ============================================================================
# JWT Token Management
# ============================================================================


def create_access_token(
    data: Dict[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token with directory-compatible claims.

    Args:
        data: Claims to encode (sub, email, roles, email_verified, ...)
        expires_delta: Optional custom expiration time

    Returns:
        JWT token string
    """
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.JWT_EXPIRATION_MINUTES))

    to_encode.update(
        {
            "exp": expire,
            "iat": now,
            "nbf": now,
        }
    )
    if settings.JWT_AUDIENCE and "aud" not in to_encode:
        to_encode["aud"] = settings.JWT_AUDIENCE

    return jwt.encode(
        to_encode,
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )


def verify_token(token: str) -> Dict[str, Any]:
    """
    Verify and decode a JWT token.

    Raises:
        TokenExpiredError: If token has expired
        TokenInvalidError: If token is malformed or signature invalid
    """
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
        )

    except ExpiredSignatureError:
        raise TokenExpiredError(message="Token has expired")

    except JWTError as e:
        raise TokenInvalidError(
            message="Invalid token",
            error=str(e),
        )


def principal_from_claims(payload: Dict[str, Any]) -> Principal:
    """
    Build a Principal from verified claims.

    Raises:
        TokenInvalidError: If the subject claim is missing
    """
    user_id = payload.get("sub")
    if not user_id:
        raise TokenInvalidError(message="Invalid token: missing subject")

    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]

    return Principal(
        user_id=str(user_id),
        email=payload.get("email"),
        name=payload.get("name"),
        roles=list(roles),
        email_verified=bool(payload.get("email_verified", False)),
    )

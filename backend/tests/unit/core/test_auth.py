"""
Tests for directory token verification.

WHY: Every billing route trusts the principal built here:
1. Tokens carry the directory claims the engines need
2. Expired tokens and bad signatures are rejected
3. Admin detection follows the configured role
4. Route dependencies map failures to 401 / 403
"""

from datetime import timedelta

import pytest
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from billing_core.core.auth import (
    Principal,
    create_access_token,
    principal_from_claims,
    verify_token,
)
from billing_core.core.config import settings
from billing_core.core.deps import get_current_principal, require_admin, require_verified_email
from billing_core.core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    EmailNotVerifiedError,
    TokenExpiredError,
    TokenInvalidError,
)


def token_for(user_id: str, expires_delta: timedelta = None) -> str:
    return create_access_token({"sub": user_id, "email_verified": True}, expires_delta=expires_delta)


def bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestTokens:
    """Test token creation and verification."""

    def test_round_trip_claims(self):
        token = create_access_token({"sub": "user-1", "roles": ["premium"], "email_verified": True})

        payload = verify_token(token)

        assert payload["sub"] == "user-1"
        assert payload["roles"] == ["premium"]
        assert {"exp", "iat", "nbf"} <= set(payload)

    def test_expired_token_rejected(self):
        token = create_access_token({"sub": "user-1"}, expires_delta=timedelta(seconds=-10))

        with pytest.raises(TokenExpiredError):
            verify_token(token)

    def test_wrong_signature_rejected(self):
        token = jwt.encode({"sub": "user-1"}, "another-secret", algorithm=settings.JWT_ALGORITHM)

        with pytest.raises(TokenInvalidError):
            verify_token(token)

    def test_garbage_rejected(self):
        with pytest.raises(TokenInvalidError):
            verify_token("not.a.jwt")


class TestPrincipal:
    """Test building the principal from claims."""

    def test_from_claims(self):
        principal = principal_from_claims(
            {"sub": 42, "email": "a@example.com", "name": "Alice", "roles": ["administrator"], "email_verified": True}
        )

        assert principal == Principal(
            user_id="42",
            email="a@example.com",
            name="Alice",
            roles=["administrator"],
            email_verified=True,
        )
        assert principal.is_admin is True

    def test_single_role_string(self):
        principal = principal_from_claims({"sub": "user-1", "roles": "premium"})

        assert principal.roles == ["premium"]
        assert principal.is_admin is False
        assert principal.email_verified is False

    def test_missing_subject(self):
        with pytest.raises(TokenInvalidError):
            principal_from_claims({"email": "a@example.com"})


@pytest.mark.asyncio
class TestDependencies:
    """Test the route dependencies."""

    async def test_current_principal(self):
        principal = await get_current_principal(bearer(token_for("user-1")))

        assert principal.user_id == "user-1"
        assert principal.email_verified is True

    async def test_missing_credentials(self):
        with pytest.raises(AuthenticationError):
            await get_current_principal(None)

    async def test_expired_is_401(self):
        with pytest.raises(AuthenticationError) as exc_info:
            await get_current_principal(bearer(token_for("user-1", expires_delta=timedelta(seconds=-10))))

        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Token has expired"

    async def test_require_admin(self, principal, admin_principal):
        assert await require_admin(admin_principal) is admin_principal

        with pytest.raises(AuthorizationError) as exc_info:
            await require_admin(principal)
        assert exc_info.value.status_code == 403

    async def test_require_verified_email(self, principal):
        assert await require_verified_email(principal) is principal

        principal.email_verified = False
        with pytest.raises(EmailNotVerifiedError):
            await require_verified_email(principal)

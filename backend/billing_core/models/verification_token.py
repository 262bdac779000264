"""
Verification token model.

WHAT: Time-limited, single-use email verification tokens.

WHY: Purchases require a verified email. The identity provider issues the
tokens into this shared table and they linger after expiry; the cleanup
job removes them so the table does not grow without bound.
"""

import enum

from sqlalchemy import Column, DateTime, String

from billing_core.models.base import Base, PrimaryKeyMixin, TimestampMixin, str_enum


class TokenType(str, enum.Enum):
    EMAIL_VERIFICATION = "email_verification"
    EMAIL_CHANGE = "email_change"


class VerificationToken(Base, PrimaryKeyMixin, TimestampMixin):
    """Single-use verification token."""

    __tablename__ = "verification_tokens"

    token = Column(String(255), unique=True, nullable=False)
    token_type = Column(str_enum(TokenType), nullable=False, default=TokenType.EMAIL_VERIFICATION)
    user_id = Column(String(255), nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    used_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<VerificationToken(user={self.user_id}, type={self.token_type.value})>"

"""
Verification Token Data Access Object (DAO).

WHAT: Cleanup of expired email verification tokens.
"""

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.dao.base import BaseDAO
from billing_core.models.verification_token import VerificationToken


class VerificationTokenDAO(BaseDAO[VerificationToken]):
    """Data Access Object for VerificationToken model."""

    def __init__(self, session: AsyncSession):
        super().__init__(VerificationToken, session)

    async def cleanup_expired_tokens(self, now: datetime) -> int:
        """
        Delete tokens whose expiry has passed.

        Returns:
            Number of tokens deleted
        """
        result = await self.session.execute(
            VerificationToken.__table__.delete().where(VerificationToken.expires_at < now)
        )
        return result.rowcount or 0

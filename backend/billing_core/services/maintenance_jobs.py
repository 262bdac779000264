"""
Retention sweeps run by the background scheduler.

WHAT: Deletes expired audit logs, webhook event records and verification
tokens.

WHY: Each table carries its own expires_at; rows past it are dead weight
(and, for audit logs, past the retention the service promises).

HOW: Every run takes the job lock, opens its own session, commits, and
logs the outcome. Errors are logged and never raised into the scheduler.
"""

import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.core.exceptions import AppException
from billing_core.dao.verification_token import VerificationTokenDAO
from billing_core.dao.webhook_event import WebhookEventDAO
from billing_core.db.session import AsyncSessionLocal
from billing_core.models.audit_log import AuditEventType
from billing_core.models.base import utcnow
from billing_core.services.audit import AuditService
from billing_core.services.job_lock import JobLock, get_job_lock

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


async def run_job(
    job_name: str,
    work: Callable[[AsyncSession], Awaitable[int]],
    session_factory: SessionFactory = AsyncSessionLocal,
    lock: Optional[JobLock] = None,
) -> Optional[int]:
    """
    Run one sweep under the job lock in its own transaction.

    Returns:
        Rows deleted, or None if skipped or failed
    """
    lock = lock or get_job_lock()
    if not await lock.acquire(job_name):
        return None

    try:
        async with session_factory() as session:
            try:
                deleted = await work(session)
                await session.commit()
            except (AppException, SQLAlchemyError) as e:
                await session.rollback()
                logger.error(f"Background job {job_name} failed: {e}", exc_info=True)
                return None
    finally:
        await lock.release(job_name)

    logger.info(f"Background job {job_name} deleted {deleted} rows", extra={"job": job_name, "deleted": deleted})
    return deleted


async def sweep_audit_logs(session: AsyncSession) -> int:
    audit = AuditService(session)
    deleted = await audit.sweep_expired()
    if deleted:
        await audit.log(
            AuditEventType.SYSTEM_RETENTION_SWEEP,
            action=f"Deleted {deleted} expired audit logs",
            metadata={"deleted": deleted},
        )
    return deleted


async def sweep_webhook_events(session: AsyncSession) -> int:
    return await WebhookEventDAO(session).delete_expired(utcnow())


async def sweep_verification_tokens(session: AsyncSession) -> int:
    return await VerificationTokenDAO(session).cleanup_expired_tokens(utcnow())


# ============================================================================
# Scheduler entry points
# ============================================================================


async def audit_retention_job() -> Optional[int]:
    return await run_job("audit_retention_sweep", sweep_audit_logs)


async def webhook_record_job() -> Optional[int]:
    return await run_job("webhook_record_sweep", sweep_webhook_events)


async def verification_token_job() -> Optional[int]:
    return await run_job("verification_token_sweep", sweep_verification_tokens)

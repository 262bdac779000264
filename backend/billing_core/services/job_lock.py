"""
Single-instance job lock.

WHAT: A Redis lock (SET NX EX) that lets only one replica run a given
background job at a time.

WHY: Every API replica runs its own scheduler. Without a shared lock each
retention sweep would run once per replica.

HOW:
- acquire(): SET key token NX EX ttl; True only for the winner
- release(): deletes the key only while it still holds our token
- Fail-open: if Redis is unavailable the job runs anyway. The sweeps are
  idempotent deletes, so a duplicate run is harmless while a skipped run
  delays cleanup.
"""

import logging
import uuid
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from billing_core.core.config import settings

logger = logging.getLogger(__name__)


# Compare-and-delete so a lock that expired and was taken by another
# replica is never released by us
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class JobLock:
    """
    Redis-backed job lock.

    Example:
        lock = JobLock(redis_client)
        if await lock.acquire("audit_sweep"):
            try:
                ...
            finally:
                await lock.release("audit_sweep")
    """

    KEY_PREFIX = "billing:job_lock"

    def __init__(self, redis_client: aioredis.Redis, ttl_seconds: Optional[int] = None):
        self._redis = redis_client
        self._ttl = ttl_seconds or settings.JOB_LOCK_TTL_SECONDS
        self._token = uuid.uuid4().hex

    def _key(self, job_name: str) -> str:
        return f"{self.KEY_PREFIX}:{job_name}"

    async def acquire(self, job_name: str) -> bool:
        """
        Try to take the lock.

        Returns:
            True if this instance should run the job
        """
        try:
            acquired = await self._redis.set(self._key(job_name), self._token, nx=True, ex=self._ttl)
        except (RedisError, OSError) as e:
            logger.warning(
                f"Job lock unavailable for {job_name}, running without it: {e}",
                extra={"job": job_name},
            )
            return True

        if not acquired:
            logger.info(f"Job {job_name} is running on another instance; skipped")
        return bool(acquired)

    async def release(self, job_name: str) -> None:
        try:
            await self._redis.eval(RELEASE_SCRIPT, 1, self._key(job_name), self._token)
        except (RedisError, OSError) as e:
            logger.warning(f"Could not release job lock {job_name}: {e}", extra={"job": job_name})


# ============================================================================
# Global Job Lock Instance
# ============================================================================


_job_lock: Optional[JobLock] = None


def get_job_lock() -> JobLock:
    """
    Get or create the global job lock.

    WHY: One Redis connection pool per process, shared by every job.
    """
    global _job_lock

    if _job_lock is None:
        redis_client = aioredis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
        )
        _job_lock = JobLock(redis_client=redis_client)

    return _job_lock

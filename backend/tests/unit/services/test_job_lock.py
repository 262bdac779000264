"""
Job Lock Tests.

WHAT: Tests for the Redis lock guarding background sweeps.

WHY: Every replica runs a scheduler. The lock must let exactly one of
them run a sweep, and a Redis outage must not stop cleanup altogether.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from billing_core.services.job_lock import RELEASE_SCRIPT, JobLock


@pytest.fixture
def mock_redis():
    """
    Create mock Redis client.

    WHY: Unit tests should not depend on real Redis.
    """
    redis = MagicMock()
    redis.set = AsyncMock(return_value=True)
    redis.eval = AsyncMock(return_value=1)
    return redis


@pytest.mark.asyncio
class TestJobLock:
    """Tests for acquire / release."""

    async def test_acquire_sets_key_with_ttl(self, mock_redis):
        lock = JobLock(mock_redis, ttl_seconds=30)

        assert await lock.acquire("audit_sweep") is True

        args, kwargs = mock_redis.set.call_args
        assert args[0] == "billing:job_lock:audit_sweep"
        assert kwargs == {"nx": True, "ex": 30}

    async def test_acquire_lost_to_other_instance(self, mock_redis):
        mock_redis.set.return_value = None
        lock = JobLock(mock_redis)

        assert await lock.acquire("audit_sweep") is False

    async def test_fails_open_when_redis_is_down(self, mock_redis):
        """
        Test acquire() while Redis is unreachable.

        WHY: Sweeps are idempotent deletes; a duplicate run is harmless
        while a skipped run delays cleanup.
        """
        mock_redis.set.side_effect = RedisConnectionError("refused")
        lock = JobLock(mock_redis)

        assert await lock.acquire("audit_sweep") is True

    async def test_release_deletes_only_own_token(self, mock_redis):
        lock = JobLock(mock_redis)
        await lock.acquire("audit_sweep")
        token = mock_redis.set.call_args.args[1]

        await lock.release("audit_sweep")

        mock_redis.eval.assert_awaited_once_with(RELEASE_SCRIPT, 1, "billing:job_lock:audit_sweep", token)

    async def test_instances_use_distinct_tokens(self, mock_redis):
        first, second = JobLock(mock_redis), JobLock(mock_redis)

        await first.acquire("job")
        await second.acquire("job")

        tokens = [call.args[1] for call in mock_redis.set.call_args_list]
        assert tokens[0] != tokens[1]

    async def test_release_error_is_logged_not_raised(self, mock_redis):
        mock_redis.eval.side_effect = RedisConnectionError("refused")
        lock = JobLock(mock_redis)

        await lock.release("audit_sweep")

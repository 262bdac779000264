"""
Directory Client and Role Sync Tests.

WHAT: Tests for the identity provider HTTP client and the best-effort
role synchronisation built on it.

WHY: The directory is the only source of user existence and roles.
Outages must surface as DirectoryUnavailableError so license assignment
can degrade, while role sync must never undo a completed payment.

HOW: httpx.MockTransport answers requests in-process.
"""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from billing_core.core.exceptions import DirectoryUnavailableError, ExternalServiceError
from billing_core.models.plan import Plan
from billing_core.services.directory import DirectoryClient, DirectoryUser
from billing_core.services.role_sync import RoleSync


def make_client(handler, **kwargs) -> DirectoryClient:
    return DirectoryClient(
        base_url="https://directory.test/api/",
        api_token="dir-token",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.mark.asyncio
class TestDirectoryClient:
    """Tests for DirectoryClient."""

    async def test_get_user(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(
                200,
                json={"id": 42, "email": "a@example.com", "username": "alice", "roles": ["premium"], "email_verified": True},
            )

        user = await make_client(handler).get_user("42")

        assert seen == {"url": "https://directory.test/api/users/42", "auth": "Bearer dir-token"}
        assert user == DirectoryUser(
            id="42", email="a@example.com", name="alice", roles=["premium"], email_verified=True
        )

    async def test_unknown_user_is_none(self):
        user = await make_client(lambda request: httpx.Response(404)).get_user("ghost")

        assert user is None

    async def test_server_error_is_unavailable(self):
        with pytest.raises(DirectoryUnavailableError):
            await make_client(lambda request: httpx.Response(503)).get_user("42")

    async def test_client_error_is_rejected(self):
        with pytest.raises(ExternalServiceError) as exc_info:
            await make_client(lambda request: httpx.Response(403)).get_user("42")

        assert not isinstance(exc_info.value, DirectoryUnavailableError)

    async def test_connection_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(DirectoryUnavailableError):
            await make_client(handler).get_user("42")

    async def test_timeout_is_unavailable(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(DirectoryUnavailableError) as exc_info:
            await make_client(handler, timeout=0.5).get_user("42")

        assert exc_info.value.context["timeout"] == 0.5

    async def test_unconfigured_base_url(self):
        client = DirectoryClient(base_url="", transport=httpx.MockTransport(lambda r: httpx.Response(200)))

        with pytest.raises(DirectoryUnavailableError):
            await client.get_user("42")

    async def test_assign_role_posts_role(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(204)

        await make_client(handler).assign_role("42", "premium")

        assert seen == {"method": "POST", "path": "/api/users/42/roles", "body": {"role": "premium"}}

    async def test_revoke_missing_role_is_noop(self):
        await make_client(lambda request: httpx.Response(404)).revoke_role("42", "premium")

    async def test_revoke_rejected(self):
        with pytest.raises(ExternalServiceError):
            await make_client(lambda request: httpx.Response(409)).revoke_role("42", "premium")


@pytest.mark.asyncio
class TestRoleSync:
    """Tests for RoleSync."""

    @pytest.fixture
    def premium(self) -> Plan:
        return Plan(name="Pro", required_role="premium")

    @pytest.fixture
    def team(self) -> Plan:
        return Plan(name="Team", required_role="team")

    async def test_grant(self, directory, premium):
        assert await RoleSync(directory).grant("user-1", premium) is True
        directory.assign_role.assert_awaited_once_with("user-1", "premium")

    async def test_plan_without_role_is_skipped(self, directory):
        assert await RoleSync(directory).grant("user-1", Plan(name="Free")) is False
        directory.assign_role.assert_not_called()

    async def test_missing_user_is_skipped(self, directory, premium):
        assert await RoleSync(directory).grant(None, premium) is False

    async def test_directory_failure_is_swallowed(self, directory, premium):
        """
        Test a directory outage during grant.

        WHY: The payment already happened; role sync is best effort.
        """
        directory.assign_role = AsyncMock(side_effect=DirectoryUnavailableError(message="down"))

        assert await RoleSync(directory).grant("user-1", premium) is False

    async def test_revoke_failure_is_swallowed(self, directory, premium):
        directory.revoke_role = AsyncMock(side_effect=ExternalServiceError(message="nope"))

        assert await RoleSync(directory).revoke("user-1", premium) is False

    async def test_swap_moves_role(self, directory, premium, team):
        await RoleSync(directory).swap("user-1", premium, team)

        directory.revoke_role.assert_awaited_once_with("user-1", "premium")
        directory.assign_role.assert_awaited_once_with("user-1", "team")

    async def test_swap_same_role_is_noop(self, directory, premium):
        await RoleSync(directory).swap("user-1", premium, Plan(name="Pro Annual", required_role="premium"))

        directory.revoke_role.assert_not_called()
        directory.assign_role.assert_not_called()

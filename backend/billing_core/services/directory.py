"""
Directory (identity provider) API client.

WHAT: HTTP client for the identity provider's REST API.

WHY: The billing core does not own users. It needs to:
1. Confirm a license target exists before assigning a seat
2. Grant the role a plan requires while its subscription is active
3. Revoke that role when the subscription ends

HOW: Uses httpx for async HTTP with a bearer token and a per-call
timeout. Transport errors, timeouts and 5xx responses are wrapped in
DirectoryUnavailableError so callers can decide whether to degrade.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from billing_core.core.config import settings
from billing_core.core.exceptions import DirectoryUnavailableError, ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass
class DirectoryUser:
    """User record as returned by the directory."""

    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    email_verified: bool = False

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "DirectoryUser":
        return cls(
            id=str(data["id"]),
            email=data.get("email"),
            name=data.get("name") or data.get("username"),
            roles=list(data.get("roles") or []),
            email_verified=bool(data.get("email_verified", False)),
        )


class DirectoryClient:
    """
    Async HTTP client for the directory API.

    Example:
        client = get_directory_client()
        user = await client.get_user("user-123")
        if user:
            await client.assign_role(user.id, "premium")
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: Directory API root (defaults to settings)
            api_token: Bearer token (defaults to settings)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use MockTransport)
        """
        self._base_url = (base_url if base_url is not None else settings.DIRECTORY_BASE_URL or "").rstrip("/")
        self._api_token = api_token if api_token is not None else settings.DIRECTORY_API_TOKEN
        self._timeout = timeout or settings.DIRECTORY_TIMEOUT_SECONDS
        self._transport = transport

    def _get_headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        return headers

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """
        Make an authenticated request to the directory.

        HOW:
        1. Fails fast when no base URL is configured
        2. Makes the request with the configured timeout
        3. Wraps transport errors and 5xx in DirectoryUnavailableError
        4. Returns the response for 2xx-4xx so callers can read 404s

        Raises:
            DirectoryUnavailableError: If the directory cannot answer
        """
        if not self._base_url:
            raise DirectoryUnavailableError(
                message="Directory base URL is not configured",
                endpoint=endpoint,
            )

        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method=method,
                    url=endpoint,
                    headers=self._get_headers(),
                    json=data,
                )
        except httpx.TimeoutException:
            raise DirectoryUnavailableError(
                message="Directory request timed out",
                endpoint=endpoint,
                timeout=self._timeout,
            )
        except httpx.RequestError as e:
            raise DirectoryUnavailableError(
                message=f"Directory connection error: {str(e)}",
                endpoint=endpoint,
            )

        if response.status_code >= 500:
            raise DirectoryUnavailableError(
                message=f"Directory returned HTTP {response.status_code}",
                endpoint=endpoint,
                method=method,
            )

        return response

    # =========================================================================
    # Users
    # =========================================================================

    async def get_user(self, user_id: str) -> Optional[DirectoryUser]:
        """
        Look up a user.

        Returns:
            DirectoryUser, or None if the directory does not know the user

        Raises:
            DirectoryUnavailableError: If the directory cannot answer
        """
        response = await self._request("GET", f"/users/{user_id}")

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise ExternalServiceError(
                message=f"Directory rejected user lookup (HTTP {response.status_code})",
                user_id=user_id,
            )

        return DirectoryUser.from_payload(response.json())

    # =========================================================================
    # Roles
    # =========================================================================

    async def assign_role(self, user_id: str, role: str) -> None:
        """Grant a role to a user."""
        response = await self._request("POST", f"/users/{user_id}/roles", data={"role": role})
        if response.status_code >= 400:
            raise ExternalServiceError(
                message=f"Directory rejected role assignment (HTTP {response.status_code})",
                user_id=user_id,
                role=role,
            )
        logger.info(f"Assigned role {role} to user {user_id}")

    async def revoke_role(self, user_id: str, role: str) -> None:
        """
        Revoke a role from a user.

        NOTE: Revoking a role the user does not hold (404) is a no-op.
        """
        response = await self._request("DELETE", f"/users/{user_id}/roles/{role}")
        if response.status_code == 404:
            return
        if response.status_code >= 400:
            raise ExternalServiceError(
                message=f"Directory rejected role revocation (HTTP {response.status_code})",
                user_id=user_id,
                role=role,
            )
        logger.info(f"Revoked role {role} from user {user_id}")


_directory_client: Optional[DirectoryClient] = None


def get_directory_client() -> DirectoryClient:
    """
    Get or create the global directory client.

    WHY: Also used as a FastAPI dependency so tests can override it.
    """
    global _directory_client

    if _directory_client is None:
        _directory_client = DirectoryClient()

    return _directory_client

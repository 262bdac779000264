"""
Plan role synchronisation.

WHAT: Grants the directory role a plan requires when a subscription
becomes active, and revokes it when the subscription ends.

WHY: Downstream services authorize on directory roles, not on billing
rows. Role sync is best effort: a directory outage must not undo a
payment that already happened, so failures are logged and swallowed.
"""

import logging
from typing import Optional

from billing_core.core.exceptions import ExternalServiceError
from billing_core.models.plan import Plan
from billing_core.services.directory import DirectoryClient

logger = logging.getLogger(__name__)


class RoleSync:
    """Best-effort role grant / revoke through the directory."""

    def __init__(self, directory: DirectoryClient):
        self.directory = directory

    async def grant(self, user_id: Optional[str], plan: Optional[Plan]) -> bool:
        """
        Grant plan.required_role to the user.

        Returns:
            True if the role was granted, False if skipped or failed
        """
        if not user_id or plan is None or not plan.required_role:
            return False
        try:
            await self.directory.assign_role(user_id, plan.required_role)
            return True
        except ExternalServiceError as e:
            logger.warning(
                f"Could not grant role {plan.required_role} to user {user_id}: {e.message}",
                extra={"user_id": user_id, "role": plan.required_role},
            )
            return False

    async def revoke(self, user_id: Optional[str], plan: Optional[Plan]) -> bool:
        """Revoke plan.required_role from the user."""
        if not user_id or plan is None or not plan.required_role:
            return False
        try:
            await self.directory.revoke_role(user_id, plan.required_role)
            return True
        except ExternalServiceError as e:
            logger.warning(
                f"Could not revoke role {plan.required_role} from user {user_id}: {e.message}",
                extra={"user_id": user_id, "role": plan.required_role},
            )
            return False

    async def swap(self, user_id: Optional[str], old_plan: Optional[Plan], new_plan: Optional[Plan]) -> None:
        """Move a user from one plan's role to another's (upgrade / replace)."""
        old_role = old_plan.required_role if old_plan else None
        new_role = new_plan.required_role if new_plan else None
        if old_role == new_role:
            return
        await self.revoke(user_id, old_plan)
        await self.grant(user_id, new_plan)

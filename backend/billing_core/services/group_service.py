"""
Group membership service.

WHAT: Adds users to groups and fires the auto-licensing hook.

WHY: A purchaser can link a license batch to a group. Anyone who then
joins the group as a plain member receives a free seat from that batch
without a separate assignment step.
"""

import logging
import uuid
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.core.auth import Principal
from billing_core.core.exceptions import AccessDeniedError, GroupNotFoundError
from billing_core.dao.group import GroupDAO, GroupMemberDAO
from billing_core.models.audit_log import AuditEventType
from billing_core.models.group import GroupMember, GroupRole
from billing_core.models.subscription import Subscription
from billing_core.services.audit import AuditService
from billing_core.services.directory import DirectoryClient
from billing_core.services.gateway import StripeGateway
from billing_core.services.license_service import LicenseService

logger = logging.getLogger(__name__)


class GroupService:
    """Service for group membership."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: StripeGateway,
        directory: DirectoryClient,
    ):
        self.session = session
        self.group_dao = GroupDAO(session)
        self.member_dao = GroupMemberDAO(session)
        self.licenses = LicenseService(session, gateway, directory)
        self.audit = AuditService(session)

    async def add_member(
        self,
        group_id: uuid.UUID,
        requester: Principal,
        user_id: str,
        role: GroupRole = GroupRole.MEMBER,
    ) -> Tuple[GroupMember, Optional[Subscription]]:
        """
        Add (or re-activate) a group member.

        Returns:
            (membership, license) where license is the auto-assigned seat,
            or None when no linked batch had one

        Raises:
            GroupNotFoundError: Unknown or inactive group
            AccessDeniedError: Requester is not owner, group admin or admin
        """
        group = await self.group_dao.get_by_id(group_id)
        if group is None or not group.is_active:
            raise GroupNotFoundError(group_id=str(group_id))

        if group.owner_user_id != requester.user_id and not requester.is_admin:
            requester_membership = await self.member_dao.get_membership(group_id, requester.user_id)
            if not (
                requester_membership
                and requester_membership.is_active
                and requester_membership.role in (GroupRole.OWNER, GroupRole.ADMIN)
            ):
                raise AccessDeniedError(message="Only group owners and admins can add members")

        member = await self.member_dao.enroll(group_id, user_id, role)

        seat = None
        if member.role == GroupRole.MEMBER:
            seat = await self.licenses.auto_assign_for_group_member(group_id, user_id)

        await self.audit.log(
            AuditEventType.GROUP_MEMBER_ADDED,
            action=f"Added {user_id} to group {group.name}",
            actor_id=requester.user_id,
            actor_email=requester.email,
            target_id=user_id,
            target_type="user",
            organization_id=group.organization_id,
            metadata={
                "group_id": str(group_id),
                "role": member.role.value,
                "license_id": str(seat.id) if seat else None,
            },
        )
        return member, seat

"""
Group Data Access Objects (DAO).

WHAT: DAOs for groups and group memberships.
"""

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.dao.base import BaseDAO
from billing_core.models.base import utcnow
from billing_core.models.group import Group, GroupMember, GroupRole


class GroupDAO(BaseDAO[Group]):
    """Data Access Object for Group model."""

    def __init__(self, session: AsyncSession):
        super().__init__(Group, session)


class GroupMemberDAO(BaseDAO[GroupMember]):
    """Data Access Object for GroupMember model."""

    def __init__(self, session: AsyncSession):
        super().__init__(GroupMember, session)

    async def get_membership(self, group_id: uuid.UUID, user_id: str) -> Optional[GroupMember]:
        """
        Membership row regardless of is_active.

        WHY: (group_id, user_id) is unique; a former member is re-activated
        rather than inserted twice.
        """
        result = await self.session.execute(
            select(GroupMember).where(
                GroupMember.group_id == group_id,
                GroupMember.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def enroll(
        self,
        group_id: uuid.UUID,
        user_id: str,
        role: GroupRole = GroupRole.MEMBER,
    ) -> GroupMember:
        """
        Make the user an active member, re-activating a former membership.

        NOTE: An existing active membership keeps its role.
        """
        member = await self.get_membership(group_id, user_id)
        if member is None:
            return await self.create(group_id=group_id, user_id=user_id, role=role, is_active=True)
        if not member.is_active:
            member.is_active = True
            member.role = role
            member.joined_at = utcnow()
            await self.flush()
        return member

"""
Group models.

WHAT: Learner groups that a license batch can be linked to.

WHY: When a batch is linked to a group, assigning a license also enrolls
the assignee in the group; joining the group as a member can pick up a
free license.
"""

import enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, UniqueConstraint, Uuid

from billing_core.models.base import Base, PrimaryKeyMixin, TimestampMixin, str_enum, utcnow


class GroupRole(str, enum.Enum):
    """Member roles inside a group."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class Group(Base, PrimaryKeyMixin, TimestampMixin):
    """A named set of users."""

    __tablename__ = "groups"

    name = Column(String(255), nullable=False)
    owner_user_id = Column(String(255), nullable=False, index=True)
    organization_id = Column(
        Uuid, ForeignKey("organizations.id", ondelete="SET NULL"), nullable=True, index=True
    )
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Group(id={self.id}, name={self.name})>"


class GroupMember(Base, PrimaryKeyMixin, TimestampMixin):
    """Membership of a user in a group."""

    __tablename__ = "group_members"

    group_id = Column(
        Uuid, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(String(255), nullable=False, index=True)
    role = Column(str_enum(GroupRole), nullable=False, default=GroupRole.MEMBER)
    is_active = Column(Boolean, nullable=False, default=True)
    joined_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_members_group_user"),
    )

    def __repr__(self) -> str:
        return f"<GroupMember(group={self.group_id}, user={self.user_id})>"

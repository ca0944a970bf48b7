"""Group and membership policy.

The ``users`` group is seeded by migration and can never be created, modified, or
deactivated through this service. Memberships are append-only.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from functools import lru_cache
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from certm3.core.errors import ConflictError, ForbiddenError, NotFoundError
from certm3.models.group import PROTECTED_GROUP_NAME, Group, GroupStatus, UserGroup
from certm3.models.user import User

logger = structlog.get_logger(__name__)


def _insert_for(dialect_name: str):
    """INSERT construct supporting ON CONFLICT for the bound dialect."""
    if dialect_name == "postgresql":
        return postgresql.insert
    return sqlite.insert


class GroupService:
    """Enforce protected-group and membership-immutability rules."""

    async def create_group(
        self,
        db_session: AsyncSession,
        name: str,
        display_name: str,
        description: str | None,
        actor: str,
        commit: bool = True,
    ) -> Group:
        """Create an active group."""
        if name == PROTECTED_GROUP_NAME:
            raise ConflictError(
                "Cannot create the users group - it is a protected system group.",
                "protected_group",
            )
        if await db_session.get(Group, name) is not None:
            raise ConflictError("Group with this name already exists.", "group_exists")

        group = Group(
            name=name,
            display_name=display_name,
            description=description,
            status=GroupStatus.ACTIVE,
            created_by=actor,
            updated_by=actor,
        )
        db_session.add(group)
        try:
            if commit:
                await db_session.commit()
            else:
                await db_session.flush()
        except IntegrityError:
            await db_session.rollback()
            raise ConflictError("Group with this name already exists.", "group_exists") from None
        logger.info("group_created", group_name=name)
        return group

    async def find_groups(
        self, db_session: AsyncSession, status: GroupStatus | None = None
    ) -> list[Group]:
        statement = select(Group).order_by(Group.name)
        if status is not None:
            statement = statement.where(Group.status == status)
        return list((await db_session.execute(statement)).scalars().all())

    async def get_group(self, db_session: AsyncSession, name: str) -> Group:
        group = await db_session.get(Group, name)
        if group is None:
            raise NotFoundError("Group not found.")
        return group

    async def update_group(
        self,
        db_session: AsyncSession,
        name: str,
        actor: str,
        display_name: str | None = None,
        description: str | None = None,
    ) -> Group:
        """Update group metadata."""
        self._ensure_not_protected(name, "modified")
        group = await self._get_for_update(db_session, name)
        if display_name is not None:
            group.display_name = display_name
        if description is not None:
            group.description = description
        group.updated_by = actor
        await db_session.commit()
        return group

    async def deactivate_group(self, db_session: AsyncSession, name: str, actor: str) -> Group:
        """Mark a group inactive. Memberships are kept."""
        self._ensure_not_protected(name, "deactivated")
        group = await self._get_for_update(db_session, name)
        group.status = GroupStatus.INACTIVE
        group.updated_by = actor
        await db_session.commit()
        logger.info("group_deactivated", group_name=name)
        return group

    async def add_members(
        self,
        db_session: AsyncSession,
        group_name: str,
        user_ids: Sequence[UUID],
        actor: str,
        commit: bool = True,
    ) -> list[UUID]:
        """Add users to a group, skipping existing memberships.

        Returns the ids that were newly added.
        """
        if await db_session.get(Group, group_name) is None:
            raise NotFoundError("Group not found.")

        dialect_name = db_session.get_bind().dialect.name
        added: list[UUID] = []
        for user_id in dict.fromkeys(user_ids):
            if await db_session.get(User, user_id) is None:
                raise NotFoundError(f"User {user_id} not found.")
            statement = (
                _insert_for(dialect_name)(UserGroup)
                .values(
                    user_id=user_id,
                    group_name=group_name,
                    created_by=actor,
                    updated_by=actor,
                )
                .on_conflict_do_nothing(index_elements=["user_id", "group_name"])
                .returning(UserGroup.user_id)
            )
            inserted = (await db_session.execute(statement)).scalar_one_or_none()
            if inserted is not None:
                added.append(user_id)

        if commit:
            await db_session.commit()
        if added:
            logger.info("group_members_added", group_name=group_name, added_count=len(added))
        return added

    async def remove_members(
        self, db_session: AsyncSession, group_name: str, user_ids: Iterable[UUID]
    ) -> None:
        """Membership history is immutable; removal is always refused."""
        raise ForbiddenError(
            "Group memberships cannot be removed.", "membership_immutable"
        )

    async def get_members(self, db_session: AsyncSession, group_name: str) -> list[User]:
        """Resolve a group's membership rows to users."""
        if await db_session.get(Group, group_name) is None:
            raise NotFoundError("Group not found.")
        statement = (
            select(User)
            .join(UserGroup, UserGroup.user_id == User.id)
            .where(UserGroup.group_name == group_name)
            .order_by(User.username)
        )
        return list((await db_session.execute(statement)).scalars().all())

    async def get_active_group_names(self, db_session: AsyncSession, user_id: UUID) -> set[str]:
        """Names of active groups the user belongs to."""
        statement = (
            select(UserGroup.group_name)
            .join(Group, Group.name == UserGroup.group_name)
            .where(UserGroup.user_id == user_id, Group.status == GroupStatus.ACTIVE)
        )
        return set((await db_session.execute(statement)).scalars().all())

    @staticmethod
    def _ensure_not_protected(name: str, action: str) -> None:
        if name == PROTECTED_GROUP_NAME:
            raise ForbiddenError(
                f"The users group is a protected system group and cannot be {action}.",
                "protected_group",
            )

    @staticmethod
    async def _get_for_update(db_session: AsyncSession, name: str) -> Group:
        statement = (
            select(Group)
            .where(Group.name == name)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        group = (await db_session.execute(statement)).scalar_one_or_none()
        if group is None:
            raise NotFoundError("Group not found.")
        return group


@lru_cache
def get_group_service() -> GroupService:
    """Create and cache the group service dependency."""
    return GroupService()

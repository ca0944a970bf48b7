"""User administration and deactivation with cascading certificate revocation."""

from __future__ import annotations

from functools import lru_cache
from uuid import UUID

import structlog
from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from certm3.core.errors import ConflictError, InvalidStateError, NotFoundError
from certm3.models.certificate import Certificate
from certm3.models.group import UserGroup
from certm3.models.user import User, UserStatus
from certm3.services.certificate_service import (
    USER_DEACTIVATED_REASON,
    CertificateService,
    get_certificate_service,
)

logger = structlog.get_logger(__name__)


class UserService:
    """Service responsible for user records and their one-way deactivation."""

    def __init__(self, certificate_service: CertificateService | None = None) -> None:
        self._certificate_service = certificate_service or get_certificate_service()

    async def create_user(
        self,
        db_session: AsyncSession,
        username: str,
        email: str,
        display_name: str,
        actor: str,
        commit: bool = True,
    ) -> User:
        """Create an active user; username and email are unique."""
        await self._ensure_unique(db_session, username=username, email=email)
        user = User(
            username=username,
            email=email,
            display_name=display_name,
            status=UserStatus.ACTIVE,
            created_by=actor,
            updated_by=actor,
        )
        db_session.add(user)
        try:
            if commit:
                await db_session.commit()
            else:
                await db_session.flush()
        except IntegrityError:
            await db_session.rollback()
            raise ConflictError("Username or email already exists.", "user_exists") from None
        logger.info("user_created", user_id=str(user.id), username=username)
        return user

    async def find_users(
        self, db_session: AsyncSession, status: UserStatus | None = None
    ) -> list[User]:
        statement = select(User).order_by(User.username)
        if status is not None:
            statement = statement.where(User.status == status)
        return list((await db_session.execute(statement)).scalars().all())

    async def get_user(self, db_session: AsyncSession, user_id: UUID) -> User:
        user = await db_session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found.")
        return user

    async def get_user_by_username(self, db_session: AsyncSession, username: str) -> User | None:
        statement = select(User).where(User.username == username)
        return (await db_session.execute(statement)).scalar_one_or_none()

    async def update_user(
        self,
        db_session: AsyncSession,
        user_id: UUID,
        actor: str,
        display_name: str | None = None,
        email: str | None = None,
    ) -> User:
        """Update display name or email of an active user."""
        user = await self._get_for_update(db_session, user_id)
        if user.status != UserStatus.ACTIVE:
            raise InvalidStateError("Cannot update an inactive user.")
        if email is not None and email != user.email:
            taken = await db_session.scalar(
                select(exists().where(User.email == email, User.id != user_id))
            )
            if taken:
                raise ConflictError("Email already exists.", "email_taken")
            user.email = email
        if display_name is not None:
            user.display_name = display_name
        user.updated_by = actor
        try:
            await db_session.commit()
        except IntegrityError:
            await db_session.rollback()
            raise ConflictError("Email already exists.", "email_taken") from None
        return user

    async def deactivate_user(
        self, db_session: AsyncSession, user_id: UUID, actor: str
    ) -> tuple[User, list[Certificate]]:
        """Deactivate a user and revoke every active certificate in the same transaction."""
        user = await self._get_for_update(db_session, user_id)
        if user.status == UserStatus.INACTIVE:
            raise InvalidStateError("User is already inactive.")

        user.status = UserStatus.INACTIVE
        user.updated_by = actor
        revoked = await self._certificate_service.revoke_all_for_user(
            db_session,
            user_id=user.id,
            revoked_by=actor,
            reason=USER_DEACTIVATED_REASON,
        )
        await db_session.commit()
        logger.info(
            "user_deactivated",
            user_id=str(user.id),
            revoked_certificates=len(revoked),
        )
        return user, revoked

    async def get_user_groups(self, db_session: AsyncSession, user_id: UUID) -> list[str]:
        """Names of every group the user has ever been added to."""
        await self.get_user(db_session, user_id)
        statement = (
            select(UserGroup.group_name)
            .where(UserGroup.user_id == user_id)
            .order_by(UserGroup.group_name)
        )
        return list((await db_session.execute(statement)).scalars().all())

    async def _ensure_unique(self, db_session: AsyncSession, username: str, email: str) -> None:
        if await db_session.scalar(select(exists().where(User.username == username))):
            raise ConflictError("Username already exists.", "username_taken")
        if await db_session.scalar(select(exists().where(User.email == email))):
            raise ConflictError("Email already exists.", "email_taken")

    @staticmethod
    async def _get_for_update(db_session: AsyncSession, user_id: UUID) -> User:
        statement = (
            select(User)
            .where(User.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        user = (await db_session.execute(statement)).scalar_one_or_none()
        if user is None:
            raise NotFoundError("User not found.")
        return user


@lru_cache
def get_user_service() -> UserService:
    """Create and cache the user service dependency."""
    return UserService()

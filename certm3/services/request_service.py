"""Identity request store: claim creation, lookup, validation, and cancellation."""

from __future__ import annotations

from functools import lru_cache
from uuid import UUID

import structlog
from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from certm3.core.challenges import challenges_match, generate_challenge, is_well_formed
from certm3.core.errors import ConflictError, InvalidInputError, InvalidStateError, NotFoundError
from certm3.models.group import PROTECTED_GROUP_NAME, Group
from certm3.models.request import IdentityRequest, RequestStatus
from certm3.models.user import User

logger = structlog.get_logger(__name__)

MAX_SEARCH_RESULTS = 500


class RequestService:
    """Owns the pending -> approved/rejected lifecycle of identity requests."""

    async def create_request(
        self,
        db_session: AsyncSession,
        username: str,
        email: str,
        display_name: str,
        actor: str,
    ) -> IdentityRequest:
        """Create a pending request with a fresh challenge."""
        if username == PROTECTED_GROUP_NAME or await self._group_exists(db_session, username):
            raise ConflictError(
                "Username is reserved by an existing group.", "username_reserved"
            )
        if await self._open_request_exists(db_session, username):
            raise ConflictError("Request with this username already exists.", "username_taken")

        identity_request = IdentityRequest(
            username=username,
            email=email,
            display_name=display_name,
            status=RequestStatus.PENDING,
            challenge=generate_challenge(),
            created_by=actor,
            updated_by=actor,
        )
        db_session.add(identity_request)
        try:
            await db_session.commit()
        except IntegrityError:
            await db_session.rollback()
            raise ConflictError(
                "Request with this username already exists.", "username_taken"
            ) from None

        logger.info("request_created", request_id=str(identity_request.id), username=username)
        return identity_request

    async def get_request(self, db_session: AsyncSession, request_id: UUID) -> IdentityRequest:
        """Fetch one request by id."""
        identity_request = await db_session.get(IdentityRequest, request_id)
        if identity_request is None:
            raise NotFoundError("Request not found.")
        return identity_request

    async def search_requests(
        self,
        db_session: AsyncSession,
        username: str | None = None,
        email: str | None = None,
        status: RequestStatus | None = None,
        limit: int = MAX_SEARCH_RESULTS,
    ) -> list[IdentityRequest]:
        """Exact-match search, newest first, bounded to ``MAX_SEARCH_RESULTS`` rows."""
        statement = select(IdentityRequest)
        if username is not None:
            statement = statement.where(IdentityRequest.username == username)
        if email is not None:
            statement = statement.where(IdentityRequest.email == email)
        if status is not None:
            statement = statement.where(IdentityRequest.status == status)
        statement = statement.order_by(IdentityRequest.created_at.desc()).limit(
            max(1, min(limit, MAX_SEARCH_RESULTS))
        )
        result = await db_session.execute(statement)
        return list(result.scalars().all())

    async def validate(
        self,
        db_session: AsyncSession,
        request_id: UUID,
        challenge: str,
        actor: str,
        commit: bool = True,
    ) -> IdentityRequest:
        """Consume the challenge and approve the request.

        The row is locked before the status guard so concurrent validations serialize
        and at most one observes ``pending``. With ``commit=False`` the caller owns the
        transaction.
        """
        identity_request = await self._get_for_update(db_session, request_id)
        if identity_request.status != RequestStatus.PENDING:
            raise InvalidStateError("Request is not pending.")
        if not is_well_formed(challenge) or not challenges_match(
            identity_request.challenge, challenge
        ):
            raise InvalidInputError("Invalid challenge.", "invalid_challenge")

        identity_request.status = RequestStatus.APPROVED
        identity_request.updated_by = actor
        if commit:
            await db_session.commit()
        else:
            await db_session.flush()
        logger.info("request_validated", request_id=str(request_id))
        return identity_request

    async def cancel(self, db_session: AsyncSession, request_id: UUID, actor: str) -> IdentityRequest:
        """Reject a pending request."""
        identity_request = await self._get_for_update(db_session, request_id)
        if identity_request.status != RequestStatus.PENDING:
            raise InvalidStateError("Request is not pending.")
        identity_request.status = RequestStatus.REJECTED
        identity_request.updated_by = actor
        await db_session.commit()
        logger.info("request_cancelled", request_id=str(request_id))
        return identity_request

    async def check_username(self, db_session: AsyncSession, username: str) -> bool:
        """Return True when a user or an open request already holds ``username``."""
        user_taken = await db_session.scalar(select(exists().where(User.username == username)))
        if user_taken:
            return True
        return await self._open_request_exists(db_session, username)

    async def _get_for_update(self, db_session: AsyncSession, request_id: UUID) -> IdentityRequest:
        statement = (
            select(IdentityRequest)
            .where(IdentityRequest.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        identity_request = (await db_session.execute(statement)).scalar_one_or_none()
        if identity_request is None:
            raise NotFoundError("Request not found.")
        return identity_request

    @staticmethod
    async def _open_request_exists(db_session: AsyncSession, username: str) -> bool:
        statement = select(
            exists().where(
                IdentityRequest.username == username,
                IdentityRequest.status != RequestStatus.REJECTED,
            )
        )
        return bool(await db_session.scalar(statement))

    @staticmethod
    async def _group_exists(db_session: AsyncSession, name: str) -> bool:
        return bool(await db_session.scalar(select(exists().where(Group.name == name))))


@lru_cache
def get_request_service() -> RequestService:
    """Create and cache the request service dependency."""
    return RequestService()

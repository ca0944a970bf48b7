"""Enrollment orchestration: challenge validation through certificate issuance.

``complete_validation`` approves a request, materializes its user and memberships,
and mints the short-lived enrollment credential in one transaction.
``submit_csr`` redeems that credential for a signed client certificate.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from functools import lru_cache
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from certm3.core.ca import (
    CertificateAuthority,
    IssuedCertificate,
    SubjectIdentity,
    get_certificate_authority,
)
from certm3.core.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ServiceError,
    UnauthorizedError,
)
from certm3.core.jwt import (
    EnrollmentTokenService,
    TokenValidationError,
    get_enrollment_token_service,
)
from certm3.models.certificate import Certificate
from certm3.models.group import PROTECTED_GROUP_NAME, Group, UserGroup
from certm3.models.request import IdentityRequest, RequestStatus
from certm3.models.user import User, UserStatus
from certm3.services.certificate_service import (
    CertificateAttributes,
    CertificateService,
    get_certificate_service,
)
from certm3.services.group_service import GroupService, get_group_service
from certm3.services.request_service import RequestService, get_request_service
from certm3.services.user_service import UserService, get_user_service

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EnrollmentGrant:
    """Credential handed to the claimant after validation."""

    token: str
    user_id: UUID
    request_id: UUID
    expires_in: int


@dataclass(frozen=True)
class IssuanceResult:
    """Outcome of a successful CSR submission."""

    certificate: Certificate
    issued: IssuedCertificate
    ca_certificate_pem: str


def resolve_authorized_groups(
    username: str, requested: Sequence[str], memberships: set[str]
) -> list[str]:
    """Requested groups the user actually belongs to, plus the personal and default groups."""
    granted = [PROTECTED_GROUP_NAME, username]
    granted.extend(sorted(set(requested) & memberships))
    return list(dict.fromkeys(granted))


class EnrollmentService:
    """Drives an approved identity claim through to an issued certificate."""

    def __init__(
        self,
        request_service: RequestService,
        user_service: UserService,
        group_service: GroupService,
        certificate_service: CertificateService,
        token_service: EnrollmentTokenService,
        certificate_authority: CertificateAuthority,
    ) -> None:
        self._requests = request_service
        self._users = user_service
        self._groups = group_service
        self._certificates = certificate_service
        self._tokens = token_service
        self._ca = certificate_authority

    async def complete_validation(
        self,
        db_session: AsyncSession,
        request_id: UUID,
        challenge: str,
        actor: str,
    ) -> EnrollmentGrant:
        """Validate the challenge and prepare the identity for certificate issuance.

        Every step shares one transaction: if the user, personal group, or memberships
        cannot be established the request stays pending.
        """
        try:
            identity_request = await self._requests.validate(
                db_session, request_id=request_id, challenge=challenge, actor=actor, commit=False
            )
            user = await self._materialize_user(db_session, identity_request, actor)
            await self._ensure_personal_group(db_session, user, actor)
            await self._groups.add_members(
                db_session, group_name=user.username, user_ids=[user.id], actor=actor, commit=False
            )
            await self._groups.add_members(
                db_session,
                group_name=PROTECTED_GROUP_NAME,
                user_ids=[user.id],
                actor=actor,
                commit=False,
            )
            await db_session.commit()
        except ServiceError:
            await db_session.rollback()
            raise
        except IntegrityError:
            await db_session.rollback()
            raise ConflictError(
                "The identity changed concurrently; retry validation.", "conflict"
            ) from None

        token = self._tokens.issue(user_id=str(user.id), request_id=str(identity_request.id))
        logger.info(
            "enrollment_credential_issued",
            request_id=str(identity_request.id),
            user_id=str(user.id),
        )
        return EnrollmentGrant(
            token=token,
            user_id=user.id,
            request_id=identity_request.id,
            expires_in=self._tokens.ttl_seconds,
        )

    async def submit_csr(
        self,
        db_session: AsyncSession,
        request_id: UUID,
        token: str,
        csr_pem: str,
        requested_groups: Sequence[str],
        actor: str,
    ) -> IssuanceResult:
        """Redeem an enrollment credential for a signed certificate."""
        try:
            claims = self._tokens.verify(token)
        except TokenValidationError as exc:
            raise UnauthorizedError(exc.detail, exc.code) from None
        if claims.request_id != str(request_id):
            raise UnauthorizedError("Token was not issued for this request.")

        identity_request = await self._requests.get_request(db_session, request_id)
        if identity_request.status != RequestStatus.APPROVED:
            raise InvalidStateError("Request is not approved.")
        user = await self._user_for_claims(db_session, claims.user_id)
        if user.username != identity_request.username:
            raise UnauthorizedError("Token was not issued for this request.")
        if user.status != UserStatus.ACTIVE:
            raise InvalidStateError("User is inactive.")

        memberships = await self._groups.get_active_group_names(db_session, user.id)
        groups = resolve_authorized_groups(user.username, requested_groups, memberships)
        identity = SubjectIdentity(username=user.username, email=user.email)
        issued = await asyncio.to_thread(self._ca.sign, csr_pem, identity, groups)

        # Share-locked until commit: a deactivation either lands before this check or
        # waits and then revokes the new record.
        user = await self._lock_user(db_session, user.id)
        if user.status != UserStatus.ACTIVE:
            logger.warning(
                "certificate_discarded",
                serial_number=issued.serial_number,
                username=user.username,
                reason="user_deactivated",
            )
            raise InvalidStateError("User is inactive.")

        certificate = await self._certificates.create(
            db_session,
            CertificateAttributes(
                serial_number=issued.serial_number,
                username=user.username,
                user_id=user.id,
                common_name=issued.common_name,
                email=issued.email,
                fingerprint=issued.fingerprint,
                not_before=issued.not_before,
                not_after=issued.not_after,
            ),
            actor=actor,
        )
        logger.info(
            "certificate_issued",
            serial_number=issued.serial_number,
            username=user.username,
            groups=list(issued.groups),
        )
        return IssuanceResult(
            certificate=certificate,
            issued=issued,
            ca_certificate_pem=self._ca.certificate_pem,
        )

    async def _materialize_user(
        self, db_session: AsyncSession, identity_request: IdentityRequest, actor: str
    ) -> User:
        """Fetch the user named by the request, creating it on first enrollment."""
        user = await self._users.get_user_by_username(db_session, identity_request.username)
        if user is None:
            return await self._users.create_user(
                db_session,
                username=identity_request.username,
                email=identity_request.email,
                display_name=identity_request.display_name,
                actor=actor,
                commit=False,
            )
        if user.email != identity_request.email:
            raise ConflictError(
                "An existing user holds this username with a different email.", "user_mismatch"
            )
        if user.status != UserStatus.ACTIVE:
            raise InvalidStateError("User is inactive.")
        return user

    async def _ensure_personal_group(self, db_session: AsyncSession, user: User, actor: str) -> None:
        """Create the user's personal group, refusing to adopt someone else's group."""
        group = await db_session.get(Group, user.username)
        if group is None:
            await self._groups.create_group(
                db_session,
                name=user.username,
                display_name=f"{user.username}'s Group",
                description=f"Personal group for {user.username}",
                actor=actor,
                commit=False,
            )
            return
        if await db_session.get(UserGroup, (user.id, user.username)) is None:
            raise ConflictError(
                "A group with this username already exists.", "username_reserved"
            )

    @staticmethod
    async def _lock_user(db_session: AsyncSession, user_id: UUID) -> User:
        statement = (
            select(User)
            .where(User.id == user_id)
            .with_for_update(read=True)
            .execution_options(populate_existing=True)
        )
        user = (await db_session.execute(statement)).scalar_one_or_none()
        if user is None:
            raise NotFoundError("User not found.")
        return user

    @staticmethod
    async def _user_for_claims(db_session: AsyncSession, subject: str) -> User:
        try:
            user_id = UUID(subject)
        except ValueError:
            raise UnauthorizedError("Invalid token.") from None
        user = await db_session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found.")
        return user


@lru_cache
def get_enrollment_service() -> EnrollmentService:
    """Wire the enrollment service from the cached collaborators."""
    return EnrollmentService(
        request_service=get_request_service(),
        user_service=get_user_service(),
        group_service=get_group_service(),
        certificate_service=get_certificate_service(),
        token_service=get_enrollment_token_service(),
        certificate_authority=get_certificate_authority(),
    )

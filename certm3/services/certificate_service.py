"""Certificate lifecycle: registration, metadata updates, revocation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from functools import lru_cache
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from certm3.config import get_settings
from certm3.core.ca import normalize_serial_number
from certm3.core.errors import ConflictError, InvalidInputError, InvalidStateError, NotFoundError
from certm3.models.certificate import Certificate, CertificateStatus
from certm3.models.user import User

logger = structlog.get_logger(__name__)

USER_DEACTIVATED_REASON = "User deactivated"


@dataclass(frozen=True)
class CertificateAttributes:
    """Attributes required to register a certificate record."""

    serial_number: str
    username: str
    user_id: UUID
    common_name: str
    email: str
    fingerprint: str
    not_before: datetime
    not_after: datetime
    code_version: str | None = None


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons are well defined."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _lookup_key(serial_number: str) -> str:
    try:
        return normalize_serial_number(serial_number)
    except InvalidInputError:
        # Unmatchable; the lookup reports not found.
        return serial_number.lower()


def _ensure_validity_window(not_before: datetime, not_after: datetime) -> None:
    if _as_utc(not_before) >= _as_utc(not_after):
        raise InvalidInputError("notBefore must be before notAfter.", "invalid_dates")


class CertificateService:
    """Track issued certificates and enforce their terminal revoked state."""

    def __init__(self, code_version: str | None = None) -> None:
        self._code_version = code_version

    @property
    def code_version(self) -> str:
        return self._code_version or get_settings().app.code_version

    async def create(
        self,
        db_session: AsyncSession,
        attributes: CertificateAttributes,
        actor: str,
        commit: bool = True,
    ) -> Certificate:
        """Register an active certificate; fingerprints are unique across all records."""
        _ensure_validity_window(attributes.not_before, attributes.not_after)
        serial_number = normalize_serial_number(attributes.serial_number)
        if await db_session.get(User, attributes.user_id) is None:
            raise NotFoundError("User not found.")
        existing = await db_session.scalar(
            select(Certificate.serial_number).where(
                Certificate.fingerprint == attributes.fingerprint
            )
        )
        if existing is not None:
            raise ConflictError(
                "Certificate with this fingerprint already exists.", "fingerprint_exists"
            )
        if await db_session.get(Certificate, serial_number) is not None:
            raise ConflictError("Certificate with this serial number already exists.", "serial_exists")

        certificate = Certificate(
            serial_number=serial_number,
            code_version=attributes.code_version or self.code_version,
            username=attributes.username,
            user_id=attributes.user_id,
            common_name=attributes.common_name,
            email=attributes.email,
            fingerprint=attributes.fingerprint,
            not_before=_as_utc(attributes.not_before),
            not_after=_as_utc(attributes.not_after),
            status=CertificateStatus.ACTIVE,
            created_by=actor,
            updated_by=actor,
        )
        db_session.add(certificate)
        try:
            if commit:
                await db_session.commit()
            else:
                await db_session.flush()
        except IntegrityError:
            # Concurrent registration of the same key or serial.
            await db_session.rollback()
            raise ConflictError(
                "Certificate with this fingerprint already exists.", "fingerprint_exists"
            ) from None

        logger.info(
            "certificate_recorded",
            serial_number=certificate.serial_number,
            username=certificate.username,
        )
        return certificate

    async def find(
        self,
        db_session: AsyncSession,
        username: str | None = None,
        status: CertificateStatus | None = None,
        user_id: UUID | None = None,
    ) -> list[Certificate]:
        statement = select(Certificate).order_by(Certificate.not_before.desc())
        if username is not None:
            statement = statement.where(Certificate.username == username)
        if status is not None:
            statement = statement.where(Certificate.status == status)
        if user_id is not None:
            statement = statement.where(Certificate.user_id == user_id)
        return list((await db_session.execute(statement)).scalars().all())

    async def get(self, db_session: AsyncSession, serial_number: str) -> Certificate:
        certificate = await db_session.get(Certificate, _lookup_key(serial_number))
        if certificate is None:
            raise NotFoundError("Certificate not found.")
        return certificate

    async def update_by_id(
        self,
        db_session: AsyncSession,
        serial_number: str,
        actor: str,
        code_version: str | None = None,
        common_name: str | None = None,
        email: str | None = None,
        not_before: datetime | None = None,
        not_after: datetime | None = None,
    ) -> Certificate:
        """Update metadata of an active certificate."""
        certificate = await self._get_for_update(db_session, serial_number)
        if certificate.status == CertificateStatus.REVOKED:
            raise InvalidStateError("Cannot update a revoked certificate.")

        _ensure_validity_window(
            not_before if not_before is not None else certificate.not_before,
            not_after if not_after is not None else certificate.not_after,
        )
        if code_version is not None:
            certificate.code_version = code_version
        if common_name is not None:
            certificate.common_name = common_name
        if email is not None:
            certificate.email = email
        if not_before is not None:
            certificate.not_before = _as_utc(not_before)
        if not_after is not None:
            certificate.not_after = _as_utc(not_after)
        certificate.updated_by = actor
        await db_session.commit()
        return certificate

    async def revoke(
        self,
        db_session: AsyncSession,
        serial_number: str,
        revoked_by: str,
        reason: str,
    ) -> Certificate:
        """Revoke one certificate. Revocation is terminal."""
        certificate = await self._get_for_update(db_session, serial_number)
        if certificate.status == CertificateStatus.REVOKED:
            raise InvalidStateError("Certificate is already revoked.")
        self._mark_revoked(certificate, revoked_by=revoked_by, reason=reason)
        await db_session.commit()
        logger.info("certificate_revoked", serial_number=certificate.serial_number, reason=reason)
        return certificate

    async def revoke_all_for_user(
        self,
        db_session: AsyncSession,
        user_id: UUID,
        revoked_by: str,
        reason: str = USER_DEACTIVATED_REASON,
    ) -> list[Certificate]:
        """Revoke every active certificate of a user. The caller owns the transaction."""
        statement = (
            select(Certificate)
            .where(Certificate.user_id == user_id, Certificate.status == CertificateStatus.ACTIVE)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        certificates = list((await db_session.execute(statement)).scalars().all())
        for certificate in certificates:
            self._mark_revoked(certificate, revoked_by=revoked_by, reason=reason)
        await db_session.flush()
        return certificates

    async def list_revoked(self, db_session: AsyncSession) -> list[Certificate]:
        statement = (
            select(Certificate)
            .where(Certificate.status == CertificateStatus.REVOKED)
            .order_by(Certificate.revoked_at)
        )
        return list((await db_session.execute(statement)).scalars().all())

    @staticmethod
    def _mark_revoked(certificate: Certificate, revoked_by: str, reason: str) -> None:
        certificate.status = CertificateStatus.REVOKED
        certificate.revoked_at = datetime.now(UTC)
        certificate.revoked_by = revoked_by
        certificate.revocation_reason = reason
        certificate.updated_by = revoked_by

    @staticmethod
    async def _get_for_update(db_session: AsyncSession, serial_number: str) -> Certificate:
        statement = (
            select(Certificate)
            .where(Certificate.serial_number == _lookup_key(serial_number))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        certificate = (await db_session.execute(statement)).scalar_one_or_none()
        if certificate is None:
            raise NotFoundError("Certificate not found.")
        return certificate


@lru_cache
def get_certificate_service() -> CertificateService:
    """Create and cache the certificate service dependency."""
    return CertificateService()

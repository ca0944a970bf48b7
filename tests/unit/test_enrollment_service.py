"""Unit tests for the validation-to-issuance enrollment flow."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from uuid import uuid4

import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from certm3.core.ca import CertificateAuthority, decode_group_extension
from certm3.core.errors import ConflictError, InvalidStateError, UnauthorizedError
from certm3.core.jwt import EnrollmentTokenService
from certm3.models.certificate import CertificateStatus
from certm3.models.request import RequestStatus
from certm3.models.user import User, UserStatus
from certm3.services.certificate_service import CertificateService
from certm3.services.enrollment_service import EnrollmentService, resolve_authorized_groups
from certm3.services.group_service import GroupService
from certm3.services.request_service import RequestService
from certm3.services.user_service import UserService


@pytest.fixture
def enrollment_service(
    token_service: EnrollmentTokenService, certificate_authority: CertificateAuthority
) -> EnrollmentService:
    certificate_service = CertificateService(code_version="test")
    return EnrollmentService(
        request_service=RequestService(),
        user_service=UserService(certificate_service=certificate_service),
        group_service=GroupService(),
        certificate_service=certificate_service,
        token_service=token_service,
        certificate_authority=certificate_authority,
    )


async def _open_request(db_session: AsyncSession, username: str = "alice"):
    identity_request = await RequestService().create_request(
        db_session,
        username=username,
        email=f"{username}@example.com",
        display_name=username.title(),
        actor="system",
    )
    return identity_request.id, identity_request.challenge


def test_resolve_authorized_groups_filters_to_memberships() -> None:
    granted = resolve_authorized_groups(
        "alice", ["ops", "dev", "users", "admins"], {"users", "alice", "dev", "ops"}
    )

    assert granted == ["users", "alice", "dev", "ops"]
    assert resolve_authorized_groups("alice", [], set()) == ["users", "alice"]


@pytest.mark.asyncio
async def test_complete_validation_materializes_user_and_groups(
    db_session: AsyncSession, enrollment_service: EnrollmentService
) -> None:
    request_id, challenge = await _open_request(db_session)

    grant = await enrollment_service.complete_validation(
        db_session, request_id, challenge, actor="alice"
    )

    assert grant.request_id == request_id
    assert grant.expires_in == 300
    identity_request = await RequestService().get_request(db_session, request_id)
    assert identity_request.status == RequestStatus.APPROVED
    groups = GroupService()
    personal = await groups.get_group(db_session, "alice")
    assert personal.display_name == "alice's Group"
    assert personal.description == "Personal group for alice"
    assert await groups.get_active_group_names(db_session, grant.user_id) == {"users", "alice"}


@pytest.mark.asyncio
async def test_complete_validation_rolls_back_when_username_is_a_foreign_group(
    db_session: AsyncSession, enrollment_service: EnrollmentService
) -> None:
    """A group created after the claim blocks approval and leaves the claim pending."""
    request_id, challenge = await _open_request(db_session, "carol")
    await GroupService().create_group(
        db_session, name="carol", display_name="Carol's team", description=None, actor="admin"
    )

    with pytest.raises(ConflictError) as exc_info:
        await enrollment_service.complete_validation(
            db_session, request_id, challenge, actor="carol"
        )

    assert exc_info.value.code == "username_reserved"
    identity_request = await RequestService().get_request(db_session, request_id)
    assert identity_request.status == RequestStatus.PENDING
    users = UserService(certificate_service=CertificateService(code_version="test"))
    assert await users.get_user_by_username(db_session, "carol") is None


@pytest.mark.asyncio
async def test_complete_validation_refuses_user_with_other_email(
    db_session: AsyncSession, enrollment_service: EnrollmentService
) -> None:
    request_id, challenge = await _open_request(db_session, "dave")
    users = UserService(certificate_service=CertificateService(code_version="test"))
    await users.create_user(
        db_session,
        username="dave",
        email="dave@elsewhere.example",
        display_name="Dave",
        actor="admin",
    )

    with pytest.raises(ConflictError) as exc_info:
        await enrollment_service.complete_validation(
            db_session, request_id, challenge, actor="dave"
        )

    assert exc_info.value.code == "user_mismatch"


@pytest.mark.asyncio
async def test_submit_csr_issues_certificate_for_verified_identity(
    db_session: AsyncSession,
    enrollment_service: EnrollmentService,
    csr_factory: Callable[..., str],
) -> None:
    request_id, challenge = await _open_request(db_session)
    grant = await enrollment_service.complete_validation(
        db_session, request_id, challenge, actor="alice"
    )
    groups = GroupService()
    for name in ("dev", "admins"):
        await groups.create_group(
            db_session, name=name, display_name=name, description=None, actor="admin"
        )
    await groups.add_members(db_session, "dev", [grant.user_id], actor="admin")

    result = await enrollment_service.submit_csr(
        db_session,
        request_id=request_id,
        token=grant.token,
        csr_pem=csr_factory(common_name="root"),
        requested_groups=["dev", "admins"],
        actor="alice",
    )

    certificate = x509.load_pem_x509_certificate(result.issued.certificate_pem.encode("ascii"))
    assert certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "alice"
    group_extension = certificate.extensions.get_extension_for_oid(
        x509.ObjectIdentifier("1.3.6.1.4.1.10049.1")
    )
    assert decode_group_extension(group_extension.value.value) == ["users", "alice", "dev"]
    assert result.certificate.status == CertificateStatus.ACTIVE
    assert result.certificate.user_id == grant.user_id
    assert result.certificate.serial_number == result.issued.serial_number
    assert result.ca_certificate_pem.startswith("-----BEGIN CERTIFICATE-----")


@pytest.mark.asyncio
async def test_same_key_cannot_be_certified_twice(
    db_session: AsyncSession,
    enrollment_service: EnrollmentService,
    csr_factory: Callable[..., str],
) -> None:
    request_id, challenge = await _open_request(db_session)
    grant = await enrollment_service.complete_validation(
        db_session, request_id, challenge, actor="alice"
    )
    csr = csr_factory()
    await enrollment_service.submit_csr(
        db_session, request_id, grant.token, csr, requested_groups=[], actor="alice"
    )

    with pytest.raises(ConflictError) as exc_info:
        await enrollment_service.submit_csr(
            db_session, request_id, grant.token, csr, requested_groups=[], actor="alice"
        )

    assert exc_info.value.code == "fingerprint_exists"


@pytest.mark.asyncio
async def test_submit_csr_rejects_bad_credentials(
    db_session: AsyncSession,
    enrollment_service: EnrollmentService,
    token_service: EnrollmentTokenService,
    csr_factory: Callable[..., str],
) -> None:
    request_id, challenge = await _open_request(db_session)
    grant = await enrollment_service.complete_validation(
        db_session, request_id, challenge, actor="alice"
    )

    with pytest.raises(UnauthorizedError) as exc_info:
        await enrollment_service.submit_csr(
            db_session, request_id, "garbage", csr_factory(), requested_groups=[], actor="alice"
        )
    assert exc_info.value.code == "invalid_token"

    with pytest.raises(UnauthorizedError, match="not issued for this request"):
        await enrollment_service.submit_csr(
            db_session, uuid4(), grant.token, csr_factory(), requested_groups=[], actor="alice"
        )

    expired = token_service.issue(
        user_id=str(grant.user_id), request_id=str(request_id), expires_in_seconds=-1
    )
    with pytest.raises(UnauthorizedError) as exc_info:
        await enrollment_service.submit_csr(
            db_session, request_id, expired, csr_factory(), requested_groups=[], actor="alice"
        )
    assert exc_info.value.code == "token_expired"


@pytest.mark.asyncio
async def test_submit_csr_requires_approved_request(
    db_session: AsyncSession,
    enrollment_service: EnrollmentService,
    token_service: EnrollmentTokenService,
    csr_factory: Callable[..., str],
) -> None:
    request_id, _ = await _open_request(db_session)
    token = token_service.issue(user_id=str(uuid4()), request_id=str(request_id))

    with pytest.raises(InvalidStateError, match="not approved"):
        await enrollment_service.submit_csr(
            db_session, request_id, token, csr_factory(), requested_groups=[], actor="alice"
        )


@pytest.mark.asyncio
async def test_submit_csr_refuses_inactive_user(
    db_session: AsyncSession,
    enrollment_service: EnrollmentService,
    csr_factory: Callable[..., str],
) -> None:
    request_id, challenge = await _open_request(db_session)
    grant = await enrollment_service.complete_validation(
        db_session, request_id, challenge, actor="alice"
    )
    users = UserService(certificate_service=CertificateService(code_version="test"))
    await users.deactivate_user(db_session, grant.user_id, actor="admin")

    with pytest.raises(InvalidStateError, match="inactive"):
        await enrollment_service.submit_csr(
            db_session, request_id, grant.token, csr_factory(), requested_groups=[], actor="alice"
        )


class _ParkedAuthority:
    """Holds ``sign`` until the test releases it."""

    def __init__(self, inner: CertificateAuthority) -> None:
        self._inner = inner
        self.entered = threading.Event()
        self.release = threading.Event()

    @property
    def certificate_pem(self) -> str:
        return self._inner.certificate_pem

    def sign(self, *args, **kwargs):
        self.entered.set()
        self.release.wait(timeout=10)
        return self._inner.sign(*args, **kwargs)


@pytest.mark.asyncio
async def test_submit_csr_discards_certificate_when_user_deactivated_during_signing(
    db_session: AsyncSession,
    token_service: EnrollmentTokenService,
    certificate_authority: CertificateAuthority,
    csr_factory: Callable[..., str],
) -> None:
    certificate_service = CertificateService(code_version="test")
    authority = _ParkedAuthority(certificate_authority)
    service = EnrollmentService(
        request_service=RequestService(),
        user_service=UserService(certificate_service=certificate_service),
        group_service=GroupService(),
        certificate_service=certificate_service,
        token_service=token_service,
        certificate_authority=authority,
    )
    request_id, challenge = await _open_request(db_session)
    grant = await service.complete_validation(db_session, request_id, challenge, actor="alice")

    submission = asyncio.create_task(
        service.submit_csr(
            db_session, request_id, grant.token, csr_factory(), requested_groups=[], actor="alice"
        )
    )
    assert await asyncio.to_thread(authority.entered.wait, 10)
    # Another writer flips the row; the identity map still says active.
    await db_session.execute(
        update(User)
        .where(User.id == grant.user_id)
        .values(status=UserStatus.INACTIVE)
        .execution_options(synchronize_session=False)
    )
    authority.release.set()

    with pytest.raises(InvalidStateError, match="inactive"):
        await submission

    assert await certificate_service.find(db_session, user_id=grant.user_id) == []

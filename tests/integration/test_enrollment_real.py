"""End-to-end enrollment against real Postgres and Redis."""

from __future__ import annotations

from collections.abc import Callable

import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from certm3.models.audit_event import AuditEvent


async def _load_events(db_session: AsyncSession) -> list[AuditEvent]:
    result = await db_session.execute(select(AuditEvent).order_by(AuditEvent.created_at.asc()))
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_enrollment_issues_certificate_and_audits(
    app_factory, challenge_sender, csr_factory: Callable[..., str], db_session: AsyncSession
) -> None:
    async with AsyncClient(
        transport=ASGITransport(app=app_factory()), base_url="http://testserver"
    ) as client:
        created = await client.post(
            "/requests",
            json={"username": "alice", "email": "alice@example.com", "display_name": "Alice"},
        )
        request_id = created.json()["id"]
        validated = await client.post(
            f"/requests/{request_id}/validate",
            json={"challenge": challenge_sender.challenges[request_id]},
        )
        token = validated.json()["token"]
        issued = await client.post(
            f"/requests/{request_id}/certificate",
            json={"csr": csr_factory(common_name="root")},
            headers={"Authorization": f"Bearer {token}"},
        )
        groups = await client.get(f"/users/{validated.json()['user_id']}/groups")
        ca_pem = await client.get("/ca/certificate")

    assert created.status_code == 201
    assert validated.status_code == 200
    assert issued.status_code == 201
    assert groups.json() == ["alice", "users"]

    certificate = x509.load_pem_x509_certificate(issued.json()["certificate"].encode("ascii"))
    ca_certificate = x509.load_pem_x509_certificate(ca_pem.content)
    assert certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "alice"
    assert certificate.issuer == ca_certificate.subject
    certificate.verify_directly_issued_by(ca_certificate)

    events = await _load_events(db_session)
    assert [(event.event_type, event.success) for event in events] == [
        ("request.created", True),
        ("request.validated", True),
        ("certificate.issued", True),
    ]
    assert events[-1].target_id == issued.json()["serial_number"]
    assert events[-1].correlation_id


@pytest.mark.asyncio
async def test_request_creation_is_rate_limited_per_client(
    app_factory, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("RATE_LIMIT__REQUEST_REQUESTS_PER_MINUTE", "2")
    from certm3.config import get_settings

    get_settings.cache_clear()

    async with AsyncClient(
        transport=ASGITransport(app=app_factory()), base_url="http://testserver"
    ) as client:
        statuses = [
            (
                await client.post(
                    "/requests",
                    json={
                        "username": f"user{index}",
                        "email": f"user{index}@example.com",
                        "display_name": "User",
                    },
                )
            ).status_code
            for index in range(3)
        ]

    assert statuses == [201, 201, 429]

"""Certificate record routes."""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from certm3.dependencies import get_actor, get_database_session
from certm3.middleware.metrics import MetricsRegistry, get_metrics_registry
from certm3.models.certificate import CertificateStatus
from certm3.schemas.certificate import (
    CertificateCreate,
    CertificateResponse,
    CertificateUpdate,
    RevokeRequest,
)
from certm3.services.audit_service import AuditService, get_audit_service
from certm3.services.certificate_service import (
    CertificateAttributes,
    CertificateService,
    get_certificate_service,
)

router = APIRouter(prefix="/certificates", tags=["certificates"])

DbSession = Annotated[AsyncSession, Depends(get_database_session)]
Actor = Annotated[str, Depends(get_actor)]
Certificates = Annotated[CertificateService, Depends(get_certificate_service)]


@router.post("", status_code=201, response_model=CertificateResponse)
async def create_certificate(
    payload: CertificateCreate,
    db_session: DbSession,
    actor: Actor,
    certificate_service: Certificates,
) -> CertificateResponse:
    """Register a certificate record."""
    certificate = await certificate_service.create(
        db_session,
        CertificateAttributes(**payload.model_dump()),
        actor=actor,
    )
    return CertificateResponse.model_validate(certificate)


@router.get("", response_model=list[CertificateResponse])
async def find_certificates(
    db_session: DbSession,
    certificate_service: Certificates,
    username: str | None = None,
    status: CertificateStatus | None = None,
    user_id: UUID | None = None,
) -> list[CertificateResponse]:
    certificates = await certificate_service.find(
        db_session, username=username, status=status, user_id=user_id
    )
    return [CertificateResponse.model_validate(item) for item in certificates]


@router.get("/{serial_number}", response_model=CertificateResponse)
async def get_certificate(
    serial_number: str, db_session: DbSession, certificate_service: Certificates
) -> CertificateResponse:
    certificate = await certificate_service.get(db_session, serial_number)
    return CertificateResponse.model_validate(certificate)


@router.patch("/{serial_number}", status_code=204)
async def update_certificate(
    serial_number: str,
    payload: CertificateUpdate,
    db_session: DbSession,
    actor: Actor,
    certificate_service: Certificates,
) -> Response:
    """Update metadata of an active certificate."""
    await certificate_service.update_by_id(
        db_session,
        serial_number=serial_number,
        actor=actor,
        **payload.model_dump(exclude_unset=True),
    )
    return Response(status_code=204)


@router.post("/{serial_number}/revoke", status_code=204)
async def revoke_certificate(
    serial_number: str,
    payload: RevokeRequest,
    request: Request,
    db_session: DbSession,
    actor: Actor,
    certificate_service: Certificates,
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
    metrics: Annotated[MetricsRegistry, Depends(get_metrics_registry)],
) -> Response:
    certificate = await certificate_service.revoke(
        db_session, serial_number=serial_number, revoked_by=actor, reason=payload.reason
    )
    metrics.increment("certificates_revoked_total", reason="manual")
    await audit_service.record(
        event_type="certificate.revoked",
        success=True,
        request=request,
        actor=actor,
        target_id=certificate.serial_number,
        target_type="certificate",
        metadata={"reason": payload.reason},
    )
    return Response(status_code=204)

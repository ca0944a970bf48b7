"""CA certificate and revocation list downloads."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from certm3.core.ca import CertificateAuthority, RevokedEntry, get_certificate_authority
from certm3.dependencies import get_database_session
from certm3.services.certificate_service import CertificateService, get_certificate_service

router = APIRouter(prefix="/ca", tags=["ca"])

PEM_CERTIFICATE_MEDIA_TYPE = "application/x-pem-file"
PEM_CRL_MEDIA_TYPE = "application/pkix-crl"


@router.get("/certificate")
async def ca_certificate(
    certificate_authority: Annotated[CertificateAuthority, Depends(get_certificate_authority)],
) -> Response:
    return Response(
        content=certificate_authority.certificate_pem,
        media_type=PEM_CERTIFICATE_MEDIA_TYPE,
    )


@router.get("/crl")
async def certificate_revocation_list(
    db_session: Annotated[AsyncSession, Depends(get_database_session)],
    certificate_authority: Annotated[CertificateAuthority, Depends(get_certificate_authority)],
    certificate_service: Annotated[CertificateService, Depends(get_certificate_service)],
) -> Response:
    """Current CRL listing every revoked certificate."""
    revoked = await certificate_service.list_revoked(db_session)
    entries = [
        RevokedEntry(serial_number=item.serial_number, revoked_at=item.revoked_at)
        for item in revoked
        if item.revoked_at is not None
    ]
    return Response(
        content=certificate_authority.build_crl(entries),
        media_type=PEM_CRL_MEDIA_TYPE,
    )

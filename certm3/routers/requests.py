"""Identity request and enrollment routes."""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from certm3.core.errors import ServiceError, UnauthorizedError
from certm3.dependencies import extract_bearer_token, get_actor, get_database_session
from certm3.error_handlers import service_error_response
from certm3.middleware.metrics import MetricsRegistry, get_metrics_registry
from certm3.models.request import RequestStatus
from certm3.schemas.request import (
    CertificateSigningRequest,
    IssuedCertificateResponse,
    RequestCreate,
    RequestResponse,
    UsernameAvailability,
    ValidateRequest,
    ValidateResponse,
)
from certm3.services.audit_service import AuditService, get_audit_service
from certm3.services.challenge_delivery import (
    ChallengeSender,
    deliver_challenge,
    get_challenge_sender,
)
from certm3.services.enrollment_service import EnrollmentService, get_enrollment_service
from certm3.services.request_service import (
    MAX_SEARCH_RESULTS,
    RequestService,
    get_request_service,
)

router = APIRouter(prefix="/requests", tags=["requests"])

DbSession = Annotated[AsyncSession, Depends(get_database_session)]
Actor = Annotated[str, Depends(get_actor)]


@router.post("", status_code=201, response_model=RequestResponse)
async def create_request(
    payload: RequestCreate,
    request: Request,
    db_session: DbSession,
    actor: Actor,
    request_service: Annotated[RequestService, Depends(get_request_service)],
    challenge_sender: Annotated[ChallengeSender, Depends(get_challenge_sender)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
    metrics: Annotated[MetricsRegistry, Depends(get_metrics_registry)],
) -> RequestResponse:
    """Submit an identity claim; the challenge is delivered out of band."""
    identity_request = await request_service.create_request(
        db_session,
        username=payload.username,
        email=payload.email,
        display_name=payload.display_name,
        actor=actor,
    )
    metrics.increment("requests_created_total")
    await audit_service.record(
        event_type="request.created",
        success=True,
        request=request,
        actor=actor,
        target_id=str(identity_request.id),
        target_type="request",
        metadata={"username": identity_request.username},
    )
    await deliver_challenge(
        challenge_sender,
        request_id=str(identity_request.id),
        username=identity_request.username,
        email=identity_request.email,
        challenge=identity_request.challenge,
    )
    return RequestResponse.model_validate(identity_request)


@router.get("/search", response_model=list[RequestResponse])
async def search_requests(
    db_session: DbSession,
    request_service: Annotated[RequestService, Depends(get_request_service)],
    username: str | None = None,
    email: str | None = None,
    status: RequestStatus | None = None,
    limit: Annotated[int, Query(ge=1, le=MAX_SEARCH_RESULTS)] = MAX_SEARCH_RESULTS,
) -> list[RequestResponse]:
    """Exact-match search over requests."""
    results = await request_service.search_requests(
        db_session, username=username, email=email, status=status, limit=limit
    )
    return [RequestResponse.model_validate(item) for item in results]


@router.get("/check-username/{username}", response_model=UsernameAvailability)
async def check_username(
    username: str,
    db_session: DbSession,
    request_service: Annotated[RequestService, Depends(get_request_service)],
) -> UsernameAvailability | JSONResponse:
    """200 when the username is taken, 404 when it is available."""
    if await request_service.check_username(db_session, username):
        return UsernameAvailability(username=username, taken=True)
    return JSONResponse(
        status_code=404,
        content={"detail": "Username is available.", "code": "not_found"},
    )


@router.get("/{request_id}", response_model=RequestResponse)
async def get_request(
    request_id: UUID,
    db_session: DbSession,
    request_service: Annotated[RequestService, Depends(get_request_service)],
) -> RequestResponse:
    """Fetch one request."""
    identity_request = await request_service.get_request(db_session, request_id)
    return RequestResponse.model_validate(identity_request)


@router.post("/{request_id}/validate", response_model=ValidateResponse)
async def validate_request(
    request_id: UUID,
    payload: ValidateRequest,
    request: Request,
    db_session: DbSession,
    actor: Actor,
    enrollment_service: Annotated[EnrollmentService, Depends(get_enrollment_service)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
    metrics: Annotated[MetricsRegistry, Depends(get_metrics_registry)],
) -> ValidateResponse | JSONResponse:
    """Replay the challenge and receive the enrollment credential."""
    try:
        grant = await enrollment_service.complete_validation(
            db_session, request_id=request_id, challenge=payload.challenge, actor=actor
        )
    except ServiceError as exc:
        metrics.increment("challenge_validations_total", result=exc.code)
        await audit_service.record(
            event_type="request.validated",
            success=False,
            request=request,
            actor=actor,
            target_id=str(request_id),
            target_type="request",
            failure_reason=exc.code,
        )
        return service_error_response(exc)

    metrics.increment("challenge_validations_total", result="approved")
    await audit_service.record(
        event_type="request.validated",
        success=True,
        request=request,
        actor=actor,
        target_id=str(request_id),
        target_type="request",
        metadata={"user_id": grant.user_id},
    )
    return ValidateResponse(token=grant.token, user_id=grant.user_id, expires_in=grant.expires_in)


@router.post("/{request_id}/cancel", status_code=204)
async def cancel_request(
    request_id: UUID,
    request: Request,
    db_session: DbSession,
    actor: Actor,
    request_service: Annotated[RequestService, Depends(get_request_service)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
) -> Response:
    """Reject a pending request."""
    await request_service.cancel(db_session, request_id, actor=actor)
    await audit_service.record(
        event_type="request.cancelled",
        success=True,
        request=request,
        actor=actor,
        target_id=str(request_id),
        target_type="request",
    )
    return Response(status_code=204)


@router.post("/{request_id}/certificate", status_code=201, response_model=IssuedCertificateResponse)
async def submit_certificate_request(
    request_id: UUID,
    payload: CertificateSigningRequest,
    request: Request,
    db_session: DbSession,
    actor: Actor,
    enrollment_service: Annotated[EnrollmentService, Depends(get_enrollment_service)],
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
    metrics: Annotated[MetricsRegistry, Depends(get_metrics_registry)],
    authorization: Annotated[str | None, Header()] = None,
) -> IssuedCertificateResponse | JSONResponse:
    """Exchange the enrollment credential and a CSR for a signed certificate."""
    token = extract_bearer_token(authorization)
    try:
        if token is None:
            raise UnauthorizedError("Missing bearer token.")
        result = await enrollment_service.submit_csr(
            db_session,
            request_id=request_id,
            token=token,
            csr_pem=payload.csr,
            requested_groups=payload.groups,
            actor=actor,
        )
    except ServiceError as exc:
        await audit_service.record(
            event_type="certificate.issued",
            success=False,
            request=request,
            actor=actor,
            target_id=str(request_id),
            target_type="request",
            failure_reason=exc.code,
        )
        return service_error_response(exc)

    metrics.increment("certificates_issued_total")
    await audit_service.record(
        event_type="certificate.issued",
        success=True,
        request=request,
        actor=actor,
        target_id=result.issued.serial_number,
        target_type="certificate",
        metadata={"request_id": request_id, "groups": list(result.issued.groups)},
    )
    return IssuedCertificateResponse(
        certificate=result.issued.certificate_pem,
        ca_certificate=result.ca_certificate_pem,
        serial_number=result.issued.serial_number,
        fingerprint=result.issued.fingerprint,
        not_before=result.issued.not_before,
        not_after=result.issued.not_after,
        groups=list(result.issued.groups),
    )

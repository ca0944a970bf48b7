"""User administration routes."""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from certm3.core.errors import NotFoundError
from certm3.dependencies import get_actor, get_database_session
from certm3.middleware.metrics import MetricsRegistry, get_metrics_registry
from certm3.models.user import UserStatus
from certm3.schemas.user import UserCreate, UserResponse, UserUpdate
from certm3.services.audit_service import AuditService, get_audit_service
from certm3.services.certificate_service import USER_DEACTIVATED_REASON
from certm3.services.user_service import UserService, get_user_service

router = APIRouter(prefix="/users", tags=["users"])

DbSession = Annotated[AsyncSession, Depends(get_database_session)]
Actor = Annotated[str, Depends(get_actor)]
Users = Annotated[UserService, Depends(get_user_service)]


@router.post("", status_code=201, response_model=UserResponse)
async def create_user(
    payload: UserCreate, db_session: DbSession, actor: Actor, user_service: Users
) -> UserResponse:
    user = await user_service.create_user(
        db_session,
        username=payload.username,
        email=payload.email,
        display_name=payload.display_name,
        actor=actor,
    )
    return UserResponse.model_validate(user)


@router.get("", response_model=list[UserResponse])
async def find_users(
    db_session: DbSession, user_service: Users, status: UserStatus | None = None
) -> list[UserResponse]:
    users = await user_service.find_users(db_session, status=status)
    return [UserResponse.model_validate(user) for user in users]


@router.get("/username/{username}", response_model=UserResponse)
async def get_user_by_username(
    username: str, db_session: DbSession, user_service: Users
) -> UserResponse:
    user = await user_service.get_user_by_username(db_session, username)
    if user is None:
        raise NotFoundError("User not found.")
    return UserResponse.model_validate(user)


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(user_id: UUID, db_session: DbSession, user_service: Users) -> UserResponse:
    return UserResponse.model_validate(await user_service.get_user(db_session, user_id))


@router.patch("/{user_id}", status_code=204)
async def update_user(
    user_id: UUID,
    payload: UserUpdate,
    db_session: DbSession,
    actor: Actor,
    user_service: Users,
) -> Response:
    await user_service.update_user(
        db_session,
        user_id=user_id,
        actor=actor,
        display_name=payload.display_name,
        email=payload.email,
    )
    return Response(status_code=204)


@router.post("/{user_id}/deactivate", status_code=204)
async def deactivate_user(
    user_id: UUID,
    request: Request,
    db_session: DbSession,
    actor: Actor,
    user_service: Users,
    audit_service: Annotated[AuditService, Depends(get_audit_service)],
    metrics: Annotated[MetricsRegistry, Depends(get_metrics_registry)],
) -> Response:
    """Deactivate a user and revoke all of their active certificates."""
    _, revoked = await user_service.deactivate_user(db_session, user_id=user_id, actor=actor)
    if revoked:
        metrics.increment(
            "certificates_revoked_total", amount=len(revoked), reason=USER_DEACTIVATED_REASON
        )
    await audit_service.record(
        event_type="user.deactivated",
        success=True,
        request=request,
        actor=actor,
        target_id=str(user_id),
        target_type="user",
        metadata={"revoked_serial_numbers": [item.serial_number for item in revoked]},
    )
    return Response(status_code=204)


@router.get("/{user_id}/groups", response_model=list[str])
async def get_user_groups(user_id: UUID, db_session: DbSession, user_service: Users) -> list[str]:
    return await user_service.get_user_groups(db_session, user_id)

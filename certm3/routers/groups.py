"""Group and membership routes."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from certm3.core.errors import ConflictError, ForbiddenError, ServiceError
from certm3.dependencies import get_actor, get_database_session
from certm3.models.group import GroupStatus
from certm3.schemas.group import GroupCreate, GroupResponse, GroupUpdate, MembersRequest
from certm3.schemas.user import UserResponse
from certm3.services.audit_service import AuditService, get_audit_service
from certm3.services.group_service import GroupService, get_group_service

router = APIRouter(prefix="/groups", tags=["groups"])

DbSession = Annotated[AsyncSession, Depends(get_database_session)]
Actor = Annotated[str, Depends(get_actor)]
Groups = Annotated[GroupService, Depends(get_group_service)]
Audit = Annotated[AuditService, Depends(get_audit_service)]


async def _audit_denial(
    audit_service: AuditService, request: Request, actor: str, name: str, exc: ServiceError
) -> None:
    await audit_service.record(
        event_type="group.policy_denied",
        success=False,
        request=request,
        actor=actor,
        target_id=name,
        target_type="group",
        failure_reason=exc.code,
        metadata={"method": request.method, "path": request.url.path},
    )


@router.post("", status_code=201, response_model=GroupResponse)
async def create_group(
    payload: GroupCreate,
    request: Request,
    db_session: DbSession,
    actor: Actor,
    group_service: Groups,
    audit_service: Audit,
) -> GroupResponse:
    try:
        group = await group_service.create_group(
            db_session,
            name=payload.name,
            display_name=payload.display_name,
            description=payload.description,
            actor=actor,
        )
    except ConflictError as exc:
        if exc.code == "protected_group":
            await _audit_denial(audit_service, request, actor, payload.name, exc)
        raise
    return GroupResponse.model_validate(group)


@router.get("", response_model=list[GroupResponse])
async def find_groups(
    db_session: DbSession, group_service: Groups, status: GroupStatus | None = None
) -> list[GroupResponse]:
    groups = await group_service.find_groups(db_session, status=status)
    return [GroupResponse.model_validate(group) for group in groups]


@router.get("/{name}", response_model=GroupResponse)
async def get_group(name: str, db_session: DbSession, group_service: Groups) -> GroupResponse:
    return GroupResponse.model_validate(await group_service.get_group(db_session, name))


@router.patch("/{name}", status_code=204)
async def update_group(
    name: str,
    payload: GroupUpdate,
    request: Request,
    db_session: DbSession,
    actor: Actor,
    group_service: Groups,
    audit_service: Audit,
) -> Response:
    try:
        await group_service.update_group(
            db_session,
            name=name,
            actor=actor,
            display_name=payload.display_name,
            description=payload.description,
        )
    except ForbiddenError as exc:
        await _audit_denial(audit_service, request, actor, name, exc)
        raise
    return Response(status_code=204)


@router.delete("/{name}", status_code=204)
async def deactivate_group(
    name: str,
    request: Request,
    db_session: DbSession,
    actor: Actor,
    group_service: Groups,
    audit_service: Audit,
) -> Response:
    """Deactivate a group. Groups are never physically deleted."""
    try:
        await group_service.deactivate_group(db_session, name=name, actor=actor)
    except ForbiddenError as exc:
        await _audit_denial(audit_service, request, actor, name, exc)
        raise
    return Response(status_code=204)


@router.get("/{name}/members", response_model=list[UserResponse])
async def get_members(name: str, db_session: DbSession, group_service: Groups) -> list[UserResponse]:
    members = await group_service.get_members(db_session, name)
    return [UserResponse.model_validate(user) for user in members]


@router.post("/{name}/members", status_code=204)
async def add_members(
    name: str,
    payload: MembersRequest,
    db_session: DbSession,
    actor: Actor,
    group_service: Groups,
) -> Response:
    await group_service.add_members(db_session, group_name=name, user_ids=payload.user_ids, actor=actor)
    return Response(status_code=204)


@router.delete("/{name}/members", status_code=204)
async def remove_members(
    name: str,
    payload: MembersRequest,
    request: Request,
    db_session: DbSession,
    actor: Actor,
    group_service: Groups,
    audit_service: Audit,
) -> Response:
    """Always refused: membership history is immutable."""
    try:
        await group_service.remove_members(db_session, group_name=name, user_ids=payload.user_ids)
    except ForbiddenError as exc:
        await _audit_denial(audit_service, request, actor, name, exc)
        raise
    return Response(status_code=204)

"""Group and membership schemas."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from certm3.models.group import GroupStatus

GROUP_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]{0,254}$"


class GroupCreate(BaseModel):
    """Group creation payload."""

    name: str = Field(min_length=1, max_length=255, pattern=GROUP_NAME_PATTERN)
    display_name: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=4096)


class GroupUpdate(BaseModel):
    """Group metadata update payload."""

    display_name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=4096)


class GroupResponse(BaseModel):
    """Group summary."""

    model_config = ConfigDict(from_attributes=True)

    name: str
    display_name: str
    description: str | None
    status: GroupStatus
    created_at: datetime
    updated_at: datetime


class MembersRequest(BaseModel):
    """Batch of user ids for a membership operation."""

    user_ids: list[UUID] = Field(min_length=1, max_length=500)

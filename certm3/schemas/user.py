"""User administration schemas."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from certm3.models.user import UserStatus
from certm3.schemas.request import EMAIL_PATTERN, USERNAME_PATTERN


class UserCreate(BaseModel):
    """Out-of-band user creation payload."""

    username: str = Field(min_length=1, max_length=64, pattern=USERNAME_PATTERN)
    email: str = Field(min_length=3, max_length=320, pattern=EMAIL_PATTERN)
    display_name: str = Field(min_length=1, max_length=255)


class UserUpdate(BaseModel):
    """Mutable user metadata. Status changes go through deactivation."""

    display_name: str | None = Field(default=None, min_length=1, max_length=255)
    email: str | None = Field(default=None, min_length=3, max_length=320, pattern=EMAIL_PATTERN)


class UserResponse(BaseModel):
    """User summary."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    username: str
    email: str
    display_name: str
    status: UserStatus
    created_at: datetime
    updated_at: datetime

"""Certificate record schemas."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from certm3.models.certificate import CertificateStatus


class CertificateCreate(BaseModel):
    """Certificate record registration payload."""

    serial_number: str = Field(min_length=1, max_length=64, pattern=r"^[0-9a-fA-F]+$")
    code_version: str | None = Field(default=None, max_length=50)
    username: str = Field(min_length=1, max_length=255)
    user_id: UUID
    common_name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=320)
    fingerprint: str = Field(min_length=1, max_length=128)
    not_before: datetime
    not_after: datetime


class CertificateUpdate(BaseModel):
    """Metadata-only certificate update payload."""

    code_version: str | None = Field(default=None, max_length=50)
    common_name: str | None = Field(default=None, min_length=1, max_length=255)
    email: str | None = Field(default=None, min_length=3, max_length=320)
    not_before: datetime | None = None
    not_after: datetime | None = None


class RevokeRequest(BaseModel):
    """Revocation payload."""

    reason: str = Field(min_length=1, max_length=1024)


class CertificateResponse(BaseModel):
    """Certificate record."""

    model_config = ConfigDict(from_attributes=True)

    serial_number: str
    code_version: str
    username: str
    user_id: UUID
    common_name: str
    email: str
    fingerprint: str
    not_before: datetime
    not_after: datetime
    status: CertificateStatus
    revoked_at: datetime | None
    revoked_by: str | None
    revocation_reason: str | None
    created_at: datetime
    updated_at: datetime

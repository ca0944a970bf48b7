"""Identity request and enrollment schemas."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from certm3.models.request import RequestStatus

USERNAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class RequestCreate(BaseModel):
    """Identity claim submitted by a prospective certificate holder."""

    username: str = Field(min_length=1, max_length=64, pattern=USERNAME_PATTERN)
    email: str = Field(min_length=3, max_length=320, pattern=EMAIL_PATTERN)
    display_name: str = Field(min_length=1, max_length=255)


class RequestResponse(BaseModel):
    """Identity request as returned to callers. The challenge is never included."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    username: str
    email: str
    display_name: str
    status: RequestStatus
    created_at: datetime
    updated_at: datetime
    created_by: str | None = None
    updated_by: str | None = None


class ValidateRequest(BaseModel):
    """Challenge replayed by the claimant."""

    challenge: str = Field(min_length=1, max_length=128)


class ValidateResponse(BaseModel):
    """Enrollment credential minted after a successful validation."""

    token: str
    token_type: str = "Bearer"
    user_id: UUID
    expires_in: int


class CertificateSigningRequest(BaseModel):
    """CSR submitted with an enrollment credential."""

    csr: str = Field(min_length=1, max_length=65536)
    groups: list[str] = Field(default_factory=list, max_length=256)


class IssuedCertificateResponse(BaseModel):
    """Signed client certificate and CA chain."""

    certificate: str
    ca_certificate: str
    serial_number: str
    fingerprint: str
    not_before: datetime
    not_after: datetime
    groups: list[str]


class UsernameAvailability(BaseModel):
    """Username availability result."""

    username: str
    taken: bool

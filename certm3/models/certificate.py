"""Issued certificate ORM model."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from certm3.db.base import AuditColumnsMixin, Base
from certm3.models.enums import status_column_type


class CertificateStatus(str, Enum):
    """Certificate states; revoked is terminal."""

    ACTIVE = "active"
    REVOKED = "revoked"


class Certificate(Base, AuditColumnsMixin):
    """Record of a certificate signed by the CA."""

    __tablename__ = "certificates"
    __table_args__ = (
        CheckConstraint("not_before < not_after", name="validity_window"),
        Index("ix_certificates_username_status", "username", "status"),
        Index("ix_certificates_user_id_status", "user_id", "status"),
    )

    serial_number: Mapped[str] = mapped_column(String(64), primary_key=True)
    code_version: Mapped[str] = mapped_column(String(50), nullable=False)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    common_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    not_before: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    not_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[CertificateStatus] = mapped_column(
        status_column_type(CertificateStatus), nullable=False, default=CertificateStatus.ACTIVE
    )
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    revocation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

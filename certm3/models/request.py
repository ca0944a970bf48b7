"""Identity-claim request ORM model."""

from __future__ import annotations

from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import Index, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from certm3.db.base import AuditColumnsMixin, Base
from certm3.models.enums import status_column_type


class RequestStatus(str, Enum):
    """Lifecycle states of an identity claim."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


_OPEN_REQUEST_PREDICATE = text("status <> 'rejected'")


class IdentityRequest(Base, AuditColumnsMixin):
    """A claim of username and email ownership awaiting challenge validation.

    Rows are never deleted. At most one non-rejected request may hold a username,
    enforced by a partial unique index so that concurrent inserts cannot both pass.
    """

    __tablename__ = "requests"
    __table_args__ = (
        Index(
            "uq_requests_username_open",
            "username",
            unique=True,
            postgresql_where=_OPEN_REQUEST_PREDICATE,
            sqlite_where=_OPEN_REQUEST_PREDICATE,
        ),
        Index("ix_requests_email", "email"),
        Index("ix_requests_status", "status"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    status: Mapped[RequestStatus] = mapped_column(
        status_column_type(RequestStatus), nullable=False, default=RequestStatus.PENDING
    )
    challenge: Mapped[str] = mapped_column(String(128), nullable=False)

"""User ORM model."""

from __future__ import annotations

from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from certm3.db.base import AuditColumnsMixin, Base
from certm3.models.enums import status_column_type


class UserStatus(str, Enum):
    """Allowed user states; deactivation is one-way."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class User(Base, AuditColumnsMixin):
    """Verified certificate holder.

    Certificates reference users by id only; lookups in either direction go
    through the services.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    username: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[UserStatus] = mapped_column(
        status_column_type(UserStatus), nullable=False, default=UserStatus.ACTIVE
    )

"""Group and append-only membership ORM models."""

from __future__ import annotations

from enum import Enum
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from certm3.db.base import AuditColumnsMixin, Base
from certm3.models.enums import status_column_type

PROTECTED_GROUP_NAME = "users"


class GroupStatus(str, Enum):
    """Allowed group states."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class Group(Base, AuditColumnsMixin):
    """Named authorization group, keyed by its human-readable name."""

    __tablename__ = "groups"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[GroupStatus] = mapped_column(
        status_column_type(GroupStatus), nullable=False, default=GroupStatus.ACTIVE
    )


class UserGroup(Base, AuditColumnsMixin):
    """Membership row. Never deleted once created."""

    __tablename__ = "user_groups"
    __table_args__ = (Index("ix_user_groups_group_name", "group_name"),)

    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), primary_key=True
    )
    group_name: Mapped[str] = mapped_column(
        String(255), ForeignKey("groups.name", ondelete="RESTRICT"), primary_key=True
    )

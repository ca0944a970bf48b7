"""Shared helpers for string-valued status enums."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import Enum as SAEnum


def enum_values(enum_cls: type[Enum]) -> list[str]:
    """Store enum values instead of enum member names."""
    return [member.value for member in enum_cls]


def status_column_type(enum_cls: type[Enum]) -> SAEnum:
    """Build a portable VARCHAR-backed enum column type."""
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=enum_values,
        validate_strings=True,
    )

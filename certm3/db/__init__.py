"""Database package exports."""

from certm3.db.base import Base
from certm3.db.session import (
    build_session_factory,
    dispose_engine,
    get_db_session,
    get_engine,
    get_session_factory,
)

__all__ = [
    "Base",
    "build_session_factory",
    "dispose_engine",
    "get_db_session",
    "get_engine",
    "get_session_factory",
]

"""Shared FastAPI dependency helpers."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Header
from sqlalchemy.ext.asyncio import AsyncSession

from certm3.db.session import get_db_session

DEFAULT_ACTOR = "system"


async def get_database_session() -> AsyncGenerator[AsyncSession, None]:
    """Expose the request-scoped async database session dependency."""
    async for session in get_db_session():
        yield session


async def get_actor(
    x_actor: Annotated[str | None, Header(max_length=255)] = None,
) -> str:
    """Acting principal set by the fronting proxy, for audit columns."""
    actor = (x_actor or "").strip()
    return actor or DEFAULT_ACTOR


def extract_bearer_token(authorization: str | None) -> str | None:
    """Extract a bearer token from an Authorization header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None

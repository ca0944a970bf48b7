"""Orchestrator probes: process liveness and backend readiness."""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from certm3.db.redis_client import get_redis_client
from certm3.db.session import get_engine

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/health", tags=["health"])


async def database_reachable() -> bool:
    """Round-trip a trivial statement through the pooled engine."""
    try:
        async with get_engine().connect() as connection:
            await connection.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        return False
    return True


async def redis_reachable() -> bool:
    try:
        return bool(await get_redis_client().ping())
    except (RedisError, OSError):
        return False


@router.get("/live")
async def live() -> dict[str, str]:
    return {"status": "live"}


@router.get("/ready")
async def ready(
    database_ok: Annotated[bool, Depends(database_reachable)],
    redis_ok: Annotated[bool, Depends(redis_reachable)],
) -> dict[str, str]:
    """Ready only when Postgres and Redis both answer; 503 names the missing backends."""
    unavailable = [
        backend for backend, ok in (("postgres", database_ok), ("redis", redis_ok)) if not ok
    ]
    if unavailable:
        logger.warning("readiness_check_failed", unavailable=unavailable)
        raise HTTPException(
            status_code=503,
            detail={
                "detail": f"Service not ready: {', '.join(unavailable)} unavailable.",
                "code": "not_ready",
            },
        )
    return {"status": "ready"}

"""Redis-backed sliding-window rate limiting middleware."""

from __future__ import annotations

import math
import re
import time
from typing import Protocol
from uuid import uuid4

import structlog
from fastapi import Request
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from certm3.config import get_settings
from certm3.db.redis_client import get_redis_client

logger = structlog.get_logger(__name__)
_WINDOW_SECONDS = 60
_VALIDATE_PATH = re.compile(r"^/requests/[^/]+/validate$")


class SlidingWindowRedis(Protocol):
    """Protocol for Redis operations used by the rate limiter."""

    async def zremrangebyscore(self, key: str, min: str | int, max: int) -> int:
        """Delete members with score inside an inclusive range."""

    async def zcard(self, key: str) -> int:
        """Return sorted-set cardinality."""

    async def zadd(self, key: str, mapping: dict[str, int]) -> int:
        """Add one or more scored members to sorted set."""

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        """Apply TTL to key."""


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Apply per-client sliding-window limits, tighter on the enrollment endpoints."""

    def __init__(
        self,
        app,
        redis_client: SlidingWindowRedis | None = None,
        default_requests_per_minute: int | None = None,
        request_requests_per_minute: int | None = None,
        validate_requests_per_minute: int | None = None,
    ) -> None:
        """Initialize middleware with optional explicit limits for testability."""
        super().__init__(app)
        limits = (
            default_requests_per_minute,
            request_requests_per_minute,
            validate_requests_per_minute,
        )
        if redis_client is None or any(limit is None for limit in limits):
            configured = get_settings().rate_limit
            default_requests_per_minute = (
                default_requests_per_minute or configured.default_requests_per_minute
            )
            request_requests_per_minute = (
                request_requests_per_minute or configured.request_requests_per_minute
            )
            validate_requests_per_minute = (
                validate_requests_per_minute or configured.validate_requests_per_minute
            )

        self._redis = redis_client or get_redis_client()
        self._default_limit = int(default_requests_per_minute)
        self._request_limit = int(request_requests_per_minute)
        self._validate_limit = int(validate_requests_per_minute)
        self._window_milliseconds = _WINDOW_SECONDS * 1000

    async def dispatch(self, request: Request, call_next) -> Response:
        """Reject requests exceeding the configured per-minute threshold."""
        bucket, limit = self._resolve_bucket(request.method, request.url.path)
        bucket_key = f"rate_limit:{bucket}:{self._extract_client_id(request)}"
        now_ms = int(time.time() * 1000)
        window_start = now_ms - self._window_milliseconds

        try:
            await self._redis.zremrangebyscore(bucket_key, "-inf", window_start)
            current_count = await self._redis.zcard(bucket_key)
            if current_count >= limit:
                logger.warning("rate_limit_exceeded", bucket=bucket, method=request.method)
                return JSONResponse(
                    status_code=429,
                    content={"detail": "Rate limit exceeded.", "code": "rate_limited"},
                    headers={"Retry-After": str(_WINDOW_SECONDS)},
                )

            member = f"{now_ms}:{uuid4()}"
            await self._redis.zadd(bucket_key, {member: now_ms})
            await self._redis.expire(bucket_key, math.ceil(self._window_milliseconds / 1000) + 1)
        except RedisError:
            logger.warning(
                "rate_limit_backend_unavailable",
                path=request.url.path,
                method=request.method,
            )

        return await call_next(request)

    def _resolve_bucket(self, method: str, path: str) -> tuple[str, int]:
        """Map a request onto its bucket name and per-minute limit."""
        if method == "POST" and path.rstrip("/") == "/requests":
            return "requests_create", self._request_limit
        if method == "POST" and _VALIDATE_PATH.match(path):
            # One bucket for every request id.
            return "requests_validate", self._validate_limit
        return f"default:{path}", self._default_limit

    @staticmethod
    def _extract_client_id(request: Request) -> str:
        """Resolve caller identity for per-client bucketing."""
        forwarded_for = request.headers.get("x-forwarded-for", "").strip()
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        client = request.client
        return client.host if client else "unknown"

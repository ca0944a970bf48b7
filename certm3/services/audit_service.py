"""Append-only audit trail for issuance, revocation, and policy decisions."""

from __future__ import annotations

import ipaddress
import re
from functools import lru_cache
from typing import Any
from uuid import UUID

import structlog
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from certm3.db.session import get_session_factory
from certm3.models.audit_event import AuditEvent

logger = structlog.get_logger(__name__)

_REDACTED = "***REDACTED***"
_SENSITIVE_KEY_PARTS = (
    "authorization",
    "challenge",
    "csr",
    "passphrase",
    "password",
    "private_key",
    "secret",
    "token",
)
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _is_sensitive_key(key: str) -> bool:
    """Return True when metadata key likely contains sensitive data."""
    normalized = key.strip().lower().replace("-", "_")
    return any(part in normalized for part in _SENSITIVE_KEY_PARTS)


def _coerce_ip(value: str | None) -> str | None:
    """Normalize IP address strings to canonical values."""
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def _extract_client_ip(request: Request) -> str | None:
    """Extract canonical client IP from forwarding headers or peer address."""
    forwarded_for = request.headers.get("x-forwarded-for", "").strip()
    if forwarded_for:
        parsed = _coerce_ip(forwarded_for.split(",")[0])
        if parsed is not None:
            return parsed
    client = request.client
    if client is None:
        return None
    return _coerce_ip(client.host)


def _sanitize_metadata_value(value: Any) -> Any:
    """Coerce metadata values to JSON-safe primitives with email redaction."""
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, str):
        return _REDACTED if _EMAIL_PATTERN.match(value.strip()) else value
    if isinstance(value, dict):
        return sanitize_metadata(value)
    if isinstance(value, list | tuple):
        return [_sanitize_metadata_value(item) for item in value]
    return str(value)


def sanitize_metadata(metadata: dict[str, Any] | None) -> dict[str, Any] | None:
    """Redact sensitive fields and drop credential-bearing keys from metadata."""
    if metadata is None:
        return None
    sanitized: dict[str, Any] = {}
    for key, value in metadata.items():
        if _is_sensitive_key(key):
            sanitized[key] = _REDACTED
            continue
        sanitized[key] = _sanitize_metadata_value(value)
    return sanitized or None


class AuditService:
    """Persist audit events in their own transaction without affecting outcomes."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        event_type: str,
        success: bool,
        request: Request,
        actor: str,
        target_id: str | None = None,
        target_type: str | None = None,
        failure_reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Write one append-only audit row and log, never raise, on failure."""
        correlation_id = getattr(request.state, "correlation_id", None)
        audit_event = AuditEvent(
            event_type=event_type.strip(),
            actor=actor.strip() or "system",
            target_id=target_id,
            target_type=target_type,
            ip_address=_extract_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            correlation_id=str(correlation_id) if correlation_id else None,
            success=success,
            failure_reason=failure_reason.strip() if failure_reason else None,
            event_metadata=sanitize_metadata(metadata),
        )

        try:
            session_factory = self._session_factory or get_session_factory()
            async with session_factory() as audit_db:
                audit_db.add(audit_event)
                await audit_db.commit()
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                event_type=event_type,
                success=success,
                error_type=type(exc).__name__,
            )


@lru_cache
def get_audit_service() -> AuditService:
    """Create and cache audit service dependency."""
    return AuditService()

"""Application settings and logging configuration."""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, TextIO

import structlog
from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_CONTEXT: dict[str, str] = {"environment": "development", "service": "certm3"}
_OID_PATTERN = re.compile(r"^[0-2](\.\d+)+$")


class AppSettings(BaseModel):
    """Application identity and runtime settings."""

    environment: Literal["development", "staging", "production"]
    service: str = "certm3"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    code_version: str = "0.1.0"


class DatabaseSettings(BaseModel):
    """Database connection settings."""

    url: str = Field(description="Async SQLAlchemy URL using asyncpg driver.")
    pool_size: int = Field(default=5, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    echo: bool = False

    @field_validator("url")
    @classmethod
    def validate_asyncpg_url(cls, value: str) -> str:
        """Ensure SQLAlchemy uses the asyncpg driver."""
        if not value.startswith("postgresql+asyncpg://"):
            raise ValueError("database.url must start with 'postgresql+asyncpg://'.")
        return value


class RedisSettings(BaseModel):
    """Redis connection settings."""

    url: str = Field(description="Redis URL.")

    @field_validator("url")
    @classmethod
    def validate_redis_url(cls, value: str) -> str:
        """Ensure the Redis URL uses a supported scheme."""
        if not value.startswith(("redis://", "rediss://")):
            raise ValueError("redis.url must start with 'redis://' or 'rediss://'.")
        return value


class JWTSettings(BaseModel):
    """Enrollment credential signing and lifetime settings."""

    algorithm: Literal["RS256"] = "RS256"
    private_key_pem: SecretStr
    public_key_pem: SecretStr
    issuer: str = "certm3"
    audience: str = "certm3-enrollment"
    enrollment_token_ttl_seconds: int = Field(default=300, ge=1)


class CASettings(BaseModel):
    """Certificate authority material and issuance policy."""

    cert_path: Path
    key_path: Path
    key_passphrase: SecretStr | None = None
    cert_validity_days: int = Field(default=365, ge=1)
    crl_validity_hours: int = Field(default=24, ge=1)
    min_rsa_key_size: int = Field(default=2048, ge=1024)
    subject_o: str | None = None
    subject_ou: str | None = None
    subject_l: str | None = None
    subject_st: str | None = None
    subject_c: str | None = Field(default=None, min_length=2, max_length=2)
    group_extension_oid: str = "1.3.6.1.4.1.10049.1"
    username_extension_oid: str = "1.3.6.1.4.1.10049.2"

    @field_validator("group_extension_oid", "username_extension_oid")
    @classmethod
    def validate_oid(cls, value: str) -> str:
        """Ensure extension OIDs are dotted-decimal."""
        if not _OID_PATTERN.match(value):
            raise ValueError("extension OIDs must be dotted-decimal, e.g. '1.3.6.1.4.1.10049.1'.")
        return value


class EmailSettings(BaseModel):
    """SMTP delivery settings for identity challenges."""

    host: str = "localhost"
    port: int = 1025
    email_from: str = "certm3@localhost"
    validation_base_url: str = "http://localhost:8000/app/validate"


class RateLimitSettings(BaseModel):
    """Rate limiting thresholds."""

    default_requests_per_minute: int = Field(default=120, ge=1)
    request_requests_per_minute: int = Field(default=10, ge=1)
    validate_requests_per_minute: int = Field(default=10, ge=1)


class Settings(BaseSettings):
    """Root application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app: AppSettings
    database: DatabaseSettings
    redis: RedisSettings
    jwt: JWTSettings
    ca: CASettings
    email: EmailSettings = EmailSettings()
    rate_limit: RateLimitSettings = RateLimitSettings()


def _standard_log_fields(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Inject required structured logging fields."""
    context_vars = structlog.contextvars.get_contextvars()
    event_dict.setdefault("correlation_id", str(context_vars.get("correlation_id", "unknown")))
    event_dict.setdefault("environment", _LOG_CONTEXT["environment"])
    event_dict.setdefault("service", _LOG_CONTEXT["service"])
    event_dict.setdefault("timestamp", datetime.now(UTC).isoformat())
    return event_dict


def configure_structlog(settings: Settings, log_file: TextIO | None = None) -> None:
    """Configure structlog for JSON output with required fields.

    Events go to stdout unless ``log_file`` is given.
    """
    _LOG_CONTEXT["environment"] = settings.app.environment
    _LOG_CONTEXT["service"] = settings.app.service

    log_level = getattr(logging, settings.app.log_level, logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _standard_log_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=log_file),
        cache_logger_on_first_use=True,
    )


@lru_cache
def get_settings() -> Settings:
    """Load and cache application settings from environment variables."""
    return Settings()

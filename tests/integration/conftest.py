"""Shared integration-test fixtures using Postgres and Redis testcontainers."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from alembic import command
from alembic.config import Config
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from testcontainers.postgres import PostgresContainer
from testcontainers.redis import RedisContainer

from docker.errors import DockerException


def _private_pem(private_key: rsa.RSAPrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _generate_rsa_keypair() -> tuple[str, str]:
    """Generate PEM-encoded RSA private/public keypair for enrollment credentials."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    public_pem = (
        private_key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("utf-8")
    )
    return _private_pem(private_key).decode("utf-8"), public_pem


def _write_ca_material(directory: Path) -> tuple[Path, Path]:
    """Create a throwaway self-signed CA on disk."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    now = datetime.now(UTC)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "certm3 Integration CA")])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .sign(private_key, hashes.SHA256())
    )
    cert_path = directory / "ca.crt"
    key_path = directory / "ca.key"
    cert_path.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(_private_pem(private_key))
    return cert_path, key_path


def _clear_dependency_caches() -> None:
    """Clear all relevant singleton/lru-cache dependencies between test phases."""
    from certm3.config import get_settings
    from certm3.core.ca import get_certificate_authority
    from certm3.core.jwt import get_enrollment_token_service
    from certm3.db.redis_client import get_redis_client
    from certm3.db.session import get_engine, get_session_factory
    from certm3.services.audit_service import get_audit_service
    from certm3.services.certificate_service import get_certificate_service
    from certm3.services.challenge_delivery import get_challenge_sender
    from certm3.services.enrollment_service import get_enrollment_service
    from certm3.services.group_service import get_group_service
    from certm3.services.request_service import get_request_service
    from certm3.services.user_service import get_user_service

    get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()
    get_redis_client.cache_clear()
    get_certificate_authority.cache_clear()
    get_enrollment_token_service.cache_clear()
    get_audit_service.cache_clear()
    get_certificate_service.cache_clear()
    get_challenge_sender.cache_clear()
    get_enrollment_service.cache_clear()
    get_group_service.cache_clear()
    get_request_service.cache_clear()
    get_user_service.cache_clear()


async def _close_async_client(client: Any) -> None:
    """Close async client instances regardless of redis-py close API version."""
    close = getattr(client, "aclose", None)
    if callable(close):
        await close()
        return

    close = getattr(client, "close", None)
    if callable(close):
        result = close()
        if hasattr(result, "__await__"):
            await result


async def _dispose_async_singletons() -> None:
    """Dispose loop-bound async resources before changing event loops."""
    from certm3.db.redis_client import get_redis_client
    from certm3.db.session import dispose_engine, get_engine

    if get_redis_client.cache_info().currsize:
        await _close_async_client(get_redis_client())
    if get_engine.cache_info().currsize:
        await dispose_engine()


def _redis_connection_url(redis: RedisContainer) -> str:
    """Return a redis:// URL across testcontainers versions."""
    get_url = getattr(redis, "get_connection_url", None)
    if callable(get_url):
        redis_url = get_url()
    else:
        host = redis.get_container_host_ip()
        port = redis.get_exposed_port(6379)
        redis_url = f"redis://{host}:{port}"
    if not redis_url.endswith("/0"):
        redis_url = f"{redis_url}/0"
    return redis_url


def _postgres_async_url(postgres: PostgresContainer) -> str:
    """Return a postgresql+asyncpg URL across testcontainers versions."""
    try:
        postgres_url = postgres.get_connection_url(driver=None)
    except TypeError:
        postgres_url = postgres.get_connection_url()

    if postgres_url.startswith("postgresql+"):
        postgres_url = "postgresql://" + postgres_url.split("://", 1)[1]

    return postgres_url.replace("postgresql://", "postgresql+asyncpg://", 1)


def _set_env_values(env_values: dict[str, str]) -> Callable[[], None]:
    """Apply env vars and return a restore callback."""
    original = {key: os.environ.get(key) for key in env_values}
    os.environ.update(env_values)

    def _restore() -> None:
        for key, value in original.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    return _restore


@pytest.fixture(scope="session")
def integration_env(tmp_path_factory: pytest.TempPathFactory) -> Iterator[dict[str, str]]:
    """Start Postgres/Redis containers and configure app settings for integration tests."""
    try:
        postgres = PostgresContainer("postgres:16")
        redis = RedisContainer("redis:7")
        postgres.start()
        redis.start()
    except DockerException as exc:
        if os.environ.get("CI", "").lower() in {"1", "true", "yes"}:
            pytest.fail(
                f"Docker daemon unavailable in CI for testcontainers-backed integration tests: {exc}"
            )
        pytest.skip(f"Docker daemon unavailable for testcontainers-backed integration tests: {exc}")

    private_pem, public_pem = _generate_rsa_keypair()
    cert_path, key_path = _write_ca_material(tmp_path_factory.mktemp("ca"))
    database_url = _postgres_async_url(postgres)
    redis_url = _redis_connection_url(redis)

    env_values = {
        "APP__ENVIRONMENT": "development",
        "APP__SERVICE": "certm3",
        "APP__LOG_LEVEL": "INFO",
        "DATABASE__URL": database_url,
        "REDIS__URL": redis_url,
        "JWT__PRIVATE_KEY_PEM": private_pem,
        "JWT__PUBLIC_KEY_PEM": public_pem,
        "CA__CERT_PATH": str(cert_path),
        "CA__KEY_PATH": str(key_path),
        "CA__SUBJECT_O": "certm3",
        "EMAIL__HOST": "127.0.0.1",
        "EMAIL__PORT": "9",
        "RATE_LIMIT__DEFAULT_REQUESTS_PER_MINUTE": "10000",
        "RATE_LIMIT__REQUEST_REQUESTS_PER_MINUTE": "10000",
        "RATE_LIMIT__VALIDATE_REQUESTS_PER_MINUTE": "10000",
    }

    restore_env = _set_env_values(env_values)
    _clear_dependency_caches()

    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(alembic_cfg, "head")

    try:
        yield {"database_url": database_url, "redis_url": redis_url}
    finally:
        try:
            _clear_dependency_caches()
        finally:
            restore_env()
            postgres.stop()
            redis.stop()


@pytest.fixture(scope="function", autouse=True)
async def reset_state(integration_env: dict[str, str]) -> AsyncIterator[None]:
    """Clear tables except the seeded users group and flush Redis."""
    del integration_env
    from certm3.db.redis_client import get_redis_client
    from certm3.db.session import get_session_factory
    from certm3.models import AuditEvent, Certificate, Group, IdentityRequest, User, UserGroup
    from certm3.models.group import PROTECTED_GROUP_NAME

    await _dispose_async_singletons()
    _clear_dependency_caches()

    session_factory = get_session_factory()
    async with session_factory() as session:
        await session.execute(delete(AuditEvent))
        await session.execute(delete(Certificate))
        await session.execute(delete(UserGroup))
        await session.execute(delete(IdentityRequest))
        await session.execute(delete(User))
        await session.execute(delete(Group).where(Group.name != PROTECTED_GROUP_NAME))
        await session.commit()

    await get_redis_client().flushdb()
    try:
        yield
    finally:
        await _dispose_async_singletons()
        _clear_dependency_caches()


@pytest.fixture(scope="function")
async def db_session_factory(integration_env: dict[str, str]) -> async_sessionmaker[AsyncSession]:
    """Expose async session factory bound to integration Postgres."""
    del integration_env
    from certm3.db.session import get_session_factory

    return get_session_factory()


@pytest.fixture(scope="function")
async def db_session(
    db_session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Yield a write-capable async DB session for test seeding and assertions."""
    async with db_session_factory() as session:
        yield session


class RecordingChallengeSender:
    """Captures challenges instead of emailing them."""

    def __init__(self) -> None:
        self.challenges: dict[str, str] = {}

    async def send_challenge(self, request_id: str, username: str, email: str, challenge: str) -> None:
        self.challenges[request_id] = challenge


@pytest.fixture(scope="function")
def challenge_sender() -> RecordingChallengeSender:
    return RecordingChallengeSender()


@pytest.fixture(scope="function")
def app_factory(
    integration_env: dict[str, str], challenge_sender: RecordingChallengeSender
) -> Callable[[], Any]:
    """Build isolated FastAPI app instances with challenge capture."""
    del integration_env
    from certm3.main import create_app
    from certm3.services.challenge_delivery import get_challenge_sender

    def _factory() -> Any:
        app = create_app()
        app.dependency_overrides[get_challenge_sender] = lambda: challenge_sender
        return app

    return _factory


@pytest.fixture(scope="session")
def client_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="function")
def csr_factory(client_key: rsa.RSAPrivateKey) -> Callable[..., str]:
    """Build PEM CSRs signed by the session client key unless another key is given."""

    def _build(common_name: str = "client", key: rsa.RSAPrivateKey | None = None) -> str:
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
            .sign(key or client_key, hashes.SHA256())
        )
        return csr.public_bytes(serialization.Encoding.PEM).decode("ascii")

    return _build

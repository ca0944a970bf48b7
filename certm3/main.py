"""FastAPI application factory."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from certm3.config import configure_structlog, get_settings
from certm3.core.ca import get_certificate_authority
from certm3.db.session import dispose_engine
from certm3.error_handlers import register_exception_handlers
from certm3.middleware.correlation_id import CorrelationIdMiddleware
from certm3.middleware.logging import LoggingMiddleware
from certm3.middleware.metrics import MetricsMiddleware, build_metrics_endpoint
from certm3.middleware.rate_limit import RateLimitMiddleware
from certm3.routers import ca, certificates, groups, health, requests, users


@asynccontextmanager
async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    await dispose_engine()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    The CA is loaded before the app is returned so the process never serves traffic
    without signing material.
    """
    settings = get_settings()
    configure_structlog(settings)
    get_certificate_authority()

    app = FastAPI(title=settings.app.service, version=settings.app.code_version, lifespan=_lifespan)
    register_exception_handlers(app, environment=settings.app.environment)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(CorrelationIdMiddleware)

    app.add_api_route("/metrics", build_metrics_endpoint(), methods=["GET"], include_in_schema=False)
    app.include_router(requests.router)
    app.include_router(users.router)
    app.include_router(groups.router)
    app.include_router(certificates.router)
    app.include_router(ca.router)
    app.include_router(health.router)
    return app

"""Global exception handlers mapping errors to ``{"detail", "code"}`` responses."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from certm3.core.errors import ServiceError

_DEFAULT_ERROR_CODE_BY_STATUS: dict[int, str] = {
    400: "invalid_input",
    401: "invalid_token",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    503: "not_ready",
}

logger = structlog.get_logger(__name__)


def error_response(status_code: int, detail: str, code: str) -> JSONResponse:
    """Build standardized JSON error payload."""
    return JSONResponse(status_code=status_code, content={"detail": detail, "code": code})


def service_error_response(exc: ServiceError) -> JSONResponse:
    """Render a service error with its transport status."""
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
        headers=headers,
    )


def _extract_detail_and_code(detail: Any) -> tuple[str, str | None]:
    """Normalize exception detail payload into message and optional code."""
    if isinstance(detail, dict):
        raw_code = detail.get("code")
        return str(detail.get("detail", "Request failed.")), str(raw_code) if raw_code else None
    if isinstance(detail, str):
        return detail, None
    return "Request failed.", None


def _sanitize_detail(detail: str, status_code: int, environment: str) -> str:
    """Hide internal failure details outside development."""
    if environment != "development" and status_code >= 500:
        return "Internal server error."
    return detail


def _correlation_id(request: Request) -> str:
    return str(
        getattr(request.state, "correlation_id", None)
        or request.headers.get("x-correlation-id", "unknown")
    )


def register_exception_handlers(app: FastAPI, environment: str) -> None:
    """Register global exception handlers enforcing error shape contract."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
        """Map the service error taxonomy onto HTTP status codes."""
        if exc.status_code >= 500:
            logger.error(
                "service_error",
                path=request.url.path,
                method=request.method,
                code=exc.code,
            )
            detail = _sanitize_detail(exc.detail, exc.status_code, environment)
            return error_response(exc.status_code, detail, exc.code)
        logger.info(
            "request_rejected",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            code=exc.code,
        )
        return service_error_response(exc)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Normalize framework HTTP exceptions to contract payload."""
        detail, raw_code = _extract_detail_and_code(exc.detail)
        code = raw_code or _DEFAULT_ERROR_CODE_BY_STATUS.get(exc.status_code, "error")
        return error_response(status_code=exc.status_code, detail=detail, code=code)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_exception(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Map request validation errors to standardized payload."""
        detail = "Invalid request payload."
        if environment == "development":
            errors = exc.errors()
            if errors:
                location = ".".join(str(part) for part in errors[0].get("loc", ()))
                detail = (
                    f"Invalid request payload: {location}: "
                    f"{errors[0].get('msg', 'validation error')}."
                )
        return error_response(status_code=422, detail=detail, code="validation_error")

    @app.exception_handler(Exception)
    async def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
        """Mask internal errors and enforce contract payload."""
        logger.error(
            "unhandled_exception",
            correlation_id=_correlation_id(request),
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        detail = _sanitize_detail(str(exc), 500, environment)
        return error_response(status_code=500, detail=detail, code="internal_error")

"""Middleware package exports."""

from certm3.middleware.correlation_id import CorrelationIdMiddleware
from certm3.middleware.logging import LoggingMiddleware
from certm3.middleware.metrics import MetricsMiddleware, MetricsRegistry, build_metrics_endpoint
from certm3.middleware.rate_limit import RateLimitMiddleware

__all__ = [
    "CorrelationIdMiddleware",
    "LoggingMiddleware",
    "MetricsMiddleware",
    "MetricsRegistry",
    "RateLimitMiddleware",
    "build_metrics_endpoint",
]

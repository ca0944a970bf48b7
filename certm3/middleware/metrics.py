"""Prometheus-style metrics registry, middleware, and endpoint."""

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from time import perf_counter

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import PlainTextResponse, Response

_PREFIX = "certm3"
_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

DOMAIN_COUNTERS: dict[str, str] = {
    "requests_created_total": "Identity requests accepted.",
    "challenge_validations_total": "Challenge validation attempts by result.",
    "certificates_issued_total": "Client certificates signed by the CA.",
    "certificates_revoked_total": "Certificates revoked by reason.",
}

LabelSet = tuple[tuple[str, str], ...]


@dataclass
class _DurationStat:
    """Aggregate duration stats per label tuple."""

    count: int = 0
    total_seconds: float = 0.0


class MetricsRegistry:
    """In-process metrics registry that exposes Prometheus text format."""

    def __init__(self) -> None:
        self._request_counts: dict[tuple[str, str, str], int] = {}
        self._duration_stats: dict[tuple[str, str, str], _DurationStat] = {}
        self._counters: dict[str, dict[LabelSet, int]] = {name: {} for name in DOMAIN_COUNTERS}
        self._lock = Lock()

    def record(self, method: str, path: str, status: str, duration_seconds: float) -> None:
        """Record one HTTP request measurement for the label set."""
        key = (method, path, status)
        with self._lock:
            self._request_counts[key] = self._request_counts.get(key, 0) + 1
            stat = self._duration_stats.setdefault(key, _DurationStat())
            stat.count += 1
            stat.total_seconds += duration_seconds

    def increment(self, name: str, amount: int = 1, **labels: str) -> None:
        """Increase a domain counter."""
        if name not in DOMAIN_COUNTERS:
            raise KeyError(f"Unknown counter '{name}'.")
        label_set: LabelSet = tuple(sorted((key, str(value)) for key, value in labels.items()))
        with self._lock:
            series = self._counters[name]
            series[label_set] = series.get(label_set, 0) + amount

    def counter_value(self, name: str, **labels: str) -> int:
        """Return the current value of one counter series."""
        label_set: LabelSet = tuple(sorted((key, str(value)) for key, value in labels.items()))
        with self._lock:
            return self._counters[name].get(label_set, 0)

    def render_prometheus_text(self) -> str:
        """Render metrics in Prometheus exposition format."""
        lines = [
            f"# HELP {_PREFIX}_http_requests_total Total HTTP requests seen by the service.",
            f"# TYPE {_PREFIX}_http_requests_total counter",
        ]

        with self._lock:
            for method, path, status in sorted(self._request_counts):
                count = self._request_counts[(method, path, status)]
                labels = _format_labels((("method", method), ("path", path), ("status", status)))
                lines.append(f"{_PREFIX}_http_requests_total{{{labels}}} {count}")

            lines.append(
                f"# HELP {_PREFIX}_http_request_duration_seconds End-to-end HTTP request duration in seconds."
            )
            lines.append(f"# TYPE {_PREFIX}_http_request_duration_seconds summary")
            for method, path, status in sorted(self._duration_stats):
                stat = self._duration_stats[(method, path, status)]
                labels = _format_labels((("method", method), ("path", path), ("status", status)))
                lines.append(f"{_PREFIX}_http_request_duration_seconds_count{{{labels}}} {stat.count}")
                lines.append(
                    f"{_PREFIX}_http_request_duration_seconds_sum{{{labels}}} {stat.total_seconds}"
                )

            for name, help_text in DOMAIN_COUNTERS.items():
                metric = f"{_PREFIX}_{name}"
                lines.append(f"# HELP {metric} {help_text}")
                lines.append(f"# TYPE {metric} counter")
                for label_set, value in sorted(self._counters[name].items()):
                    if label_set:
                        lines.append(f"{metric}{{{_format_labels(label_set)}}} {value}")
                    else:
                        lines.append(f"{metric} {value}")

        return "\n".join(lines) + "\n"


def _escape_label(value: str) -> str:
    """Escape string values for Prometheus label rendering."""
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_labels(labels: LabelSet) -> str:
    """Build deterministic label set string."""
    return ",".join(f'{key}="{_escape_label(value)}"' for key, value in labels)


DEFAULT_METRICS_REGISTRY = MetricsRegistry()


def get_metrics_registry() -> MetricsRegistry:
    """Return the process metrics registry."""
    return DEFAULT_METRICS_REGISTRY


class MetricsMiddleware(BaseHTTPMiddleware):
    """Record metrics for all responses, including failed requests."""

    def __init__(self, app, registry: MetricsRegistry = DEFAULT_METRICS_REGISTRY) -> None:
        super().__init__(app)
        self._registry = registry

    async def dispatch(self, request: Request, call_next) -> Response:
        """Capture request counts and durations keyed by route template."""
        start = perf_counter()
        path = request.url.path
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            if route is not None:
                path = getattr(route, "path", path)
            self._registry.record(
                method=request.method,
                path=path,
                status=str(status_code),
                duration_seconds=perf_counter() - start,
            )


def build_metrics_endpoint(registry: MetricsRegistry = DEFAULT_METRICS_REGISTRY):
    """Build FastAPI-compatible endpoint that serves metrics text."""

    async def metrics_endpoint() -> PlainTextResponse:
        """Return current metrics in Prometheus exposition format."""
        return PlainTextResponse(registry.render_prometheus_text(), media_type=_CONTENT_TYPE)

    return metrics_endpoint

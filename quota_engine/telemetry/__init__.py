"""Prometheus counters for quota decisions, cache tiers and HTTP traffic."""

from __future__ import annotations

import time

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..core.config import get_settings

RATE_LIMIT_DECISIONS = Counter(
    "quota_engine_rate_limit_decisions_total",
    "Rate limit evaluations by resource and outcome",
    labelnames=("resource", "outcome"),
)
QUOTA_CONSUMPTIONS = Counter(
    "quota_engine_quota_consumptions_total",
    "Feature quota consumption attempts by feature and outcome",
    labelnames=("feature", "outcome"),
)
CACHE_LOOKUPS = Counter(
    "quota_engine_cache_lookups_total",
    "Cache lookups by cache, tier and outcome",
    labelnames=("cache", "tier", "outcome"),
)
REQUEST_COUNT = Counter(
    "quota_engine_http_requests_total",
    "Total count of HTTP requests",
    labelnames=("method", "path", "status"),
)
REQUEST_LATENCY = Histogram(
    "quota_engine_http_request_duration_seconds",
    "Latency distribution for HTTP requests",
    labelnames=("method", "path"),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5),
)


def record_cache_lookup(cache: str, tier: str, hit: bool) -> None:
    CACHE_LOOKUPS.labels(cache=cache, tier=tier, outcome="hit" if hit else "miss").inc()


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Count and time requests, labelled by route template."""

    def __init__(self, app, metrics_path: str) -> None:
        super().__init__(app)
        self._metrics_path = metrics_path

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        if request.url.path == self._metrics_path:
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start
        path = _route_template(request)
        REQUEST_COUNT.labels(
            method=request.method, path=path, status=str(response.status_code)
        ).inc()
        REQUEST_LATENCY.labels(method=request.method, path=path).observe(duration)
        return response


def setup_prometheus(app: FastAPI) -> None:
    metrics_path = get_settings().prometheus_metrics_path
    app.add_middleware(PrometheusMiddleware, metrics_path=metrics_path)

    @app.get(metrics_path, include_in_schema=False)
    async def prometheus_metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def _route_template(request: Request) -> str:
    # Account and resource ids stay out of label values.
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    return template or "unmatched"

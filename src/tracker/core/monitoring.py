"""Prometheus metrics for HTTP traffic, the Salesforce client, and sync runs.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- record_sync_records(): Per-entity record outcome counters
- track_sync_run(): Context manager timing one import/export direction
- get_metrics_response(): Exposition response for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from prometheus_client import REGISTRY, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Salesforce Metrics ───────────────────────────────────────────────────────

salesforce_api_requests_total = Counter(
    "salesforce_api_requests_total",
    "Requests sent to the Salesforce REST API",
    ["method", "status_code"],
)

salesforce_token_refreshes_total = Counter(
    "salesforce_token_refreshes_total",
    "Access token refreshes triggered by expired sessions",
    ["status"],
)

salesforce_sync_records_total = Counter(
    "salesforce_sync_records_total",
    "Records processed by Salesforce sync",
    ["entity", "direction", "outcome"],
)

salesforce_sync_duration_seconds = Histogram(
    "salesforce_sync_duration_seconds",
    "Duration of one Salesforce import or export pass",
    ["direction"],
    buckets=(0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)

salesforce_sync_runs_total = Counter(
    "salesforce_sync_runs_total",
    "Completed Salesforce sync runs by final status",
    ["status"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records request count and duration per method/endpoint.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        # Route pattern keeps organization ids out of the label set
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Sync Helpers ─────────────────────────────────────────────────────────────


def record_sync_records(entity: str, direction: str, stats: Any) -> None:
    """Add a SyncStats-like object's counters to the record metric."""
    for outcome in ("created", "updated", "skipped"):
        count = getattr(stats, outcome, 0)
        if count:
            salesforce_sync_records_total.labels(
                entity=entity, direction=direction, outcome=outcome
            ).inc(count)
    errors = len(getattr(stats, "errors", []))
    if errors:
        salesforce_sync_records_total.labels(
            entity=entity, direction=direction, outcome="error"
        ).inc(errors)


@asynccontextmanager
async def track_sync_run(direction: str) -> AsyncGenerator[None, None]:
    """Observe the duration of an import or export pass, even when it raises."""
    start_time = time.perf_counter()
    try:
        yield
    finally:
        salesforce_sync_duration_seconds.labels(direction=direction).observe(
            time.perf_counter() - start_time
        )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )

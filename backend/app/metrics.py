"""Prometheus collectors for the HTTP surface and the date selection flow."""

from __future__ import annotations

import re
import time
from collections.abc import Callable

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from .config import APP_VERSION, SERVICE_NAME

LATENCY_BUCKETS = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
UNTRACKED_PATHS = frozenset({"/metrics"})

_ID_SEGMENTS = (
    re.compile(r"/[0-9a-f]{8}(?:-[0-9a-f]{4}){3}-[0-9a-f]{12}", re.IGNORECASE),
    re.compile(r"/\d+(?=/|$)"),
    re.compile(r"/[A-Za-z0-9_-]{20,}"),
)

app_info = Info("trip_deposits", "Trip date selection & deposit checkout service")
app_info.info({"version": APP_VERSION, "service": SERVICE_NAME})

http_requests_total = Counter(
    "http_requests_total", "HTTP requests served", ["method", "endpoint", "status"]
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint"],
    buckets=LATENCY_BUCKETS,
)

date_selection_actions_total = Counter(
    "date_selection_actions_total", "Date selection actions by outcome", ["action", "outcome"]
)
deposit_checkouts_total = Counter(
    "deposit_checkouts_total",
    "Deposit checkout resolutions (created, reused, already_paid, failed)",
    ["result"],
)
notifications_enqueued_total = Counter(
    "notifications_enqueued_total",
    "Outbox enqueue attempts (inserted, deduplicated, failed)",
    ["event", "result"],
)
payment_provider_calls_total = Counter(
    "payment_provider_calls_total",
    "Outbound payment provider calls",
    ["provider", "operation", "status"],
)
circuit_breaker_state = Gauge(
    "circuit_breaker_state", "0=closed, 1=open, 2=half_open", ["circuit_name"]
)
rate_limit_requests_total = Counter(
    "rate_limit_requests_total", "Rate limiter decisions", ["result"]
)


def normalize_endpoint(path: str) -> str:
    """Collapse id-like path segments so stray URLs cannot blow up label cardinality."""
    for pattern in _ID_SEGMENTS:
        path = pattern.sub("/{id}", path)
    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in UNTRACKED_PATHS:
            return await call_next(request)

        labels = {"method": request.method, "endpoint": normalize_endpoint(request.url.path)}
        status = "500"
        started = time.perf_counter()
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            http_request_duration_seconds.labels(**labels).observe(time.perf_counter() - started)
            http_requests_total.labels(status=status, **labels).inc()


def get_metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "PrometheusMiddleware",
    "circuit_breaker_state",
    "date_selection_actions_total",
    "deposit_checkouts_total",
    "get_metrics",
    "http_request_duration_seconds",
    "http_requests_total",
    "normalize_endpoint",
    "notifications_enqueued_total",
    "payment_provider_calls_total",
    "rate_limit_requests_total",
]

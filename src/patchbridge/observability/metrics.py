from __future__ import annotations

"""Prometheus metrics for the patchbridge service.

HTTP requests are timed by a middleware; the session broker updates the
session, generation, patch and rejection series directly.
"""

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Gauge, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "patchbridge_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

ACTIVE_SESSIONS = Gauge(
    "patchbridge_active_sessions",
    "WebSocket sessions currently registered with the broker",
)

GENERATIONS = Counter(
    "patchbridge_generations_total",
    "Generation requests by outcome",
    labelnames=("outcome",),
)

PATCHES = Counter(
    "patchbridge_patches_total",
    "File commands applied by operation and result",
    labelnames=("operation", "success"),
)

REJECTIONS = Counter(
    "patchbridge_rejections_total",
    "Requests refused at admission",
    labelnames=("reason",),
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /files/{path}) to a coarse label.

    Only the first segment survives, so every ``/files/...`` read shares the
    ``/files`` label. WebSocket routes never pass through the HTTP middleware
    and are counted by the session gauge instead.
    """
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 1:
        return "/" + segs[1]
    return path


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(elapsed)
        return response

    return middleware

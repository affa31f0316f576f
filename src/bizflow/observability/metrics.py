from __future__ import annotations

"""Prometheus metrics for the BizFlow assistant API.

Adds an HTTP middleware that records request latency per method/path/status
and the counters the relay updates while it streams.
"""

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "bizflow_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

RELAY_STREAMS = Counter(
    "bizflow_relay_streams_total",
    "Relay requests by outcome",
    labelnames=("outcome",),
)

RELAY_FRAGMENTS = Counter(
    "bizflow_relay_fragments_total",
    "Content fragments forwarded to callers",
)

RELAY_MALFORMED_FRAMES = Counter(
    "bizflow_relay_malformed_frames_total",
    "Upstream data lines skipped because they were not valid JSON frames",
)


def record_relay_outcome(outcome: str) -> None:
    RELAY_STREAMS.labels(outcome=outcome).inc()


def sanitize_path(path: str) -> str:
    """Reduce paths to their first two static segments (e.g. /api/chat)."""
    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if not segs:
        return "/"
    return "/" + "/".join(segs[:2])


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.endswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        # streamed responses are timed to first byte
        elapsed = time.perf_counter() - start
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(elapsed)
        return response

    return middleware

"""Prometheus metrics for the Spin API.

Request latency is recorded by an HTTP middleware; the generation pipeline
reports its own outcomes and durations.
"""

from __future__ import annotations

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

REQUEST_LATENCY = Histogram(
    "spin_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

GENERATIONS = Counter(
    "spin_generations_total",
    "Generation requests by mode and outcome",
    labelnames=("mode", "outcome"),
)

GENERATION_DURATION = Histogram(
    "spin_generation_duration_seconds",
    "Wall time of one generation, provider call through persistence",
    labelnames=("mode",),
    buckets=(1.0, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0, 300.0),
)


def sanitize_path(path: str) -> str:
    """Reduce a request path to its first segment to bound label cardinality."""
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 1:
        return "/" + segs[1]
    return path


def record_generation(mode: str, outcome: str, elapsed: float | None = None) -> None:
    GENERATIONS.labels(mode=mode, outcome=outcome).inc()
    if elapsed is not None:
        GENERATION_DURATION.labels(mode=mode).observe(elapsed)


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
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

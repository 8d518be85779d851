"""
Metrics Middleware

Prometheus metrics collection for inbound requests.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from fastapi import Request, Response

from routegate.monitoring.metrics import (
    ACTIVE_REQUESTS,
    REQUEST_COUNT,
    REQUEST_DURATION,
)


async def metrics_middleware(request: Request, call_next: Callable) -> Response:
    """
    Collect Prometheus metrics for requests.

    Tracks request counts, durations, and active requests. Labels avoid the
    raw path since proxied paths are unbounded.
    """
    ACTIVE_REQUESTS.inc()
    start_time = time.time()

    try:
        response = await call_next(request)

        REQUEST_COUNT.labels(
            method=request.method,
            status_code=response.status_code,
        ).inc()

        REQUEST_DURATION.labels(method=request.method).observe(time.time() - start_time)

        return response

    except Exception:
        REQUEST_COUNT.labels(method=request.method, status_code=500).inc()
        REQUEST_DURATION.labels(method=request.method).observe(time.time() - start_time)
        raise

    finally:
        ACTIVE_REQUESTS.dec()

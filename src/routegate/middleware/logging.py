"""
Logging Middleware

Request/response logging with structured logging and request correlation.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable

import structlog
from fastapi import Request, Response

logger = structlog.get_logger()


def configure_logging(level: str = "INFO") -> None:
    """
    Configure structlog for the gateway process.

    Args:
        level: Minimum log level name
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        cache_logger_on_first_use=True,
    )


async def logging_middleware(request: Request, call_next: Callable) -> Response:
    """
    Add structured logging and request tracing.

    Reuses an inbound X-Request-ID or generates a trace ID, and logs
    request/response details.
    """
    trace_id = request.headers.get("x-request-id") or str(uuid.uuid4())

    # Setup structured logging context
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        trace_id=trace_id,
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None,
    )

    start_time = time.time()

    try:
        response = await call_next(request)

        duration = time.time() - start_time

        logger.info(
            "Request completed",
            status_code=response.status_code,
            duration=duration,
        )

        # Add trace ID to response headers
        response.headers["X-Trace-ID"] = trace_id
        response.headers["X-Request-ID"] = trace_id

        return response

    except Exception as exc:
        duration = time.time() - start_time

        logger.error(
            "Request failed",
            error=str(exc),
            error_type=type(exc).__name__,
            duration=duration,
            exc_info=True,
        )
        raise

"""
Gateway - FastAPI Application

Main application entry point. Terminates inbound HTTP, maps request paths to
logical services and forwards them through the dispatcher.
"""

from __future__ import annotations

import math
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from routegate.config import RouteGateSettings, settings as default_settings
from routegate.exceptions import CircuitOpenError, RouteGateError
from routegate.middleware.logging import configure_logging, logging_middleware
from routegate.middleware.metrics import metrics_middleware
from routegate.monitoring.metrics import get_metrics_registry, set_gateway_info
from routegate.routes import health, proxy
from routegate.routing.dispatcher import Dispatcher

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings: RouteGateSettings = app.state.settings
    dispatcher: Dispatcher = app.state.dispatcher

    try:
        logger.info(
            "Starting gateway",
            version=settings.GATEWAY_VERSION,
            name=settings.GATEWAY_NAME,
            routes={r.prefix: r.service_name for r in dispatcher.routes},
            registry=settings.REGISTRY_URL or "static",
        )
        yield
    finally:
        logger.info("Shutting down gateway")
        await dispatcher.close()
        logger.info("Dispatcher closed")


async def gateway_error_handler(request: Request, exc: RouteGateError) -> JSONResponse:
    """Render dispatch failures as JSON with the error's HTTP status."""
    headers = {}
    if isinstance(exc, CircuitOpenError):
        headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after)))

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def create_app(
    settings: RouteGateSettings | None = None,
    dispatcher: Dispatcher | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Gateway settings, defaults to the environment-loaded settings
        dispatcher: Prebuilt dispatcher, built from settings when omitted
    """
    settings = settings or default_settings

    app = FastAPI(
        title=settings.GATEWAY_NAME,
        description="Discovery-aware, load-balancing, fault-tolerant request dispatcher",
        version=settings.GATEWAY_VERSION,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.dispatcher = dispatcher or Dispatcher.from_settings(settings)

    app.add_exception_handler(RouteGateError, gateway_error_handler)

    # Add logging middleware
    @app.middleware("http")
    async def add_logging_middleware(request, call_next):
        return await logging_middleware(request, call_next)

    # Add metrics middleware if enabled
    if settings.ENABLE_METRICS:
        @app.middleware("http")
        async def add_metrics_middleware(request, call_next):
            return await metrics_middleware(request, call_next)

        @app.get("/metrics", include_in_schema=False)
        async def metrics() -> Response:
            return Response(
                content=generate_latest(get_metrics_registry()),
                media_type=CONTENT_TYPE_LATEST,
            )

        set_gateway_info(settings.GATEWAY_NAME, settings.GATEWAY_VERSION)

    # Include routers, catch-all proxy last
    app.include_router(health.router, tags=["health"])
    app.include_router(proxy.router)

    return app


def run() -> None:
    """Run the gateway with uvicorn."""
    import uvicorn

    configure_logging(default_settings.LOG_LEVEL)
    uvicorn.run(
        create_app(),
        host=default_settings.HOST,
        port=default_settings.PORT,
        log_level=default_settings.LOG_LEVEL.lower(),
        access_log=False,
    )


if __name__ == "__main__":
    run()

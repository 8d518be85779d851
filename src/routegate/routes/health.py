"""
Health Check Endpoints

Gateway liveness/readiness and per-service routing state.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Request, status

from routegate.models.health import (
    HealthCheckDetail,
    HealthResponse,
    LivenessResponse,
    ReadinessResponse,
    ServicesStatusResponse,
)
from routegate.routing.circuit_breaker import CircuitState

router = APIRouter()
logger = structlog.get_logger()


@router.get("/health", response_model=HealthResponse, summary="Gateway health check")
async def health_check(request: Request) -> HealthResponse:
    """
    Overall gateway health.

    Reports ``degraded`` while any service's circuit breaker is not closed.
    """
    dispatcher = request.app.state.dispatcher
    settings = request.app.state.settings

    breakers = dispatcher.breakers.get_all_stats()
    tripped = [b["service"] for b in breakers if b["state"] != CircuitState.CLOSED.value]

    checks = {
        "application": HealthCheckDetail(status="healthy", details="Gateway application is running"),
        "circuit_breakers": HealthCheckDetail(
            status="degraded" if tripped else "healthy",
            details=f"Not closed: {', '.join(sorted(tripped))}" if tripped else "All closed",
        ),
    }

    return HealthResponse(
        status="degraded" if tripped else "healthy",
        version=settings.GATEWAY_VERSION,
        timestamp=datetime.now(UTC).isoformat(),
        checks=checks,
    )


@router.get("/ready", response_model=ReadinessResponse, summary="Gateway readiness check")
async def readiness_check(request: Request) -> ReadinessResponse:
    """
    Ready once a dispatcher is configured with at least one route.

    **Returns 503 if not ready.**
    """
    dispatcher = getattr(request.app.state, "dispatcher", None)
    checks = {
        "dispatcher": dispatcher is not None,
        "routes": bool(dispatcher and len(dispatcher.routes) > 0),
    }

    if not all(checks.values()):
        logger.warning("Gateway not ready", checks=checks)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Gateway not ready"
        )

    return ReadinessResponse(status="ready", ready=True, checks=checks)


@router.get("/live", response_model=LivenessResponse, summary="Gateway liveness check")
async def liveness_check() -> LivenessResponse:
    """Liveness probe: the process is serving requests."""
    return LivenessResponse(status="alive")


@router.get(
    "/health/services",
    response_model=ServicesStatusResponse,
    summary="Routing state per service",
)
async def services_status(request: Request) -> ServicesStatusResponse:
    """Cached instances, circuit breaker and instance health for every routed service."""
    return ServicesStatusResponse(services=request.app.state.dispatcher.get_status())


@router.get("/health/services/{service_name}", summary="Routing state of one service")
async def service_status(service_name: str, request: Request) -> dict[str, Any]:
    """Cached instances, circuit breaker and instance health for one service."""
    return request.app.state.dispatcher.get_service_status(service_name)


@router.post("/health/services/{service_name}/reset", summary="Reset a circuit breaker")
async def reset_service_breaker(service_name: str, request: Request) -> dict[str, Any]:
    """Force the service's circuit breaker closed."""
    dispatcher = request.app.state.dispatcher
    await dispatcher.reset_breaker(service_name)
    logger.info("Circuit breaker reset via API", service=service_name)
    return dispatcher.get_service_status(service_name)

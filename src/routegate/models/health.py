"""
Health Check Models

Pydantic models for health, readiness and service status endpoints.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class HealthCheckDetail(BaseModel):
    """Individual health check detail."""

    status: str = Field(..., description="Health check status")
    details: str = Field(..., description="Additional details")


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str = Field(..., description="Overall health status")
    version: str = Field(..., description="Gateway version")
    timestamp: str = Field(..., description="Check timestamp in ISO format")
    checks: dict[str, HealthCheckDetail] = Field(
        ..., description="Individual health checks"
    )


class ReadinessResponse(BaseModel):
    """Readiness check response model."""

    status: str = Field(..., description="Readiness status")
    ready: bool = Field(..., description="Whether the gateway is ready")
    checks: dict[str, bool] = Field(..., description="Individual readiness checks")


class LivenessResponse(BaseModel):
    """Liveness check response model."""

    status: str = Field(..., description="Liveness status")


class ServicesStatusResponse(BaseModel):
    """Routing state of every configured service."""

    services: list[dict[str, Any]] = Field(
        ..., description="Cache, circuit breaker and instance health per service"
    )

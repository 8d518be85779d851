"""
Gateway Monitoring

Prometheus metrics for inbound traffic, dispatch outcomes, circuit breakers
and registry refreshes.
"""

from __future__ import annotations

from .metrics import (
    ACTIVE_REQUESTS,
    ATTEMPT_COUNT,
    CIRCUIT_BREAKER_REJECTIONS,
    CIRCUIT_BREAKER_STATE,
    DISPATCH_COUNT,
    REGISTRY_REFRESHES,
    REQUEST_COUNT,
    REQUEST_DURATION,
    get_metrics_registry,
    set_gateway_info,
)

__all__ = [
    "ACTIVE_REQUESTS",
    "ATTEMPT_COUNT",
    "CIRCUIT_BREAKER_REJECTIONS",
    "CIRCUIT_BREAKER_STATE",
    "DISPATCH_COUNT",
    "REGISTRY_REFRESHES",
    "REQUEST_COUNT",
    "REQUEST_DURATION",
    "get_metrics_registry",
    "set_gateway_info",
]

"""
Prometheus Metrics Collection

Metrics for dispatcher monitoring:
- Inbound HTTP request metrics
- Dispatch outcomes and per-attempt results
- Circuit breaker state and rejections
- Registry refresh results
"""

from __future__ import annotations

from typing import Any

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
)

_REGISTRY = REGISTRY

_metrics_cache: dict[str, Any] = {}

def _get_or_create(metric_type: type, name: str, documentation: str, **kwargs: Any) -> Any:
    """Get existing metric or create new one, handling duplicate registration."""
    if name in _metrics_cache:
        return _metrics_cache[name]

    try:
        metric = metric_type(name, documentation, registry=_REGISTRY, **kwargs)
        _metrics_cache[name] = metric
        return metric
    except ValueError:
        # Metric already registered, retrieve it from registry
        for collector in _REGISTRY._collector_to_names.keys():
            if getattr(collector, "_name", None) == name:
                _metrics_cache[name] = collector
                return collector
        raise


# Gateway information
GATEWAY_INFO: Info = _get_or_create(Info, "routegate", "Gateway service information")

# HTTP Request Metrics
REQUEST_COUNT: Counter = _get_or_create(
    Counter,
    "routegate_http_requests_total",
    "Total number of inbound HTTP requests",
    labelnames=["method", "status_code"],
)

REQUEST_DURATION: Histogram = _get_or_create(
    Histogram,
    "routegate_http_request_duration_seconds",
    "Inbound HTTP request duration in seconds",
    labelnames=["method"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

ACTIVE_REQUESTS: Gauge = _get_or_create(
    Gauge,
    "routegate_http_requests_active",
    "Number of in-flight inbound HTTP requests",
)

# Dispatch Metrics
DISPATCH_COUNT: Counter = _get_or_create(
    Counter,
    "routegate_dispatch_total",
    "Total number of logical calls by final outcome",
    labelnames=["service", "outcome"],
)

ATTEMPT_COUNT: Counter = _get_or_create(
    Counter,
    "routegate_attempts_total",
    "Total number of backend attempts by result",
    labelnames=["service", "result"],
)

# Circuit Breaker Metrics
CIRCUIT_BREAKER_STATE: Gauge = _get_or_create(
    Gauge,
    "routegate_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half-open)",
    labelnames=["service"],
)

CIRCUIT_BREAKER_REJECTIONS: Counter = _get_or_create(
    Counter,
    "routegate_circuit_breaker_rejections_total",
    "Total number of attempts rejected by an open circuit",
    labelnames=["service"],
)

# Registry Metrics
REGISTRY_REFRESHES: Counter = _get_or_create(
    Counter,
    "routegate_registry_refreshes_total",
    "Total number of registry refreshes by result",
    labelnames=["service", "result"],
)


def get_metrics_registry() -> CollectorRegistry:
    """
    Get the Prometheus metrics registry.

    Returns:
        The Prometheus registry containing all metrics
    """
    return _REGISTRY


def set_gateway_info(name: str, version: str, **extra_labels: str) -> None:
    """
    Set gateway service information.

    Args:
        name: Gateway service name
        version: Gateway version
        **extra_labels: Additional labels to include
    """
    info_dict: dict[str, Any] = {
        "name": name,
        "version": version,
    }
    info_dict.update(extra_labels)
    GATEWAY_INFO.info(info_dict)

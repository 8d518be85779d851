"""
Backend Service Routing

Discovery-aware, load-balancing, fault-tolerant dispatch to backend services.
"""

from __future__ import annotations

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
    FailureWindow,
)
from .discovery import (
    CacheState,
    HttpRegistryBackend,
    InstanceSet,
    RegistryBackend,
    RegistryClient,
    RegistryRecord,
    ServiceInstance,
    StaticRegistryBackend,
)
from .dispatcher import Dispatcher, GatewayRequest, GatewayResponse
from .health import HealthTracker, InstanceHealth, InstanceStatus
from .load_balancer import (
    LoadBalancer,
    LoadBalancingAlgorithm,
    LoadBalancingStrategy,
    RandomStrategy,
    RoundRobinStrategy,
)
from .retry import BackoffStrategy, RetryContext, RetryExecutor, RetryPolicy
from .route_table import Route, RouteTable

__all__ = [
    "BackoffStrategy",
    "CacheState",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    "Dispatcher",
    "FailureWindow",
    "GatewayRequest",
    "GatewayResponse",
    "HealthTracker",
    "HttpRegistryBackend",
    "InstanceHealth",
    "InstanceSet",
    "InstanceStatus",
    "LoadBalancer",
    "LoadBalancingAlgorithm",
    "LoadBalancingStrategy",
    "RandomStrategy",
    "RegistryBackend",
    "RegistryClient",
    "RegistryRecord",
    "RetryContext",
    "RetryExecutor",
    "RetryPolicy",
    "RoundRobinStrategy",
    "Route",
    "RouteTable",
    "ServiceInstance",
    "StaticRegistryBackend",
]

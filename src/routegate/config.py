"""
Gateway Configuration

Environment-based configuration management for the request dispatcher.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings

from routegate.routing.load_balancer import LoadBalancingAlgorithm
from routegate.routing.retry import BackoffStrategy


class RouteGateSettings(BaseSettings):
    """Dispatcher configuration loaded from environment variables."""

    # Application
    DEBUG: bool = Field(default=False, description="Enable debug mode")
    HOST: str = Field(default="0.0.0.0", description="Server host")
    PORT: int = Field(default=8080, description="Server port")
    GATEWAY_NAME: str = Field(default="RouteGate", description="Gateway service name")
    GATEWAY_VERSION: str = Field(default="0.1.0", description="Gateway version")

    # Routing
    ROUTE_TABLE: dict[str, str] = Field(
        default_factory=dict,
        description="Path prefix to logical service name, e.g. {\"/orders\": \"orders\"}",
    )
    LOAD_BALANCING_ALGORITHM: LoadBalancingAlgorithm = Field(
        default=LoadBalancingAlgorithm.ROUND_ROBIN,
        description="Instance selection policy (round_robin, random)",
    )

    # Service registry
    REGISTRY_URL: str | None = Field(
        default=None, description="Base URL of the service registry; static instances when unset"
    )
    REGISTRY_INSTANCES_PATH: str = Field(
        default="/services/{service}/instances",
        description="Registry path template listing instances of a service",
    )
    REGISTRY_TIMEOUT: float = Field(default=2.0, gt=0, description="Registry query timeout in seconds")
    REGISTRY_CACHE_TTL: float = Field(
        default=10.0, ge=0, description="Freshness window of cached instance lists in seconds"
    )
    STATIC_INSTANCES: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Static host:port instances per service, used without a registry",
    )

    # Circuit breaker
    FAILURE_THRESHOLD: int = Field(default=5, ge=1, description="Consecutive failures before opening")
    COOLDOWN_PERIOD: float = Field(
        default=30.0, ge=0, description="Seconds a breaker stays open before probing"
    )
    UNHEALTHY_THRESHOLD: int = Field(
        default=3, ge=1, description="Consecutive failures before an instance reports unhealthy"
    )

    # Retries
    MAX_ATTEMPTS: int = Field(default=3, ge=1, description="Attempts per logical call")
    BACKOFF_STRATEGY: BackoffStrategy = Field(
        default=BackoffStrategy.EXPONENTIAL,
        description="Backoff strategy (fixed, linear, exponential)",
    )
    BACKOFF_INITIAL: float = Field(default=0.1, ge=0, description="Initial backoff delay in seconds")
    BACKOFF_MULTIPLIER: float = Field(default=2.0, ge=1, description="Exponential backoff multiplier")
    BACKOFF_MAX: float = Field(default=2.0, ge=0, description="Maximum backoff delay in seconds")
    BACKOFF_JITTER: bool = Field(default=False, description="Add +/-25% jitter to backoff delays")
    RETRY_ON_STATUS: list[int] = Field(
        default=[502, 503, 504], description="Backend statuses treated as retryable failures"
    )

    # Timeouts
    CALL_TIMEOUT: float = Field(default=10.0, gt=0, description="Per-attempt backend timeout in seconds")
    REQUEST_TIMEOUT: float | None = Field(
        default=None, gt=0, description="Overall deadline for one logical call in seconds"
    )

    # Monitoring
    ENABLE_METRICS: bool = Field(default=True, description="Enable Prometheus metrics")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    model_config = {
        "env_file": ".env",
        "env_prefix": "ROUTEGATE_",
        "case_sensitive": True,
        "extra": "ignore",
    }


# Global settings instance
settings = RouteGateSettings()

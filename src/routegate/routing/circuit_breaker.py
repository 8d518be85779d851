"""
Circuit Breaker

Per-service circuit breaker gating each individual call attempt.
Prevents cascading failures by failing fast when a service is unhealthy.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import structlog

from routegate.exceptions import CircuitOpenError
from routegate.monitoring.metrics import CIRCUIT_BREAKER_REJECTIONS, CIRCUIT_BREAKER_STATE

logger = structlog.get_logger()


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Service is failing, reject attempts
    HALF_OPEN = "half_open"  # Single probe in flight to test recovery


_STATE_GAUGE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.OPEN: 1,
    CircuitState.HALF_OPEN: 2,
}


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration."""

    failure_threshold: int = 5
    """Consecutive failures before opening circuit"""

    cooldown_period: float = 30.0
    """Time in seconds the circuit stays open before admitting a probe"""


@dataclass
class FailureWindow:
    """Consecutive failure count and when the circuit last opened."""

    consecutive_failures: int = 0
    opened_at: float | None = None


@dataclass
class CircuitBreakerStats:
    """Circuit breaker statistics."""

    state: CircuitState = CircuitState.CLOSED
    window: FailureWindow = field(default_factory=FailureWindow)
    probe_in_flight: bool = False
    last_state_change: float = 0.0
    total_calls: int = 0
    total_failures: int = 0
    total_successes: int = 0
    total_rejections: int = 0


class CircuitBreaker:
    """
    Circuit breaker for one logical service.

    Consulted once per attempt. ``acquire`` admits or rejects the attempt and
    every admitted attempt must end with exactly one of ``record_success``,
    ``record_failure`` or ``release``.

    States:
    - CLOSED: Normal operation, attempts pass through
    - OPEN: Attempts fail fast until the cooldown elapses
    - HALF_OPEN: One probe attempt admitted, everything else rejected
    """

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            service_name: Name of the service
            config: Circuit breaker configuration
            clock: Monotonic time source
        """
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = asyncio.Lock()
        self.stats = CircuitBreakerStats(last_state_change=clock())
        CIRCUIT_BREAKER_STATE.labels(service=service_name).set(0)

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        return self.stats.state

    @property
    def is_closed(self) -> bool:
        """Check if circuit is closed (normal operation)."""
        return self.stats.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        """Check if circuit is open (failing fast)."""
        return self.stats.state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        """Check if circuit is half-open (testing recovery)."""
        return self.stats.state == CircuitState.HALF_OPEN

    @property
    def consecutive_failures(self) -> int:
        """Consecutive failures recorded while closed."""
        return self.stats.window.consecutive_failures

    async def acquire(self) -> bool:
        """
        Ask whether an attempt may proceed.

        Returns:
            True when the admitted attempt is the half-open probe

        Raises:
            CircuitOpenError: If the circuit is open or a probe is already in flight
        """
        async with self._lock:
            if self.is_open:
                if self._time_until_retry() > 0:
                    self._reject()
                self._transition_to_half_open()

            probe = False
            if self.is_half_open:
                if self.stats.probe_in_flight:
                    self._reject()
                self.stats.probe_in_flight = True
                probe = True

            self.stats.total_calls += 1
            return probe

    async def record_success(self, probe: bool = False) -> None:
        """
        Record a successful attempt.

        Args:
            probe: Whether the attempt was admitted as the half-open probe
        """
        async with self._lock:
            self.stats.total_successes += 1

            if self.is_half_open and probe:
                self._transition_to_closed()
            elif self.is_closed:
                # Reset failure count on success in closed state
                self.stats.window.consecutive_failures = 0

            logger.debug(
                "Circuit breaker attempt succeeded",
                service=self.service_name,
                state=self.state,
            )

    async def record_failure(self, probe: bool = False) -> None:
        """
        Record a failed attempt.

        Args:
            probe: Whether the attempt was admitted as the half-open probe
        """
        async with self._lock:
            self.stats.total_failures += 1

            if self.is_half_open and probe:
                # A failed probe reopens and restarts the cooldown
                self._transition_to_open()
            elif self.is_closed:
                self.stats.window.consecutive_failures += 1
                logger.warning(
                    "Circuit breaker attempt failed",
                    service=self.service_name,
                    failure_count=self.stats.window.consecutive_failures,
                    threshold=self.config.failure_threshold,
                )
                if self.stats.window.consecutive_failures >= self.config.failure_threshold:
                    self._transition_to_open()

    async def release(self, probe: bool = False) -> None:
        """
        End an admitted attempt without a success or failure outcome.

        Args:
            probe: Whether the attempt was admitted as the half-open probe
        """
        async with self._lock:
            if self.is_half_open and probe:
                self.stats.probe_in_flight = False

    def retry_after(self) -> float:
        """Seconds until an open circuit admits a probe."""
        return self._time_until_retry() if self.is_open else 0.0

    def _reject(self) -> None:
        retry_after = self._time_until_retry()
        self.stats.total_rejections += 1
        CIRCUIT_BREAKER_REJECTIONS.labels(service=self.service_name).inc()
        logger.debug(
            "Circuit breaker rejecting attempt, failing fast",
            service=self.service_name,
            state=self.state,
            retry_after=retry_after,
        )
        raise CircuitOpenError(self.service_name, retry_after)

    def _time_until_retry(self) -> float:
        """Calculate time until a probe is allowed."""
        opened_at = self.stats.window.opened_at
        if opened_at is None:
            return 0.0
        return max(0.0, self.config.cooldown_period - (self._clock() - opened_at))

    def _set_state(self, state: CircuitState) -> CircuitState:
        old_state = self.stats.state
        self.stats.state = state
        self.stats.last_state_change = self._clock()
        CIRCUIT_BREAKER_STATE.labels(service=self.service_name).set(_STATE_GAUGE_VALUES[state])
        return old_state

    def _transition_to_open(self) -> None:
        """Transition circuit to open state."""
        old_state = self._set_state(CircuitState.OPEN)
        self.stats.window.opened_at = self._clock()
        self.stats.probe_in_flight = False

        logger.error(
            "Circuit breaker opened",
            service=self.service_name,
            old_state=old_state,
            failure_count=self.stats.window.consecutive_failures,
            cooldown=self.config.cooldown_period,
        )

    def _transition_to_half_open(self) -> None:
        """Transition circuit to half-open state."""
        old_state = self._set_state(CircuitState.HALF_OPEN)
        self.stats.probe_in_flight = False

        logger.info(
            "Circuit breaker half-opened (testing recovery)",
            service=self.service_name,
            old_state=old_state,
        )

    def _transition_to_closed(self) -> None:
        """Transition circuit to closed state."""
        old_state = self._set_state(CircuitState.CLOSED)
        self.stats.window = FailureWindow()
        self.stats.probe_in_flight = False

        logger.info(
            "Circuit breaker closed (service recovered)",
            service=self.service_name,
            old_state=old_state,
        )

    async def reset(self) -> None:
        """Manually reset circuit breaker to closed state."""
        async with self._lock:
            logger.info("Circuit breaker manually reset", service=self.service_name)
            self._transition_to_closed()

    def get_stats(self) -> dict[str, Any]:
        """
        Get circuit breaker statistics.

        Returns:
            Dictionary of statistics
        """
        return {
            "service": self.service_name,
            "state": self.stats.state.value,
            "consecutive_failures": self.stats.window.consecutive_failures,
            "probe_in_flight": self.stats.probe_in_flight,
            "retry_after": self.retry_after(),
            "total_calls": self.stats.total_calls,
            "total_failures": self.stats.total_failures,
            "total_successes": self.stats.total_successes,
            "total_rejections": self.stats.total_rejections,
            "state_uptime_seconds": self._clock() - self.stats.last_state_change,
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "cooldown_period": self.config.cooldown_period,
            },
        }


class CircuitBreakerRegistry:
    """Registry of per-service circuit breakers."""

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker registry.

        Args:
            default_config: Default configuration for new circuit breakers
            clock: Monotonic time source shared by all breakers
        """
        self.default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(
        self, service_name: str, config: CircuitBreakerConfig | None = None
    ) -> CircuitBreaker:
        """
        Get or create circuit breaker for service.

        Args:
            service_name: Service name
            config: Optional custom configuration

        Returns:
            Circuit breaker instance
        """
        if service_name not in self._breakers:
            breaker_config = config or self.default_config
            self._breakers[service_name] = CircuitBreaker(
                service_name, breaker_config, clock=self._clock
            )

        return self._breakers[service_name]

    def __contains__(self, service_name: str) -> bool:
        return service_name in self._breakers

    def get_all_stats(self) -> list[dict[str, Any]]:
        """
        Get statistics for all circuit breakers.

        Returns:
            List of statistics dictionaries
        """
        return [breaker.get_stats() for breaker in self._breakers.values()]

    async def reset_all(self) -> None:
        """Reset all circuit breakers."""
        for breaker in self._breakers.values():
            await breaker.reset()

        logger.info("All circuit breakers reset")

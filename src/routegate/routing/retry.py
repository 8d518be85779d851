"""Bounded retries with backoff around circuit-breaker-gated attempts.

The executor owns attempt iteration; the circuit breaker owns admission and
is consulted before every single attempt.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from routegate.exceptions import UpstreamError

from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry

logger = structlog.get_logger()

T = TypeVar("T")


class BackoffStrategy(str, Enum):
    """Backoff strategy for retries."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


@dataclass
class RetryPolicy:
    """Attempt bound, backoff and outcome classification."""

    max_attempts: int = 3
    initial_delay: float = 0.1
    multiplier: float = 2.0
    max_delay: float = 2.0
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    jitter: bool = False
    retry_on_status: frozenset[int] = field(default_factory=lambda: frozenset({502, 503, 504}))

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.retry_on_status = frozenset(self.retry_on_status)

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the wait after a failed attempt.

        Args:
            attempt: Number of the attempt that just failed (1-indexed)

        Returns:
            Delay in seconds
        """
        if self.strategy == BackoffStrategy.EXPONENTIAL:
            try:
                delay = self.initial_delay * (self.multiplier ** (attempt - 1))
            except OverflowError:
                delay = self.max_delay
        elif self.strategy == BackoffStrategy.LINEAR:
            delay = self.initial_delay * attempt
        else:  # FIXED
            delay = self.initial_delay

        delay = min(delay, self.max_delay)

        # Add jitter if enabled (±25% random variation)
        if self.jitter and delay > 0:
            jitter_amount = delay * 0.25
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))

        return delay

    def is_retryable(self, error: Exception) -> bool:
        """Whether another attempt may fix this failure."""
        return isinstance(error, UpstreamError) and error.retryable

    def is_retryable_status(self, status_code: int) -> bool:
        """Whether a backend response status counts as a retryable failure."""
        return status_code in self.retry_on_status


@dataclass
class RetryContext:
    """Per-call attempt state. Never shared across requests."""

    max_attempts: int
    attempt: int = 0
    last_error: Exception | None = None


class RetryExecutor:
    """Runs one logical call as a bounded sequence of attempts."""

    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize retry executor.

        Args:
            breakers: Per-service circuit breakers consulted before each attempt
            policy: Retry policy
            sleep: Cooperative wait used between attempts
        """
        self.breakers = breakers
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._in_flight: set[asyncio.Task[Any]] = set()

    async def execute(
        self,
        service_name: str,
        attempt_fn: Callable[[RetryContext], Awaitable[T]],
        on_retry: Callable[[Exception, int, float], None] | None = None,
    ) -> T:
        """Execute ``attempt_fn`` under the breaker and retry policy.

        Args:
            service_name: Logical service whose breaker gates each attempt
            attempt_fn: Performs one attempt; raises UpstreamError on failure
            on_retry: Optional callback called before each wait (error, attempt, delay)

        Returns:
            Result of the first successful attempt

        Raises:
            CircuitOpenError: If the breaker rejects an attempt
            UpstreamError: The final failure once retries are exhausted or not allowed
        """
        breaker = self.breakers.get(service_name)
        context = RetryContext(max_attempts=self.policy.max_attempts)

        for attempt in range(1, self.policy.max_attempts + 1):
            context.attempt = attempt

            # Raises CircuitOpenError without consuming further attempts
            probe = await breaker.acquire()

            try:
                result = await self._run_attempt(breaker, probe, attempt_fn, context)
            except Exception as e:
                context.last_error = e

                if not self.policy.is_retryable(e):
                    raise

                if attempt >= self.policy.max_attempts:
                    logger.error(
                        "retry_exhausted",
                        service=service_name,
                        attempt=attempt,
                        max_attempts=self.policy.max_attempts,
                        error=str(e),
                    )
                    raise

                delay = self.policy.calculate_delay(attempt)

                logger.warning(
                    "retry_attempt",
                    service=service_name,
                    attempt=attempt + 1,
                    max_attempts=self.policy.max_attempts,
                    delay=delay,
                    error=str(e),
                    strategy=self.policy.strategy.value,
                )

                if on_retry:
                    on_retry(e, attempt, delay)

                await self._sleep(delay)
                continue

            if attempt > 1:
                logger.info("retry_succeeded", service=service_name, attempt=attempt)
            return result

        # max_attempts >= 1, so the loop always returns or raises
        raise RuntimeError("Retry loop exited without an outcome")

    async def _run_attempt(
        self,
        breaker: CircuitBreaker,
        probe: bool,
        attempt_fn: Callable[[RetryContext], Awaitable[T]],
        context: RetryContext,
    ) -> T:
        """Run one attempt shielded from caller cancellation.

        A cancelled caller stops waiting, but the attempt keeps running and
        its outcome still reaches the breaker.
        """
        task = asyncio.ensure_future(self._attempt_and_record(breaker, probe, attempt_fn, context))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return await asyncio.shield(task)

    @staticmethod
    async def _attempt_and_record(
        breaker: CircuitBreaker,
        probe: bool,
        attempt_fn: Callable[[RetryContext], Awaitable[T]],
        context: RetryContext,
    ) -> T:
        recorded = False
        try:
            result = await attempt_fn(context)
        except UpstreamError:
            await breaker.record_failure(probe)
            recorded = True
            raise
        else:
            await breaker.record_success(probe)
            recorded = True
            return result
        finally:
            if not recorded:
                await breaker.release(probe)

    async def drain(self) -> None:
        """Wait for attempts still running after their caller was cancelled."""
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

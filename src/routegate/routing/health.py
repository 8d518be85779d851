"""
Instance Outcome Tracking

Records consecutive successes and failures per backend instance from the
outcomes of dispatched attempts.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel

logger = structlog.get_logger()


class InstanceStatus(str, Enum):
    """Backend instance health status derived from call outcomes."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class InstanceHealth(BaseModel):
    """Outcome counters for one backend instance."""

    instance_id: str
    service_name: str
    status: InstanceStatus = InstanceStatus.UNKNOWN
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    total_successes: int = 0
    total_failures: int = 0
    last_error: str | None = None
    last_outcome: datetime | None = None


class HealthTracker:
    """Per-instance outcome bookkeeping shared by all requests."""

    def __init__(self, unhealthy_threshold: int = 3) -> None:
        """Initialize health tracker.

        Args:
            unhealthy_threshold: Consecutive failures before an instance is unhealthy
        """
        self.unhealthy_threshold = unhealthy_threshold
        self._health: dict[tuple[str, str], InstanceHealth] = {}

    def get(self, service_name: str, instance_id: str) -> InstanceHealth | None:
        """Get tracked health for an instance."""
        return self._health.get((service_name, instance_id))

    def consecutive_failures(self, service_name: str, instance_id: str) -> int:
        """Get the current consecutive failure count for an instance."""
        health = self._health.get((service_name, instance_id))
        return health.consecutive_failures if health else 0

    def record_success(self, service_name: str, instance_id: str) -> InstanceHealth:
        """Record a successful attempt against an instance."""
        health = self._entry(service_name, instance_id)
        previous_status = health.status

        health.consecutive_successes += 1
        health.consecutive_failures = 0
        health.total_successes += 1
        health.last_error = None
        health.last_outcome = datetime.now(UTC)
        health.status = InstanceStatus.HEALTHY

        if previous_status == InstanceStatus.UNHEALTHY:
            logger.info("instance_recovered", service=service_name, instance_id=instance_id)
        return health

    def record_failure(
        self, service_name: str, instance_id: str, error: str
    ) -> InstanceHealth:
        """Record a failed attempt against an instance."""
        health = self._entry(service_name, instance_id)
        previous_status = health.status

        health.consecutive_failures += 1
        health.consecutive_successes = 0
        health.total_failures += 1
        health.last_error = error
        health.last_outcome = datetime.now(UTC)

        if health.consecutive_failures >= self.unhealthy_threshold:
            health.status = InstanceStatus.UNHEALTHY
            if previous_status != InstanceStatus.UNHEALTHY:
                logger.warning(
                    "instance_unhealthy",
                    service=service_name,
                    instance_id=instance_id,
                    consecutive_failures=health.consecutive_failures,
                    error=error,
                )
        else:
            health.status = InstanceStatus.DEGRADED
        return health

    def prune(self, service_name: str, live_instance_ids: set[str]) -> int:
        """
        Drop records of a service's instances that are no longer registered.

        Returns:
            Number of records removed
        """
        stale_keys = [
            key
            for key in self._health
            if key[0] == service_name and key[1] not in live_instance_ids
        ]
        for key in stale_keys:
            del self._health[key]

        if stale_keys:
            logger.info(
                "instance_health_pruned",
                service=service_name,
                instance_ids=[key[1] for key in stale_keys],
            )
        return len(stale_keys)

    def snapshot(self, service_name: str | None = None) -> list[dict[str, Any]]:
        """Get JSON-serialisable health records, optionally for one service."""
        return [
            h.model_dump(mode="json")
            for h in self._health.values()
            if service_name is None or h.service_name == service_name
        ]

    def _entry(self, service_name: str, instance_id: str) -> InstanceHealth:
        health = self._health.get((service_name, instance_id))
        if health is None:
            health = InstanceHealth(instance_id=instance_id, service_name=service_name)
            self._health[(service_name, instance_id)] = health
        return health

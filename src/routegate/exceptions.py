"""
Dispatch Errors

Typed failures surfaced by the dispatcher. Each error carries the HTTP status
the gateway answers with, so callers can tell "fix your request" (4xx) apart
from "try again later" (5xx).
"""

from __future__ import annotations

from typing import Any


class RouteGateError(Exception):
    """Base exception for dispatch failures.

    Attributes:
        message: Human-readable error message
        service_name: Logical service the failure relates to
        status_code: HTTP status the gateway responds with
        error_code: Stable machine-readable identifier
    """

    status_code: int = 500
    error_code: str = "gateway_error"

    def __init__(self, message: str, service_name: str | None = None) -> None:
        """Initialize dispatch error.

        Args:
            message: Error message
            service_name: Logical service name, if known
        """
        super().__init__(message)
        self.message = message
        self.service_name = service_name

    def to_dict(self) -> dict[str, Any]:
        """Render the error as a JSON-serialisable payload."""
        return {
            "error": self.error_code,
            "detail": self.message,
            "service": self.service_name,
        }


class ServiceUnknownError(RouteGateError):
    """No route or registry entry exists for the requested service.

    Never retried.

    Example:
        >>> raise ServiceUnknownError("billing")
    """

    status_code = 404
    error_code = "service_unknown"

    def __init__(self, service_name: str | None, message: str | None = None) -> None:
        super().__init__(message or f"Unknown service '{service_name}'", service_name)


class NoInstancesAvailableError(RouteGateError):
    """The service is known but has no healthy instance to route to."""

    status_code = 503
    error_code = "no_instances_available"

    def __init__(self, service_name: str) -> None:
        super().__init__(f"No healthy backend for service '{service_name}'", service_name)


class RegistryUnavailableError(RouteGateError):
    """The registry could not be queried and no cached instances exist."""

    status_code = 503
    error_code = "registry_unavailable"

    def __init__(self, service_name: str, reason: str) -> None:
        super().__init__(
            f"Service registry unavailable for '{service_name}': {reason}", service_name
        )
        self.reason = reason


class CircuitOpenError(RouteGateError):
    """The circuit breaker rejected the attempt without performing I/O."""

    status_code = 503
    error_code = "circuit_open"

    def __init__(self, service_name: str, retry_after: float) -> None:
        """
        Initialize circuit open error.

        Args:
            service_name: Service name
            retry_after: Seconds until the breaker admits a probe
        """
        super().__init__(
            f"Circuit breaker is open for service '{service_name}'. "
            f"Retry after {retry_after:.1f} seconds.",
            service_name,
        )
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["retry_after"] = round(self.retry_after, 3)
        return payload


class UpstreamError(RouteGateError):
    """A backend instance failed: transport error or a failure status.

    Attributes:
        instance_id: Instance that produced the failure
        upstream_status: Status code returned by the backend, if any
        retryable: Whether another attempt may succeed
    """

    status_code = 502
    error_code = "upstream_error"

    def __init__(
        self,
        service_name: str,
        reason: str,
        instance_id: str | None = None,
        upstream_status: int | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(
            f"Upstream failure for service '{service_name}': {reason}", service_name
        )
        self.reason = reason
        self.instance_id = instance_id
        self.upstream_status = upstream_status
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["instance"] = self.instance_id
        payload["upstream_status"] = self.upstream_status
        return payload


class UpstreamTimeoutError(UpstreamError):
    """A backend call or the overall request deadline timed out."""

    status_code = 504
    error_code = "upstream_timeout"

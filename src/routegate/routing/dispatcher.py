"""
Request Dispatcher

Resolves a logical service to live instances, selects one per attempt and
executes the backend call under circuit breaker and retry protection.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import httpx
import structlog

from routegate.exceptions import (
    RouteGateError,
    ServiceUnknownError,
    UpstreamError,
    UpstreamTimeoutError,
)
from routegate.monitoring.metrics import ATTEMPT_COUNT, DISPATCH_COUNT

from .circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from .discovery import (
    HttpRegistryBackend,
    InstanceSet,
    RegistryBackend,
    RegistryClient,
    ServiceInstance,
    StaticRegistryBackend,
)
from .health import HealthTracker
from .load_balancer import LoadBalancer
from .retry import RetryContext, RetryExecutor, RetryPolicy
from .route_table import RouteTable

if TYPE_CHECKING:
    from routegate.config import RouteGateSettings

logger = structlog.get_logger()

# Connection-scoped headers that must not be forwarded in either direction
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)

# httpx decodes response bodies, so the original encoding no longer applies
_RESPONSE_EXCLUDED_HEADERS = HOP_BY_HOP_HEADERS | {"content-encoding"}


@dataclass
class GatewayRequest:
    """Inbound request to forward to a backend instance."""

    method: str = "GET"
    path: str = "/"
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    query: str = ""
    client_host: str | None = None


@dataclass
class GatewayResponse:
    """Backend response along with where and how it was obtained."""

    status_code: int
    headers: list[tuple[str, str]]
    body: bytes
    service_name: str
    instance_id: str
    attempts: int = 1


class Dispatcher:
    """
    Discovery-aware, load-balancing, fault-tolerant request dispatcher.

    Owns all per-service state (instance cache, round-robin cursors, circuit
    breakers, instance health), so independent dispatchers never share state.
    """

    def __init__(
        self,
        registry: RegistryClient,
        routes: RouteTable | dict[str, str] | None = None,
        load_balancer: LoadBalancer | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        health_tracker: HealthTracker | None = None,
        retry_policy: RetryPolicy | None = None,
        call_timeout: float = 10.0,
        request_timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize dispatcher.

        Args:
            registry: Registry client resolving service names to instances
            routes: Route table, or a path prefix to service name mapping
            load_balancer: Instance selection policy
            breakers: Per-service circuit breakers
            health_tracker: Per-instance outcome tracker
            retry_policy: Attempt bound, backoff and retryable statuses
            call_timeout: Per-attempt backend timeout in seconds
            request_timeout: Optional deadline for a whole logical call
            http_client: Optional preconfigured HTTP client for backend calls
            sleep: Cooperative wait used between retries
        """
        self.registry = registry
        self.routes = routes if isinstance(routes, RouteTable) else RouteTable(routes)
        self.load_balancer = load_balancer or LoadBalancer()
        self.breakers = breakers or CircuitBreakerRegistry()
        self.health_tracker = health_tracker or HealthTracker()
        self.retry_policy = retry_policy or RetryPolicy()
        self.retry_executor = RetryExecutor(self.breakers, self.retry_policy, sleep=sleep)
        self.call_timeout = call_timeout
        self.request_timeout = request_timeout
        self._http_client = http_client or httpx.AsyncClient(timeout=call_timeout)
        self._seen_instance_sets: dict[str, InstanceSet] = {}

    @classmethod
    def from_settings(cls, settings: RouteGateSettings) -> Dispatcher:
        """
        Build a fully wired dispatcher from configuration.

        Args:
            settings: Gateway settings

        Returns:
            Dispatcher instance
        """
        backend: RegistryBackend
        if settings.REGISTRY_URL:
            backend = HttpRegistryBackend(
                settings.REGISTRY_URL,
                instances_path=settings.REGISTRY_INSTANCES_PATH,
                timeout=settings.REGISTRY_TIMEOUT,
            )
        else:
            backend = StaticRegistryBackend(settings.STATIC_INSTANCES)

        return cls(
            registry=RegistryClient(backend, cache_ttl=settings.REGISTRY_CACHE_TTL),
            routes=RouteTable(settings.ROUTE_TABLE),
            load_balancer=LoadBalancer(settings.LOAD_BALANCING_ALGORITHM),
            breakers=CircuitBreakerRegistry(
                CircuitBreakerConfig(
                    failure_threshold=settings.FAILURE_THRESHOLD,
                    cooldown_period=settings.COOLDOWN_PERIOD,
                )
            ),
            health_tracker=HealthTracker(unhealthy_threshold=settings.UNHEALTHY_THRESHOLD),
            retry_policy=RetryPolicy(
                max_attempts=settings.MAX_ATTEMPTS,
                initial_delay=settings.BACKOFF_INITIAL,
                multiplier=settings.BACKOFF_MULTIPLIER,
                max_delay=settings.BACKOFF_MAX,
                strategy=settings.BACKOFF_STRATEGY,
                jitter=settings.BACKOFF_JITTER,
                retry_on_status=frozenset(settings.RETRY_ON_STATUS),
            ),
            call_timeout=settings.CALL_TIMEOUT,
            request_timeout=settings.REQUEST_TIMEOUT,
        )

    async def dispatch(self, request: GatewayRequest) -> GatewayResponse:
        """
        Route a request by path and call the matching service.

        Args:
            request: Inbound request

        Returns:
            Backend response

        Raises:
            ServiceUnknownError: If no route matches the path
        """
        route = self.routes.match(request.path)
        return await self.call(route.service_name, request)

    async def call(
        self,
        service_name: str,
        request: GatewayRequest,
        timeout: float | None = None,
    ) -> GatewayResponse:
        """
        Call a logical service.

        Args:
            service_name: Logical service name
            request: Request to forward
            timeout: Deadline for the whole call, defaults to ``request_timeout``

        Returns:
            Backend response, possibly with an application error status

        Raises:
            ServiceUnknownError: Unrouted service or no registry entry
            NoInstancesAvailableError: No healthy instance to select
            RegistryUnavailableError: Registry unreachable with nothing cached
            CircuitOpenError: Breaker rejected an attempt
            UpstreamError: Backend failure after retries
        """
        deadline = timeout if timeout is not None else self.request_timeout

        try:
            if service_name not in self.routes:
                raise ServiceUnknownError(service_name)

            if deadline is None:
                response = await self._call(service_name, request)
            else:
                response = await asyncio.wait_for(self._call(service_name, request), deadline)

        except TimeoutError:
            DISPATCH_COUNT.labels(service=service_name, outcome="upstream_timeout").inc()
            logger.warning(
                "Request deadline exceeded, no further attempts",
                service=service_name,
                path=request.path,
                deadline=deadline,
            )
            raise UpstreamTimeoutError(
                service_name, f"request deadline of {deadline}s exceeded", retryable=False
            ) from None

        except RouteGateError as e:
            DISPATCH_COUNT.labels(service=service_name, outcome=e.error_code).inc()
            logger.warning(
                "Request dispatch failed",
                service=service_name,
                path=request.path,
                error=e.message,
                error_code=e.error_code,
            )
            raise

        DISPATCH_COUNT.labels(service=service_name, outcome="success").inc()
        logger.info(
            "Request dispatched",
            service=service_name,
            instance=response.instance_id,
            path=request.path,
            status_code=response.status_code,
            attempts=response.attempts,
        )
        return response

    async def _call(self, service_name: str, request: GatewayRequest) -> GatewayResponse:
        # Registry failures surface immediately, retrying would not fix them
        instances = await self.registry.resolve(service_name)
        self._track_instance_set(instances)

        async def attempt(context: RetryContext) -> GatewayResponse:
            # Selected per attempt, so a retry may land on another instance
            instance = self.load_balancer.select(instances)
            return await self._attempt(instances, instance, request, context)

        return await self.retry_executor.execute(service_name, attempt)

    def _track_instance_set(self, instances: InstanceSet) -> None:
        """Forget outcome history of instances that left a refreshed instance list."""
        if self._seen_instance_sets.get(instances.service_name) is instances:
            return
        self._seen_instance_sets[instances.service_name] = instances
        if not instances.stale:
            self.health_tracker.prune(
                instances.service_name, {i.instance_id for i in instances}
            )

    async def _attempt(
        self,
        instances: InstanceSet,
        instance: ServiceInstance,
        request: GatewayRequest,
        context: RetryContext,
    ) -> GatewayResponse:
        """Perform one backend call and record its outcome for the instance."""
        service_name = instances.service_name

        try:
            response = await self._send(instance, request)
        except httpx.TimeoutException as e:
            raise self._record_failure(
                UpstreamTimeoutError(
                    service_name,
                    f"timed out calling {instance.url}",
                    instance_id=instance.instance_id,
                )
            ) from e
        except httpx.TransportError as e:
            raise self._record_failure(
                UpstreamError(
                    service_name,
                    f"{type(e).__name__} calling {instance.url}: {e}",
                    instance_id=instance.instance_id,
                )
            ) from e

        if self.retry_policy.is_retryable_status(response.status_code):
            raise self._record_failure(
                UpstreamError(
                    service_name,
                    f"backend returned HTTP {response.status_code}",
                    instance_id=instance.instance_id,
                    upstream_status=response.status_code,
                )
            )

        # Any other status, 4xx included, is the backend's answer to return
        self.health_tracker.record_success(service_name, instance.instance_id)
        ATTEMPT_COUNT.labels(service=service_name, result="success").inc()

        return GatewayResponse(
            status_code=response.status_code,
            # multi_items keeps repeated headers such as Set-Cookie apart
            headers=[
                (k, v)
                for k, v in response.headers.multi_items()
                if k.lower() not in _RESPONSE_EXCLUDED_HEADERS
            ],
            body=response.content,
            service_name=service_name,
            instance_id=instance.instance_id,
            attempts=context.attempt,
        )

    def _record_failure(self, error: UpstreamError) -> UpstreamError:
        service_name = error.service_name or ""
        if error.instance_id is not None:
            self.health_tracker.record_failure(service_name, error.instance_id, error.reason)
        ATTEMPT_COUNT.labels(service=service_name, result=error.error_code).inc()

        logger.warning(
            "Backend attempt failed",
            service=service_name,
            instance=error.instance_id,
            error=error.reason,
            upstream_status=error.upstream_status,
        )
        return error

    async def _send(self, instance: ServiceInstance, request: GatewayRequest) -> httpx.Response:
        """
        Make HTTP request to a backend instance.

        Args:
            instance: Target instance
            request: Request to forward

        Returns:
            HTTP response

        Raises:
            httpx.TransportError: On connection failure or timeout
        """
        url = f"{instance.url}{request.path}"
        if request.query:
            url = f"{url}?{request.query}"

        return await self._http_client.request(
            method=request.method,
            url=url,
            headers=self._forward_headers(request),
            content=request.body or None,
        )

    @staticmethod
    def _forward_headers(request: GatewayRequest) -> list[tuple[str, str]]:
        headers = [
            (k, v) for k, v in request.headers if k.lower() not in HOP_BY_HOP_HEADERS
        ]
        if request.client_host:
            forwarded_for = [v for k, v in headers if k.lower() == "x-forwarded-for"]
            headers = [(k, v) for k, v in headers if k.lower() != "x-forwarded-for"]
            headers.append(
                ("X-Forwarded-For", ", ".join([*forwarded_for, request.client_host]))
            )
        return headers

    def get_service_status(self, service_name: str) -> dict[str, Any]:
        """
        Get status of a service: cached instances, breaker and instance health.

        Args:
            service_name: Service name

        Returns:
            Service status information

        Raises:
            ServiceUnknownError: If the service is not routed
        """
        if service_name not in self.routes:
            raise ServiceUnknownError(service_name)

        instance_set = self.registry.cached(service_name)
        instances = []
        for instance in instance_set or ():
            health = self.health_tracker.get(service_name, instance.instance_id)
            instances.append(
                {
                    "instance_id": instance.instance_id,
                    "url": instance.url,
                    "registered_at": instance.registered_at.isoformat(),
                    "health": health.model_dump(mode="json") if health else None,
                }
            )

        return {
            "service_name": service_name,
            "cache_state": self.registry.cache_state(service_name).value,
            "total_instances": len(instances),
            "load_balancing_algorithm": self.load_balancer.algorithm.value,
            "circuit_breaker": (
                self.breakers.get(service_name).get_stats()
                if service_name in self.breakers
                else None
            ),
            "instances": instances,
        }

    def get_status(self) -> list[dict[str, Any]]:
        """Get status of every routed service."""
        return [self.get_service_status(name) for name in sorted(self.routes.services)]

    async def reset_breaker(self, service_name: str) -> None:
        """
        Force a service's circuit breaker closed.

        Raises:
            ServiceUnknownError: If the service is not routed
        """
        if service_name not in self.routes:
            raise ServiceUnknownError(service_name)
        await self.breakers.get(service_name).reset()

    async def close(self) -> None:
        """Wait for detached attempts, then close HTTP clients."""
        await self.retry_executor.drain()
        await self._http_client.aclose()
        await self.registry.close()

"""
Service Discovery

Resolves logical service names to live instances through an external
registry, caching each instance list for a freshness window and serving the
last known list when the registry cannot be reached.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Callable, Iterator
from urllib.parse import quote

import httpx
import structlog
from pydantic import BaseModel, Field, TypeAdapter

from routegate.exceptions import RegistryUnavailableError, ServiceUnknownError
from routegate.monitoring.metrics import REGISTRY_REFRESHES

logger = structlog.get_logger()

PASSING_HEALTH = frozenset({"passing", "healthy", "up"})


class CacheState(str, Enum):
    """Freshness of a cached instance list."""

    FRESH = "fresh"
    STALE = "stale"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ServiceInstance:
    """One addressable running copy of a service."""

    instance_id: str
    host: str
    port: int
    registered_at: datetime = field(
        default_factory=lambda: datetime.now(UTC), compare=False
    )
    protocol: str = "http"

    @property
    def url(self) -> str:
        """Get service instance URL."""
        return f"{self.protocol}://{self.host}:{self.port}"

    @classmethod
    def from_address(cls, address: str) -> ServiceInstance:
        """Build an instance from a ``host:port`` string."""
        host, sep, port = address.strip().rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError(f"Invalid instance address '{address}', expected host:port")
        return cls(instance_id=f"{host}:{port}", host=host, port=int(port))


@dataclass(frozen=True)
class InstanceSet:
    """Ordered instances of one logical service as of ``fetched_at``."""

    service_name: str
    instances: tuple[ServiceInstance, ...]
    fetched_at: float
    state: CacheState = CacheState.FRESH

    @property
    def stale(self) -> bool:
        """Whether this list was served after a failed refresh."""
        return self.state == CacheState.STALE

    def mark_stale(self) -> InstanceSet:
        """Return a copy flagged as stale."""
        return replace(self, state=CacheState.STALE)

    def __len__(self) -> int:
        return len(self.instances)

    def __iter__(self) -> Iterator[ServiceInstance]:
        return iter(self.instances)

    def __getitem__(self, index: int) -> ServiceInstance:
        return self.instances[index]


class RegistryRecord(BaseModel):
    """Instance record as reported by the registry."""

    id: str | None = None
    address: str = Field(..., min_length=1)
    port: int = Field(..., ge=1, le=65535)
    health: str = "passing"
    registered_at: datetime | None = None

    model_config = {"extra": "ignore"}

    @property
    def passing(self) -> bool:
        """Whether the registry considers this instance healthy."""
        return self.health.lower() in PASSING_HEALTH

    @property
    def instance_id(self) -> str:
        return self.id or f"{self.address}:{self.port}"

    def to_instance(self, first_seen: datetime | None = None) -> ServiceInstance:
        """
        Convert to an immutable service instance.

        Args:
            first_seen: Registration time to use when the registry reports none
        """
        return ServiceInstance(
            instance_id=self.instance_id,
            host=self.address,
            port=self.port,
            registered_at=self.registered_at or first_seen or datetime.now(UTC),
        )


_RECORDS = TypeAdapter(list[RegistryRecord])


class RegistryBackend(ABC):
    """Read-only access to an external instance registry."""

    @abstractmethod
    async def fetch(self, service_name: str) -> list[RegistryRecord]:
        """
        Fetch current instance records for a service.

        Args:
            service_name: Logical service name

        Returns:
            Instance records; an empty list when the registry knows no instances

        Raises:
            RegistryUnavailableError: If the registry cannot be queried
        """

    async def close(self) -> None:
        """Release backend resources."""


class HttpRegistryBackend(RegistryBackend):
    """Registry queried over HTTP: ``GET {base_url}{instances_path}``."""

    def __init__(
        self,
        base_url: str,
        instances_path: str = "/services/{service}/instances",
        timeout: float = 2.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize HTTP registry backend.

        Args:
            base_url: Registry base URL
            instances_path: Path template with a ``{service}`` placeholder
            timeout: Query timeout in seconds
            http_client: Optional preconfigured HTTP client
        """
        self.base_url = base_url.rstrip("/")
        self.instances_path = instances_path
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    def instances_url(self, service_name: str) -> str:
        path = self.instances_path.format(service=quote(service_name, safe=""))
        return f"{self.base_url}{path}"

    async def fetch(self, service_name: str) -> list[RegistryRecord]:
        try:
            response = await self._http_client.get(self.instances_url(service_name))
        except httpx.HTTPError as e:
            raise RegistryUnavailableError(service_name, str(e) or type(e).__name__) from e

        # Absence of the name is a valid "zero instances" answer
        if response.status_code == 404:
            return []

        if response.is_error:
            raise RegistryUnavailableError(
                service_name, f"registry returned HTTP {response.status_code}"
            )

        try:
            payload = response.json()
            if isinstance(payload, dict):
                payload = payload.get("instances")
            return _RECORDS.validate_python(payload)
        except ValueError as e:
            raise RegistryUnavailableError(
                service_name, f"malformed registry response: {e}"
            ) from e

    async def close(self) -> None:
        await self._http_client.aclose()


class StaticRegistryBackend(RegistryBackend):
    """Registry backed by a fixed ``service -> [host:port]`` table."""

    def __init__(self, instances: dict[str, list[str]] | None = None):
        self._instances: dict[str, list[ServiceInstance]] = {}
        for service_name, addresses in (instances or {}).items():
            for address in addresses:
                self.register(service_name, ServiceInstance.from_address(address))

    def register(self, service_name: str, instance: ServiceInstance) -> None:
        """
        Register a service instance, replacing one with the same id.

        Args:
            service_name: Logical service name
            instance: Service instance to register
        """
        instances = self._instances.setdefault(service_name, [])
        instances[:] = [i for i in instances if i.instance_id != instance.instance_id]
        instances.append(instance)

        logger.info(
            "Service instance registered",
            service=service_name,
            instance_id=instance.instance_id,
            url=instance.url,
        )

    def deregister(self, service_name: str, instance_id: str) -> None:
        """
        Deregister a service instance.

        Args:
            service_name: Logical service name
            instance_id: Instance ID
        """
        if service_name not in self._instances:
            return

        self._instances[service_name] = [
            i for i in self._instances[service_name] if i.instance_id != instance_id
        ]

        logger.info(
            "Service instance deregistered",
            service=service_name,
            instance_id=instance_id,
        )

    async def fetch(self, service_name: str) -> list[RegistryRecord]:
        return [
            RegistryRecord(
                id=i.instance_id,
                address=i.host,
                port=i.port,
                registered_at=i.registered_at,
            )
            for i in self._instances.get(service_name, [])
        ]


@dataclass
class _CacheEntry:
    instance_set: InstanceSet
    last_attempt_at: float


class RegistryClient:
    """
    Caching client in front of a registry backend.

    Cache entries move between FRESH and STALE; a name without an entry is
    UNKNOWN. A failed refresh keeps the previous instance list, marked stale,
    and the registry is not queried again for that name until the freshness
    window has passed since the failed attempt.
    """

    def __init__(
        self,
        backend: RegistryBackend,
        cache_ttl: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize registry client.

        Args:
            backend: Registry backend to query
            cache_ttl: Freshness window in seconds
            clock: Monotonic time source
        """
        self.backend = backend
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._cache: dict[str, _CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def resolve(self, service_name: str) -> InstanceSet:
        """
        Resolve a logical service name to its instance set.

        Args:
            service_name: Logical service name

        Returns:
            Cached or freshly fetched instance set (``stale`` after a failed refresh)

        Raises:
            ServiceUnknownError: If the registry reports zero instances
            RegistryUnavailableError: If the registry is unreachable and nothing is cached
        """
        entry = self._cache.get(service_name)
        if entry is not None and self._is_current(entry):
            return entry.instance_set

        lock = self._locks.setdefault(service_name, asyncio.Lock())
        async with lock:
            # Another request may have refreshed while we waited
            entry = self._cache.get(service_name)
            if entry is not None and self._is_current(entry):
                return entry.instance_set
            return await self._refresh(service_name, entry)

    def cached(self, service_name: str) -> InstanceSet | None:
        """Get the cached instance set without querying the registry."""
        entry = self._cache.get(service_name)
        return entry.instance_set if entry else None

    def cache_state(self, service_name: str) -> CacheState:
        """Get the cache state for a service."""
        entry = self._cache.get(service_name)
        return entry.instance_set.state if entry else CacheState.UNKNOWN

    def invalidate(self, service_name: str | None = None) -> None:
        """
        Drop cached instance lists.

        Args:
            service_name: Service to drop, or all services when omitted
        """
        if service_name is None:
            self._cache.clear()
        else:
            self._cache.pop(service_name, None)

    async def close(self) -> None:
        """Close the registry backend."""
        await self.backend.close()

    def _is_current(self, entry: _CacheEntry) -> bool:
        return self._clock() - entry.last_attempt_at < self.cache_ttl

    async def _refresh(self, service_name: str, previous: _CacheEntry | None) -> InstanceSet:
        now = self._clock()

        try:
            records = await self.backend.fetch(service_name)
        except RegistryUnavailableError as e:
            REGISTRY_REFRESHES.labels(service=service_name, result="failure").inc()
            if previous is None:
                logger.error(
                    "Registry unavailable and no cached instances",
                    service=service_name,
                    error=e.reason,
                )
                raise

            stale = previous.instance_set.mark_stale()
            self._cache[service_name] = _CacheEntry(stale, last_attempt_at=now)
            logger.warning(
                "Registry refresh failed, serving stale instances",
                service=service_name,
                instances=len(stale),
                error=e.reason,
            )
            return stale

        if not records:
            REGISTRY_REFRESHES.labels(service=service_name, result="empty").inc()
            self._cache.pop(service_name, None)
            logger.warning("Registry reports no instances", service=service_name)
            raise ServiceUnknownError(
                service_name, f"Registry reports no instances for service '{service_name}'"
            )

        # Keep registration times stable for instances seen on an earlier refresh
        first_seen = {
            i.instance_id: i.registered_at for i in (previous.instance_set if previous else ())
        }
        instances = tuple(
            r.to_instance(first_seen.get(r.instance_id)) for r in records if r.passing
        )
        instance_set = InstanceSet(service_name, instances, fetched_at=now)
        self._cache[service_name] = _CacheEntry(instance_set, last_attempt_at=now)
        REGISTRY_REFRESHES.labels(service=service_name, result="success").inc()

        logger.debug(
            "Instance list refreshed",
            service=service_name,
            instances=len(instances),
            reported=len(records),
        )
        return instance_set

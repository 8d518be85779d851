"""
Tests for Service Discovery

Covers registry caching, stale fallback, zero-instance handling and the HTTP
and static registry backends.
"""

from __future__ import annotations

import asyncio

import httpx
import pytest
import respx

from routegate.exceptions import RegistryUnavailableError, ServiceUnknownError
from routegate.routing.discovery import (
    CacheState,
    HttpRegistryBackend,
    RegistryClient,
    ServiceInstance,
    StaticRegistryBackend,
)
from tests.helpers import FakeClock, StubRegistryBackend, record

REGISTRY_URL = "http://registry.local:8500"


@pytest.fixture
def registry(registry_backend: StubRegistryBackend, clock: FakeClock) -> RegistryClient:
    """Create registry client with a 10 second freshness window."""
    return RegistryClient(registry_backend, cache_ttl=10.0, clock=clock)


@pytest.mark.asyncio
async def test_resolve_returns_instances_in_registry_order(registry: RegistryClient) -> None:
    """Test resolve maps registry records to instances, preserving order."""
    instance_set = await registry.resolve("orders")

    assert [i.instance_id for i in instance_set] == ["A", "B"]
    assert instance_set[0].url == "http://10.0.0.1:8001"
    assert instance_set.service_name == "orders"
    assert instance_set.state == CacheState.FRESH
    assert not instance_set.stale


@pytest.mark.asyncio
async def test_fresh_cache_skips_registry(
    registry: RegistryClient, registry_backend: StubRegistryBackend, clock: FakeClock
) -> None:
    """Test cached entries within the freshness window are served without a query."""
    await registry.resolve("orders")
    clock.advance(9.9)
    await registry.resolve("orders")

    assert registry_backend.calls == 1


@pytest.mark.asyncio
async def test_expired_cache_refreshes(
    registry: RegistryClient, registry_backend: StubRegistryBackend, clock: FakeClock
) -> None:
    """Test an expired entry is replaced by a fresh registry answer."""
    await registry.resolve("orders")
    registry_backend.records["orders"].append(record("10.0.0.3", 8003, id="C"))

    clock.advance(10.0)
    instance_set = await registry.resolve("orders")

    assert registry_backend.calls == 2
    assert [i.instance_id for i in instance_set] == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_registration_time_stable_across_refreshes(
    registry: RegistryClient, registry_backend: StubRegistryBackend, clock: FakeClock
) -> None:
    """Test instances without a reported registration time keep their first one."""
    first = await registry.resolve("orders")
    registry_backend.records["orders"].append(record("10.0.0.3", 8003, id="C"))

    clock.advance(10.0)
    second = await registry.resolve("orders")

    assert registry_backend.calls == 2
    assert second[0].registered_at == first[0].registered_at
    assert second[1].registered_at == first[1].registered_at
    assert second[2].registered_at >= first[1].registered_at


@pytest.mark.asyncio
async def test_stale_cache_fallback(
    registry: RegistryClient, registry_backend: StubRegistryBackend, clock: FakeClock
) -> None:
    """Test previous instances are served stale while the registry is down."""
    await registry.resolve("orders")
    registry_backend.unreachable = True

    for _ in range(3):
        clock.advance(10.0)
        instance_set = await registry.resolve("orders")

        assert instance_set.stale
        assert [i.instance_id for i in instance_set] == ["A", "B"]
        assert registry.cache_state("orders") == CacheState.STALE

    assert registry_backend.calls == 4

    # Registry recovers
    registry_backend.unreachable = False
    clock.advance(10.0)
    instance_set = await registry.resolve("orders")

    assert not instance_set.stale
    assert registry.cache_state("orders") == CacheState.FRESH


@pytest.mark.asyncio
async def test_failed_refresh_waits_a_window_before_retrying(
    registry: RegistryClient, registry_backend: StubRegistryBackend, clock: FakeClock
) -> None:
    """Test a failed refresh is not retried on every call."""
    await registry.resolve("orders")
    registry_backend.unreachable = True

    clock.advance(10.0)
    await registry.resolve("orders")
    await registry.resolve("orders")

    assert registry_backend.calls == 2


@pytest.mark.asyncio
async def test_registry_unavailable_without_cache(
    registry: RegistryClient, registry_backend: StubRegistryBackend
) -> None:
    """Test RegistryUnavailable when nothing was ever cached."""
    registry_backend.unreachable = True

    with pytest.raises(RegistryUnavailableError) as exc_info:
        await registry.resolve("orders")

    assert exc_info.value.service_name == "orders"
    assert registry.cache_state("orders") == CacheState.UNKNOWN


@pytest.mark.asyncio
async def test_zero_instances_is_service_unknown(registry: RegistryClient) -> None:
    """Test a registry answer with no instances is ServiceUnknown, not a transport error."""
    with pytest.raises(ServiceUnknownError) as exc_info:
        await registry.resolve("billing")

    assert exc_info.value.service_name == "billing"
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_unhealthy_records_are_excluded(clock: FakeClock) -> None:
    """Test only passing records become instances."""
    backend = StubRegistryBackend(
        {
            "orders": [
                record("10.0.0.1", 8001, health="critical"),
                record("10.0.0.2", 8002, health="Passing"),
            ]
        }
    )
    registry = RegistryClient(backend, cache_ttl=10.0, clock=clock)

    instance_set = await registry.resolve("orders")

    assert [i.instance_id for i in instance_set] == ["10.0.0.2:8002"]


@pytest.mark.asyncio
async def test_all_unhealthy_gives_empty_set(clock: FakeClock) -> None:
    """Test a registry reporting only failing instances yields an empty set."""
    backend = StubRegistryBackend({"orders": [record("10.0.0.1", 8001, health="critical")]})
    registry = RegistryClient(backend, cache_ttl=10.0, clock=clock)

    instance_set = await registry.resolve("orders")

    assert len(instance_set) == 0
    assert not instance_set.stale


@pytest.mark.asyncio
async def test_concurrent_resolves_share_one_refresh(clock: FakeClock) -> None:
    """Test racing requests for the same service trigger a single registry query."""
    release = asyncio.Event()

    class SlowBackend(StubRegistryBackend):
        async def fetch(self, service_name: str):
            await release.wait()
            return await super().fetch(service_name)

    backend = SlowBackend({"orders": [record("10.0.0.1", 8001)]})
    registry = RegistryClient(backend, cache_ttl=10.0, clock=clock)

    tasks = [asyncio.create_task(registry.resolve("orders")) for _ in range(5)]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*tasks)

    assert backend.calls == 1
    assert all(r is results[0] for r in results)


@pytest.mark.asyncio
async def test_invalidate(
    registry: RegistryClient, registry_backend: StubRegistryBackend
) -> None:
    """Test invalidation forces a registry query."""
    await registry.resolve("orders")
    registry.invalidate("orders")

    assert registry.cached("orders") is None
    await registry.resolve("orders")
    assert registry_backend.calls == 2


@pytest.mark.asyncio
@respx.mock
async def test_http_backend_parses_instance_list() -> None:
    """Test HTTP backend parses a JSON list of records."""
    respx.get(f"{REGISTRY_URL}/services/orders/instances").mock(
        return_value=httpx.Response(
            200,
            json=[
                {"id": "orders-1", "address": "10.0.0.1", "port": 8001, "health": "passing"},
                {"address": "10.0.0.2", "port": 8002},
            ],
        )
    )
    backend = HttpRegistryBackend(REGISTRY_URL)

    records = await backend.fetch("orders")

    assert [r.to_instance().instance_id for r in records] == ["orders-1", "10.0.0.2:8002"]
    await backend.close()


@pytest.mark.asyncio
@respx.mock
async def test_http_backend_accepts_wrapped_list() -> None:
    """Test HTTP backend accepts an object with an ``instances`` key."""
    respx.get(f"{REGISTRY_URL}/v1/catalog/orders").mock(
        return_value=httpx.Response(
            200, json={"instances": [{"address": "10.0.0.1", "port": 8001}]}
        )
    )
    backend = HttpRegistryBackend(REGISTRY_URL, instances_path="/v1/catalog/{service}")

    records = await backend.fetch("orders")

    assert len(records) == 1
    await backend.close()


@pytest.mark.asyncio
@respx.mock
async def test_http_backend_not_found_means_zero_instances() -> None:
    """Test 404 from the registry is a valid empty answer."""
    respx.get(f"{REGISTRY_URL}/services/ghost/instances").mock(
        return_value=httpx.Response(404)
    )
    backend = HttpRegistryBackend(REGISTRY_URL)

    assert await backend.fetch("ghost") == []
    await backend.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500),
        httpx.Response(200, content=b"not json"),
        httpx.Response(200, json=[{"address": "10.0.0.1", "port": "http"}]),
        httpx.Response(200, json={"unexpected": True}),
    ],
)
async def test_http_backend_failures(response: httpx.Response) -> None:
    """Test server errors and malformed payloads raise RegistryUnavailable."""
    backend = HttpRegistryBackend(REGISTRY_URL)

    with respx.mock:
        respx.get(f"{REGISTRY_URL}/services/orders/instances").mock(return_value=response)

        with pytest.raises(RegistryUnavailableError):
            await backend.fetch("orders")

    await backend.close()


@pytest.mark.asyncio
@respx.mock
async def test_http_backend_connection_error() -> None:
    """Test transport errors raise RegistryUnavailable."""
    respx.get(f"{REGISTRY_URL}/services/orders/instances").mock(
        side_effect=httpx.ConnectError("Connection refused")
    )
    backend = HttpRegistryBackend(REGISTRY_URL)

    with pytest.raises(RegistryUnavailableError) as exc_info:
        await backend.fetch("orders")

    assert "Connection refused" in exc_info.value.reason
    await backend.close()


@pytest.mark.asyncio
async def test_static_backend_register_and_deregister() -> None:
    """Test static registry tracks registrations."""
    backend = StaticRegistryBackend({"orders": ["orders-a:8081"]})
    backend.register("orders", ServiceInstance.from_address("orders-b:8081"))

    records = await backend.fetch("orders")
    assert [(r.address, r.port) for r in records] == [("orders-a", 8081), ("orders-b", 8081)]

    backend.deregister("orders", "orders-a:8081")
    records = await backend.fetch("orders")
    assert [r.address for r in records] == ["orders-b"]

    assert await backend.fetch("unknown") == []


@pytest.mark.parametrize("address", ["orders", "orders:", ":8080", "orders:http"])
def test_invalid_static_address(address: str) -> None:
    """Test malformed host:port strings are rejected."""
    with pytest.raises(ValueError):
        ServiceInstance.from_address(address)


def test_instance_identity_ignores_registration_time() -> None:
    """Test instances compare by address, not registration timestamp."""
    first = ServiceInstance.from_address("10.0.0.1:8001")
    second = ServiceInstance.from_address("10.0.0.1:8001")

    assert first == second

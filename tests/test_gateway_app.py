"""
Integration tests for the gateway FastAPI application.

Tests application startup, health endpoints, proxying through the dispatcher
and error rendering.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from routegate.config import RouteGateSettings
from routegate.main import create_app
from routegate.routing.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from routegate.routing.discovery import RegistryClient, StaticRegistryBackend
from routegate.routing.dispatcher import Dispatcher
from routegate.routing.retry import RetryPolicy
from routegate.routing.route_table import RouteTable
from tests.helpers import FakeClock, create_mock_response


@pytest.fixture
def settings() -> RouteGateSettings:
    return RouteGateSettings(ROUTE_TABLE={"/orders": "orders"}, ENABLE_METRICS=True)


@pytest.fixture
def dispatcher(clock: FakeClock) -> Dispatcher:
    """Dispatcher with one attempt per call and a breaker tripping on the first failure."""
    backend = StaticRegistryBackend({"orders": ["orders-a:8081", "orders-b:8081"]})
    return Dispatcher(
        registry=RegistryClient(backend, clock=clock),
        routes={"/orders": "orders"},
        breakers=CircuitBreakerRegistry(
            CircuitBreakerConfig(failure_threshold=1, cooldown_period=30.0), clock=clock
        ),
        retry_policy=RetryPolicy(max_attempts=1),
    )


@pytest.fixture
def backend_request(dispatcher: Dispatcher):
    """Mock of the dispatcher's outbound HTTP call."""
    with patch.object(dispatcher._http_client, "request", new_callable=AsyncMock) as mock:
        mock.return_value = create_mock_response(200, b'{"id": 42}')
        yield mock


@pytest.fixture
def client(settings: RouteGateSettings, dispatcher: Dispatcher, backend_request: AsyncMock):
    """Create test client."""
    app = create_app(settings=settings, dispatcher=dispatcher)
    with TestClient(app) as client:
        yield client


def test_app_creation(settings: RouteGateSettings) -> None:
    """Test FastAPI application is created with a dispatcher built from settings."""
    app = create_app(settings=settings)

    assert app.title == "RouteGate"
    assert isinstance(app.state.dispatcher, Dispatcher)
    assert "orders" in app.state.dispatcher.routes


def test_health_endpoint(client: TestClient) -> None:
    """Test health check endpoint returns 200."""
    response = client.get("/health")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "healthy"
    assert "version" in data
    assert "timestamp" in data
    assert data["checks"]["application"]["status"] == "healthy"
    assert data["checks"]["circuit_breakers"]["status"] == "healthy"


def test_readiness_endpoint(client: TestClient) -> None:
    """Test readiness check endpoint returns 200."""
    response = client.get("/ready")
    assert response.status_code == 200

    data = response.json()
    assert data["ready"] is True
    assert data["checks"] == {"dispatcher": True, "routes": True}


def test_not_ready_without_routes(dispatcher: Dispatcher) -> None:
    """Test readiness fails when no route is configured."""
    dispatcher.routes = RouteTable()
    app = create_app(settings=RouteGateSettings(ENABLE_METRICS=False), dispatcher=dispatcher)

    with TestClient(app) as client:
        response = client.get("/ready")

    assert response.status_code == 503


def test_liveness_endpoint(client: TestClient) -> None:
    """Test liveness check endpoint returns 200."""
    response = client.get("/live")
    assert response.status_code == 200
    assert response.json()["status"] == "alive"


def test_proxy_forwards_request(client: TestClient, backend_request: AsyncMock) -> None:
    """Test a routed request is forwarded and the backend response relayed."""
    response = client.post(
        "/orders/42/items?limit=5",
        content=b'{"sku": "x"}',
        headers={"Content-Type": "application/json", "X-Request-ID": "req-1"},
    )

    assert response.status_code == 200
    assert response.json() == {"id": 42}
    assert response.headers["X-Request-ID"] == "req-1"

    kwargs = backend_request.call_args.kwargs
    assert kwargs["method"] == "POST"
    assert kwargs["url"] == "http://orders-a:8081/orders/42/items?limit=5"
    assert kwargs["content"] == b'{"sku": "x"}'
    assert "X-Forwarded-For" in [name for name, _ in kwargs["headers"]]


def test_proxy_keeps_repeated_response_headers(
    client: TestClient, backend_request: AsyncMock
) -> None:
    """Test each Set-Cookie header from the backend reaches the client."""
    backend_request.return_value = create_mock_response(
        200,
        headers=[("set-cookie", "a=1; Path=/"), ("set-cookie", "b=2; Path=/")],
    )

    response = client.get("/orders")

    assert response.status_code == 200
    assert response.headers.get_list("set-cookie") == ["a=1; Path=/", "b=2; Path=/"]


def test_proxy_relays_application_errors(
    client: TestClient, backend_request: AsyncMock
) -> None:
    """Test backend 4xx answers reach the client unchanged."""
    backend_request.return_value = create_mock_response(404, b'{"detail": "no such order"}')

    response = client.get("/orders/999")

    assert response.status_code == 404
    assert response.json() == {"detail": "no such order"}


def test_unknown_path(client: TestClient, backend_request: AsyncMock) -> None:
    """Test a path without a route is a 404 service_unknown error."""
    response = client.get("/inventory/1")

    assert response.status_code == 404
    assert response.json()["error"] == "service_unknown"
    backend_request.assert_not_called()


def test_upstream_failure_then_circuit_open(
    client: TestClient, backend_request: AsyncMock
) -> None:
    """Test a failing backend yields 502, then the open circuit fails fast with 503."""
    backend_request.side_effect = httpx.ConnectError("Connection refused")

    response = client.get("/orders")
    assert response.status_code == 502
    assert response.json()["error"] == "upstream_error"

    response = client.get("/orders")
    assert response.status_code == 503
    assert response.json()["error"] == "circuit_open"
    assert response.headers["Retry-After"] == "30"
    assert backend_request.call_count == 1

    health = client.get("/health").json()
    assert health["status"] == "degraded"


def test_services_status(client: TestClient) -> None:
    """Test the per-service routing state endpoint."""
    client.get("/orders")

    response = client.get("/health/services")
    assert response.status_code == 200

    (service,) = response.json()["services"]
    assert service["service_name"] == "orders"
    assert service["cache_state"] == "fresh"
    assert service["total_instances"] == 2

    assert client.get("/health/services/orders").json()["service_name"] == "orders"
    assert client.get("/health/services/inventory").status_code == 404


def test_reset_endpoint(client: TestClient, backend_request: AsyncMock) -> None:
    """Test a tripped breaker can be reset through the API."""
    backend_request.side_effect = httpx.ConnectError("Connection refused")
    client.get("/orders")

    response = client.post("/health/services/orders/reset")

    assert response.status_code == 200
    assert response.json()["circuit_breaker"]["state"] == "closed"


def test_metrics_endpoint(client: TestClient) -> None:
    """Test Prometheus metrics are exposed."""
    client.get("/orders")

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "routegate_dispatch_total" in response.text
    assert "routegate_http_requests_total" in response.text

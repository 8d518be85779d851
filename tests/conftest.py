"""Root-level pytest configuration for all tests."""

from __future__ import annotations

import pytest

from tests.helpers import FakeClock, StubRegistryBackend, record

pytest_plugins = ("pytest_asyncio",)


@pytest.fixture
def clock() -> FakeClock:
    """Fake monotonic clock."""
    return FakeClock()


@pytest.fixture
def registry_backend() -> StubRegistryBackend:
    """Registry reporting two instances of ``orders``: A then B."""
    return StubRegistryBackend(
        {
            "orders": [
                record("10.0.0.1", 8001, id="A"),
                record("10.0.0.2", 8002, id="B"),
            ]
        }
    )

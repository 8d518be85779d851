"""Shared test doubles."""

from __future__ import annotations

import httpx

from routegate.exceptions import RegistryUnavailableError
from routegate.routing.discovery import RegistryBackend, RegistryRecord


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubRegistryBackend(RegistryBackend):
    """In-memory registry that can be switched into an unreachable state."""

    def __init__(self, records: dict[str, list[RegistryRecord]] | None = None) -> None:
        self.records = records or {}
        self.unreachable = False
        self.calls = 0

    async def fetch(self, service_name: str) -> list[RegistryRecord]:
        self.calls += 1
        if self.unreachable:
            raise RegistryUnavailableError(service_name, "connection refused")
        return list(self.records.get(service_name, []))


def record(
    address: str, port: int, health: str = "passing", id: str | None = None
) -> RegistryRecord:
    """Build a registry record."""
    return RegistryRecord(id=id, address=address, port=port, health=health)


def create_mock_response(
    status_code: int = 200,
    content: bytes = b"ok",
    headers: dict[str, str] | list[tuple[str, str]] | None = None,
    url: str = "http://localhost:8000/api/test",
) -> httpx.Response:
    """Create a httpx.Response with request attached."""
    return httpx.Response(
        status_code,
        content=content,
        headers=headers or {"content-type": "application/json"},
        request=httpx.Request("GET", url),
    )

"""
Route Table

Static mapping from inbound path prefixes to logical service names.
"""

from __future__ import annotations

from dataclasses import dataclass

from routegate.exceptions import ServiceUnknownError


@dataclass(frozen=True)
class Route:
    """One path prefix routed to a logical service."""

    prefix: str
    service_name: str

    def matches(self, path: str) -> bool:
        """Match on whole path segments: ``/orders`` matches ``/orders/1`` but not ``/ordersx``."""
        if self.prefix == "/":
            return True
        return path == self.prefix or path.startswith(self.prefix + "/")


class RouteTable:
    """Longest-prefix routing of request paths to service names."""

    def __init__(self, routes: dict[str, str] | None = None) -> None:
        """
        Initialize route table.

        Args:
            routes: Path prefix to service name mapping
        """
        self._routes: list[Route] = []
        for prefix, service_name in (routes or {}).items():
            self.add(prefix, service_name)

    @staticmethod
    def _normalize(prefix: str) -> str:
        prefix = "/" + prefix.strip().strip("/")
        return prefix

    def add(self, prefix: str, service_name: str) -> Route:
        """Add or replace the route for a prefix."""
        route = Route(self._normalize(prefix), service_name)
        self._routes = [r for r in self._routes if r.prefix != route.prefix]
        self._routes.append(route)
        # Longest prefix first so the most specific route wins
        self._routes.sort(key=lambda r: len(r.prefix), reverse=True)
        return route

    def match(self, path: str) -> Route:
        """
        Find the route for a request path.

        Args:
            path: Inbound request path

        Returns:
            Most specific matching route

        Raises:
            ServiceUnknownError: If no route matches
        """
        for route in self._routes:
            if route.matches(path):
                return route
        raise ServiceUnknownError(None, f"No route for path '{path}'")

    @property
    def services(self) -> set[str]:
        """Names of all routed services."""
        return {r.service_name for r in self._routes}

    def __contains__(self, service_name: str) -> bool:
        return service_name in self.services

    def __iter__(self):
        return iter(self._routes)

    def __len__(self) -> int:
        return len(self._routes)

"""
RouteGate

Request-routing layer in front of dynamically instantiated backend services.
Resolves logical service names through a registry, balances requests across
live instances and protects callers with circuit breakers and bounded retries.
"""

__version__ = "0.1.0"

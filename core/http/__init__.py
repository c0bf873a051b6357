"""HTTP client utilities and session management."""

from core.http.circuit_breaker import CircuitBreaker, CircuitOpen
from core.http.osrm import OsrmClient
from core.http.request import request_json
from core.http.retry import retry_transient
from core.http.session import HttpSessionManager

__all__ = [
    "CircuitBreaker",
    "CircuitOpen",
    "HttpSessionManager",
    "OsrmClient",
    "request_json",
    "retry_transient",
]

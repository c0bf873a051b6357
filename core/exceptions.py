"""
Centralized exception hierarchy for the dispatch engine.

Every error a caller can observe derives from :class:`DispatchEngineError`
and carries a human-readable ``message`` plus a ``details`` mapping that
the API layer can forward to clients.
"""


class DispatchEngineError(Exception):
    """Base exception for all engine-specific errors."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(DispatchEngineError):
    """Raised for malformed coordinates or unrecognized enum values."""


class NotFoundError(DispatchEngineError):
    """Raised when an incident, vehicle or hospital id is unknown."""


class InvalidStateError(DispatchEngineError):
    """Raised when a requested status transition is not allowed."""


class NoCapacityError(DispatchEngineError):
    """Raised when no vehicle could be claimed for an incident."""


class DependencyUnavailableError(DispatchEngineError):
    """Raised internally when a cache backend or provider cannot be reached."""


class ExternalServiceError(DependencyUnavailableError):
    """Raised when an external service answers with an unusable response."""


class RouteNotFoundError(ExternalServiceError):
    """Raised when the routing provider has no route between two points."""

"""
Circuit breaker for the routing provider.

Only outcomes that say something about the provider's health move the
breaker: transport errors, timeouts and unusable responses count as
failures, while a well-formed "no route between these points" answer counts
as a success. While open, calls are rejected with :class:`CircuitOpen`
until ``recovery_timeout`` has elapsed; the next call is then let through on
trial and its outcome closes or re-opens the circuit.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Callable
from enum import Enum

from core.exceptions import DependencyUnavailableError, RouteNotFoundError

logger = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitOpen(DependencyUnavailableError):
    """Raised instead of calling a provider whose circuit is open."""

    def __init__(self, service: str, resets_in: float) -> None:
        super().__init__(
            f"Circuit breaker open for {service} (resets in {resets_in:.0f}s)",
            {"service": service, "resets_in": resets_in},
        )
        self.service = service
        self.resets_in = resets_in


def counts_as_failure(exc: BaseException) -> bool:
    """Whether ``exc`` says the provider itself is unhealthy."""
    if isinstance(exc, (RouteNotFoundError, CircuitOpen, asyncio.CancelledError)):
        return False
    return isinstance(exc, Exception)


class CircuitBreaker:
    def __init__(
        self,
        service: str,
        *,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.service = service
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._failures = 0
        self._opened_at: float | None = None
        self._state = BreakerState.CLOSED

    @property
    def state(self) -> BreakerState:
        if (
            self._state is BreakerState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.recovery_timeout
        ):
            self._state = BreakerState.HALF_OPEN
        return self._state

    def check(self) -> None:
        """Raise :class:`CircuitOpen` while the provider is short-circuited."""
        if self.state is BreakerState.OPEN:
            elapsed = self._clock() - (self._opened_at or 0.0)
            raise CircuitOpen(self.service, max(0.0, self.recovery_timeout - elapsed))

    def record_success(self) -> None:
        if self._state is not BreakerState.CLOSED:
            logger.info("Circuit breaker CLOSED for %s", self.service)
        self._failures = 0
        self._opened_at = None
        self._state = BreakerState.CLOSED

    def record_failure(self) -> None:
        self._failures += 1
        trial_failed = self.state is BreakerState.HALF_OPEN
        if trial_failed or (
            self._state is BreakerState.CLOSED and self._failures >= self.failure_threshold
        ):
            self._state = BreakerState.OPEN
            self._opened_at = self._clock()
            logger.warning(
                "Circuit breaker OPEN for %s after %d failure(s)",
                self.service,
                self._failures,
            )

    @contextlib.asynccontextmanager
    async def guard(self) -> AsyncIterator[None]:
        """
        Wrap one provider call: reject it while open, then classify its outcome.

        Exceptions always propagate; the breaker only records them.
        """
        self.check()
        try:
            yield
        except BaseException as exc:
            if counts_as_failure(exc):
                self.record_failure()
            elif isinstance(exc, RouteNotFoundError):
                self.record_success()
            raise
        else:
            self.record_success()

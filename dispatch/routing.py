"""
Route and ETA computation with caching and a straight-line fallback.

``RoutingService.route`` never raises for provider problems: when the
provider is unreachable, slow, short-circuited or has no route, the answer
is the great-circle distance driven at a constant speed. Fallback answers
are never cached so a transient outage cannot poison the cache.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import ValidationError as PydanticValidationError

from core.cache import route_key
from core.constants import FALLBACK_SPEED_MPS, ROUTE_TTL_SECONDS
from core.exceptions import DependencyUnavailableError, RouteNotFoundError
from core.http.circuit_breaker import CircuitBreaker, CircuitOpen
from core.spatial import haversine_distance
from dispatch.models import GeoPoint, RouteResult

if TYPE_CHECKING:
    from core.cache import DispatchCache

logger = logging.getLogger(__name__)


class RouteProvider(Protocol):
    async def route(
        self,
        origin: tuple[float, float],
        destination: tuple[float, float],
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]: ...


def straight_line_route(
    origin: GeoPoint,
    destination: GeoPoint,
    *,
    speed_mps: float = FALLBACK_SPEED_MPS,
) -> RouteResult:
    distance = haversine_distance(
        origin.longitude,
        origin.latitude,
        destination.longitude,
        destination.latitude,
    )
    return RouteResult(
        distance_meters=distance,
        duration_seconds=distance / speed_mps,
        geometry=[origin.as_pair(), destination.as_pair()],
        is_fallback=True,
    )


class RoutingService:
    def __init__(
        self,
        provider: RouteProvider | None,
        cache: DispatchCache,
        *,
        timeout: float = 5.0,
        breaker: CircuitBreaker | None = None,
        fallback_speed_mps: float = FALLBACK_SPEED_MPS,
        ttl: int = ROUTE_TTL_SECONDS,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._timeout = timeout
        self._breaker = breaker or CircuitBreaker("routing provider")
        self._fallback_speed = fallback_speed_mps
        self._ttl = ttl

    async def route(self, origin: GeoPoint, destination: GeoPoint) -> RouteResult:
        key = route_key(
            origin.longitude,
            origin.latitude,
            destination.longitude,
            destination.latitude,
        )

        cached = await self._cache.get_route(key)
        if cached is not None:
            try:
                return RouteResult.model_validate(cached)
            except PydanticValidationError:
                logger.debug("Ignoring malformed cached route %s", key)

        if self._provider is None:
            return straight_line_route(origin, destination, speed_mps=self._fallback_speed)

        try:
            result = await self._fetch(origin, destination)
        except CircuitOpen as exc:
            logger.debug("%s; using straight-line route", exc.message)
        except RouteNotFoundError as exc:
            logger.info("%s; using straight-line route", exc.message)
        except (DependencyUnavailableError, asyncio.TimeoutError) as exc:
            logger.warning("Routing provider failed (%s); using straight-line route", exc)
        except Exception:
            logger.warning("Routing provider errored; using straight-line route", exc_info=True)
        else:
            await self._cache.put_route(key, result.model_dump(), self._ttl)
            return result

        return straight_line_route(origin, destination, speed_mps=self._fallback_speed)

    async def _fetch(self, origin: GeoPoint, destination: GeoPoint) -> RouteResult:
        async with self._breaker.guard():
            data = await asyncio.wait_for(
                self._provider.route(
                    (origin.longitude, origin.latitude),
                    (destination.longitude, destination.latitude),
                    timeout=self._timeout,
                ),
                self._timeout,
            )
            return RouteResult(
                distance_meters=data["distance_meters"],
                duration_seconds=data["duration_seconds"],
                geometry=data.get("geometry") or [origin.as_pair(), destination.as_pair()],
                is_fallback=False,
            )

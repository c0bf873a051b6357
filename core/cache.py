"""
Redis-backed cache for nearest-vehicle lookups and route computations.

The cache is an optimization only. Every backend call is bounded by a short
timeout and any failure (no client configured, connection refused, timeout,
malformed payload) degrades to a miss or a no-op; nothing here raises.

Nearest-vehicle entries are stored under an *anchor* key (a query point or a
hospital id). Each entry is paired with a reference key that embeds the
answering vehicle's id::

    nearest_vehicle:point:3.345000:6.597000        -> {"vehicle_id": ..., ...}
    nearest_vehicle:ref:<vehicle_id>:point:3.345000:6.597000 -> anchor key

so everything that points at a vehicle can be dropped with one pattern
match on that vehicle's id.

Entries also carry the cache *generation* current when the answer was
computed. Flushing every nearest-vehicle answer (a vehicle became available
and may now be closer than anything cached) only starts a new generation:
older entries stop matching immediately and expire through their TTL. No
backend call is made for the flush.
The generation lives in this process, next to the in-memory store that
nearest-vehicle answers are checked against.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from typing import TYPE_CHECKING, Any

from core.constants import (
    NEAREST_KEY_PRECISION,
    NEAREST_VEHICLE_TTL_SECONDS,
    ROUTE_KEY_PRECISION,
    ROUTE_TTL_SECONDS,
)

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

NEAREST_PREFIX = "nearest_vehicle"
ROUTE_PREFIX = "route"

_GLOB_SPECIAL = re.compile(r"([\\*?\[\]])")


def escape_glob(fragment: str) -> str:
    """Escape Redis glob metacharacters so ``fragment`` matches literally."""
    return _GLOB_SPECIAL.sub(r"\\\1", fragment)


def nearest_point_anchor(longitude: float, latitude: float) -> str:
    p = NEAREST_KEY_PRECISION
    return f"point:{longitude:.{p}f}:{latitude:.{p}f}"


def nearest_hospital_anchor(hospital_id: str) -> str:
    return f"hospital:{hospital_id}"


def route_key(
    origin_lon: float,
    origin_lat: float,
    dest_lon: float,
    dest_lat: float,
) -> str:
    p = ROUTE_KEY_PRECISION
    return (
        f"{ROUTE_PREFIX}:{origin_lon:.{p}f}:{origin_lat:.{p}f}"
        f":{dest_lon:.{p}f}:{dest_lat:.{p}f}"
    )


class DispatchCache:
    """TTL cache with pattern invalidation over an optional Redis client."""

    def __init__(
        self,
        client: aioredis.Redis | None,
        *,
        op_timeout: float = 0.25,
        scan_count: int = 500,
    ) -> None:
        self._client = client
        self._op_timeout = op_timeout
        self._scan_count = scan_count
        self._generation = uuid.uuid4().hex

    @property
    def enabled(self) -> bool:
        return self._client is not None

    @property
    def generation(self) -> str:
        """Token that nearest-vehicle entries must carry to be served."""
        return self._generation

    async def _call(self, description: str, coro_factory) -> Any:
        """Run one backend operation; return ``None`` on any failure."""
        if self._client is None:
            return None
        try:
            return await asyncio.wait_for(coro_factory(self._client), self._op_timeout)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.debug("Redis cache %s failed", description, exc_info=True)
            return None

    # ------------------------------------------------------------------
    # Generic operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        raw = await self._call(f"get {key}", lambda r: r.get(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Discarding undecodable cache entry %s", key)
            return None

    async def put(self, key: str, value: Any, ttl: int) -> bool:
        try:
            payload = json.dumps(value, default=str)
        except (TypeError, ValueError):
            logger.debug("Value for %s is not JSON serializable", key, exc_info=True)
            return False
        result = await self._call(
            f"set {key}",
            lambda r: r.set(key, payload, ex=int(ttl)),
        )
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        result = await self._call("delete", lambda r: r.delete(*keys))
        return int(result or 0)

    async def invalidate(self, pattern: str) -> int:
        """Delete every key matching the glob ``pattern``; return the count."""

        async def _scan_and_delete(r: aioredis.Redis) -> int:
            removed = 0
            batch: list[str] = []
            async for key in r.scan_iter(match=pattern, count=self._scan_count):
                batch.append(key)
                if len(batch) >= self._scan_count:
                    removed += await r.delete(*batch)
                    batch = []
            if batch:
                removed += await r.delete(*batch)
            return removed

        removed = await self._call(f"invalidate {pattern}", _scan_and_delete)
        if removed:
            logger.debug("Invalidated %d cache key(s) matching %s", removed, pattern)
        return int(removed or 0)

    # ------------------------------------------------------------------
    # Nearest-vehicle entries
    # ------------------------------------------------------------------

    async def get_nearest(self, anchor: str) -> dict[str, Any] | None:
        entry = await self.get(f"{NEAREST_PREFIX}:{anchor}")
        if not isinstance(entry, dict) or "vehicle_id" not in entry:
            if entry is None:
                logger.debug("[CACHE MISS] %s:%s", NEAREST_PREFIX, anchor)
            return None
        if entry.get("generation") != self._generation:
            logger.debug("[CACHE MISS] %s:%s (previous generation)", NEAREST_PREFIX, anchor)
            return None
        logger.debug("[CACHE HIT] %s:%s", NEAREST_PREFIX, anchor)
        return entry

    async def put_nearest(
        self,
        anchor: str,
        *,
        vehicle_id: str,
        distance_meters: float,
        vehicle_version: str,
        generation: str | None = None,
        ttl: int = NEAREST_VEHICLE_TTL_SECONDS,
    ) -> bool:
        """
        Store the nearest vehicle for ``anchor``.

        Pass the ``generation`` read before the answer was computed; an answer
        computed before a flush is then written as already stale.
        """
        entry_key = f"{NEAREST_PREFIX}:{anchor}"
        ref_key = f"{NEAREST_PREFIX}:ref:{vehicle_id}:{anchor}"
        entry = {
            "vehicle_id": vehicle_id,
            "distance_meters": distance_meters,
            "vehicle_version": vehicle_version,
            "generation": generation or self._generation,
        }
        # Reference first: an orphaned reference is harmless, an entry
        # without one could outlive an invalidation.
        if not await self.put(ref_key, entry_key, ttl):
            return False
        return await self.put(entry_key, entry, ttl)

    async def drop_nearest(self, anchor: str) -> int:
        return await self.delete(f"{NEAREST_PREFIX}:{anchor}")

    async def invalidate_vehicle(self, vehicle_id: str, *, widen: bool = False) -> int:
        """
        Drop nearest-vehicle entries that reference ``vehicle_id``.

        With ``widen`` every nearest-vehicle entry is retired by starting a
        new generation: a vehicle that just became available, or moved while
        available, may now be closer than whatever other entries point at.
        Returns the number of keys deleted, which is 0 for a widened call.
        """
        if widen:
            self._generation = uuid.uuid4().hex
            logger.debug("Retired nearest-vehicle entries after change to %s", vehicle_id)
            return 0

        ref_pattern = f"{NEAREST_PREFIX}:ref:{escape_glob(vehicle_id)}:*"

        async def _drop_references(r: aioredis.Redis) -> int:
            removed = 0
            async for ref_key in r.scan_iter(match=ref_pattern, count=self._scan_count):
                raw = await r.get(ref_key)
                keys = [ref_key]
                try:
                    entry_key = json.loads(raw) if raw else None
                except (TypeError, ValueError):
                    logger.debug("Dropping undecodable reference %s", ref_key)
                    entry_key = None
                if isinstance(entry_key, str):
                    keys.append(entry_key)
                removed += await r.delete(*keys)
            return removed

        removed = await self._call(f"invalidate vehicle {vehicle_id}", _drop_references)
        return int(removed or 0)

    # ------------------------------------------------------------------
    # Route entries
    # ------------------------------------------------------------------

    async def get_route(self, key: str) -> dict[str, Any] | None:
        entry = await self.get(key)
        return entry if isinstance(entry, dict) else None

    async def put_route(
        self,
        key: str,
        route: dict[str, Any],
        ttl: int = ROUTE_TTL_SECONDS,
    ) -> bool:
        return await self.put(key, route, ttl)

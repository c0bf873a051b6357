"""Process runtime: builds dispatch dependencies and owns their lifecycle."""

from __future__ import annotations

import logging

from config import (
    require_cache_op_timeout,
    require_event_queue_size,
    require_events_channel,
    require_geocell_size,
    require_osrm_base_url,
    require_routing_timeout,
)
from core.cache import DispatchCache
from core.http.circuit_breaker import CircuitBreaker
from core.http.osrm import OsrmClient
from core.http.session import HttpSessionManager
from core.redis import close_redis, connect_redis, create_redis_client
from db.manager import DatabaseManager
from db.repository import BeanieDispatchRepository
from dispatch.coordinator import DispatchCoordinator
from dispatch.routing import RoutingService
from dispatch.spatial_index import SpatialIndex
from events.notifier import EventNotifier, RedisEventBus

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


class DispatchRuntime:
    """
    Wires the coordinator to Redis, OSRM and MongoDB.

    Nothing is connected in ``__init__``. ``start()`` degrades to cache-less
    and broadcast-less operation when Redis is unreachable; a MongoDB
    failure during loading is fatal.
    """

    def __init__(
        self,
        *,
        redis_url: str | None = None,
        osrm_base_url: str | None = None,
        use_database: bool = True,
        database: DatabaseManager | None = None,
    ) -> None:
        self._redis = create_redis_client(redis_url)
        self._sessions = HttpSessionManager()
        self._database = database or (DatabaseManager() if use_database else None)

        self.cache = DispatchCache(self._redis, op_timeout=require_cache_op_timeout())
        self.notifier = EventNotifier(
            RedisEventBus(self._redis, require_events_channel()),
            max_queue_size=require_event_queue_size(),
        )
        self.routing = RoutingService(
            OsrmClient(self._sessions, base_url=osrm_base_url or require_osrm_base_url()),
            self.cache,
            timeout=require_routing_timeout(),
            breaker=CircuitBreaker("OSRM"),
        )
        self.coordinator = DispatchCoordinator(
            index=SpatialIndex(require_geocell_size()),
            cache=self.cache,
            routing=self.routing,
            notifier=self.notifier,
            repository=BeanieDispatchRepository() if self._database else None,
        )
        self._started = False

    async def start(self) -> DispatchCoordinator:
        if self._started:
            return self.coordinator

        if not await connect_redis(self._redis):
            logger.warning("Dispatch running without cache and event broadcast")

        if self._database is not None:
            await self._database.init_beanie()
            await self.coordinator.load_from_repository()

        self.notifier.start()
        self._started = True
        logger.info("Dispatch runtime started")
        return self.coordinator

    async def stop(self) -> None:
        if not self._started:
            return
        await self.notifier.stop()
        await self._sessions.close()
        await close_redis(self._redis)
        if self._database is not None:
            await self._database.close()
        self._started = False
        logger.info("Dispatch runtime stopped")

"""
Non-blocking publication of dispatch events.

State mutations hand events to :class:`EventNotifier`, which buffers them
in a bounded queue and publishes them from a background task. Publishing is
best-effort: a full queue drops the event with a warning and a failed or
slow publish is logged, never raised back into the mutation that caused it.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import TYPE_CHECKING, Any, Protocol

from events.dispatch_events import DispatchEvent

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class EventBus(Protocol):
    async def publish(self, event_name: str, payload: dict[str, Any]) -> None: ...


class RedisEventBus:
    """Publishes events as JSON messages on a Redis pub/sub channel."""

    def __init__(self, client: aioredis.Redis, channel: str = "dispatch_events") -> None:
        self._client = client
        self.channel = channel

    async def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        message = json.dumps(DispatchEvent(event_name, payload).to_dict(), default=str)
        subscribers = await self._client.publish(self.channel, message)
        logger.debug(
            "Published %s to %d subscriber(s) on %s",
            event_name,
            subscribers,
            self.channel,
        )


class EventNotifier:
    def __init__(
        self,
        bus: EventBus | None,
        *,
        max_queue_size: int = 1000,
        publish_timeout: float = 2.0,
    ) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[DispatchEvent] = asyncio.Queue(maxsize=max_queue_size)
        self._publish_timeout = publish_timeout
        self._worker: asyncio.Task | None = None
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def notify(self, event_name: str, payload: dict[str, Any]) -> bool:
        """Queue an event without blocking; return False if it was dropped."""
        try:
            self._queue.put_nowait(DispatchEvent(event_name, payload))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Event queue full; dropping %s", event_name)
            return False
        return True

    def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="dispatch-event-notifier")
        logger.info("Event notifier started")

    async def stop(self, *, drain_timeout: float = 5.0) -> None:
        """Publish what is already queued (bounded by ``drain_timeout``) and stop."""
        if self._worker is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Event notifier stopped with %d unpublished event(s)",
                self._queue.qsize(),
            )
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None
        logger.info("Event notifier stopped")

    async def flush(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._publish(event)
            finally:
                self._queue.task_done()

    async def _publish(self, event: DispatchEvent) -> None:
        if self._bus is None:
            logger.debug("No event bus configured; discarding %s", event.name)
            return
        try:
            await asyncio.wait_for(
                self._bus.publish(event.name, event.payload),
                self._publish_timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Failed to publish %s", event.name)

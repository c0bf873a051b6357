"""HTTP session management for aiohttp.

Provides an owned aiohttp ClientSession with handling of process forks and
event loop changes. The runtime creates one manager per process and closes
it on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import os

import aiohttp

from core.constants import (
    HTTP_CONNECTION_LIMIT,
    HTTP_TIMEOUT_CONNECT,
    HTTP_TIMEOUT_SOCK_READ,
    HTTP_TIMEOUT_TOTAL,
)

logger = logging.getLogger(__name__)


class HttpSessionManager:
    """Lazily creates and owns a single aiohttp ClientSession."""

    def __init__(self, *, user_agent: str = "DispatchEngine/1.0") -> None:
        self._user_agent = user_agent
        self._session: aiohttp.ClientSession | None = None
        self._owner_pid: int | None = None

    async def get(self) -> aiohttp.ClientSession:
        """Return the session, recreating it after a fork or loop change."""
        current_pid = os.getpid()

        # Sessions are never shared across processes.
        if self._session is not None and current_pid != self._owner_pid:
            logger.debug(
                "Discarding inherited session from parent process %s in child process %s",
                self._owner_pid,
                current_pid,
            )
            self._session = None
            self._owner_pid = None

        if self._session is not None and not self._session.closed:
            current_loop = asyncio.get_running_loop()
            if self._session.loop is not current_loop or self._session.loop.is_closed():
                logger.info("Detected event loop change. Creating new session.")
                try:
                    if not self._session.loop.is_closed():
                        await self._session.close()
                except Exception as e:
                    logger.warning("Error closing stale session: %s", e)
                self._session = None

        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                total=HTTP_TIMEOUT_TOTAL,
                connect=HTTP_TIMEOUT_CONNECT,
                sock_read=HTTP_TIMEOUT_SOCK_READ,
            )
            connector = aiohttp.TCPConnector(
                limit=HTTP_CONNECTION_LIMIT,
                enable_cleanup_closed=True,
            )
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={
                    "User-Agent": self._user_agent,
                    "Accept": "application/json",
                },
                connector=connector,
            )
            self._owner_pid = current_pid
            logger.debug("Created new aiohttp session for process %s", current_pid)

        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            try:
                await self._session.close()
                logger.info("Closed aiohttp session for process %s", os.getpid())
            except Exception as e:
                logger.warning("Error closing session: %s", e)
        self._session = None
        self._owner_pid = None

"""
Database connection manager module.

Owns the MongoDB client used as the durability sink for vehicles,
incidents and hospitals, and binds the Beanie document models to it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC
from typing import Any

import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from config import (
    require_mongo_connect_timeout_ms,
    require_mongo_database,
    require_mongo_max_pool_size,
    require_mongo_server_selection_timeout_ms,
    require_mongo_socket_timeout_ms,
    require_mongo_uri,
)
from db.models import ALL_DOCUMENT_MODELS

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Manage the MongoDB client and Beanie initialization.

    Environment Variables:
        MONGODB_URI: MongoDB URI (default: mongodb://mongo:27017)
        MONGODB_DATABASE: Database name (default: dispatch_engine)
        MONGODB_MAX_POOL_SIZE: Connection pool size (default: 50)
        MONGODB_CONNECTION_TIMEOUT_MS: Connection timeout (default: 5000)
        MONGODB_SERVER_SELECTION_TIMEOUT_MS: Server selection timeout (default: 5000)
        MONGODB_SOCKET_TIMEOUT_MS: Socket timeout (default: 10000)
    """

    def __init__(self, mongo_uri: str | None = None, db_name: str | None = None) -> None:
        self._mongo_uri = mongo_uri or require_mongo_uri()
        self._db_name = db_name or require_mongo_database()
        self._client: AsyncIOMotorClient | None = None
        self._db: AsyncIOMotorDatabase | None = None
        self._bound_loop: asyncio.AbstractEventLoop | None = None
        self._beanie_initialized = False

        self._max_pool_size = require_mongo_max_pool_size()
        self._connection_timeout_ms = require_mongo_connect_timeout_ms()
        self._server_selection_timeout_ms = require_mongo_server_selection_timeout_ms()
        self._socket_timeout_ms = require_mongo_socket_timeout_ms()

    def _initialize_client(self) -> None:
        client_kwargs: dict[str, Any] = {
            "tz_aware": True,
            "tzinfo": UTC,
            "maxPoolSize": self._max_pool_size,
            "minPoolSize": 0,
            "connectTimeoutMS": self._connection_timeout_ms,
            "serverSelectionTimeoutMS": self._server_selection_timeout_ms,
            "socketTimeoutMS": self._socket_timeout_ms,
            "retryWrites": True,
            "retryReads": True,
            "appname": "DispatchEngine",
        }

        # Configure TLS for MongoDB Atlas connections
        if self._mongo_uri.startswith("mongodb+srv://"):
            client_kwargs.update(tls=True, tlsCAFile=certifi.where())

        try:
            self._client = AsyncIOMotorClient(self._mongo_uri, **client_kwargs)
            self._db = self._client[self._db_name]
        except Exception:
            logger.exception("Failed to initialize MongoDB client")
            raise
        self._bound_loop = asyncio.get_running_loop()
        logger.info("MongoDB client initialized for database %s", self._db_name)

    @property
    def db(self) -> AsyncIOMotorDatabase:
        if self._db is None:
            msg = "Database is not connected; call init_beanie() first."
            raise RuntimeError(msg)
        return self._db

    async def init_beanie(self) -> None:
        """Connect (if needed) and bind every document model. Call once at startup."""
        current_loop = asyncio.get_running_loop()
        if self._beanie_initialized and self._bound_loop is current_loop:
            logger.debug("Beanie already initialized, skipping")
            return
        if self._client is not None and self._bound_loop is not current_loop:
            logger.info("Event loop changed, reconnecting MongoDB client")
            await self.close()

        if self._client is None:
            self._initialize_client()

        await init_beanie(database=self.db, document_models=ALL_DOCUMENT_MODELS)
        self._beanie_initialized = True
        logger.info(
            "Beanie ODM initialized with %d document models",
            len(ALL_DOCUMENT_MODELS),
        )

    async def close(self) -> None:
        """Clean up MongoDB client connections."""
        if self._client is not None:
            try:
                logger.info("Closing MongoDB client connections...")
                self._client.close()
            except Exception:
                logger.exception("Error closing MongoDB client")
        self._client = None
        self._db = None
        self._bound_loop = None
        self._beanie_initialized = False

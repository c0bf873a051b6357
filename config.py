"""Centralized configuration for environment variables and external services.

This module is the single source of truth for configuration used across the
engine. Import constants or ``require_*`` accessors from here rather than
calling os.getenv directly in multiple places.
"""

from __future__ import annotations

import os
from typing import Final

from dotenv import load_dotenv

# Load environment variables from .env if present
load_dotenv()


# --- Redis (cache backend and event bus) ---
DEFAULT_REDIS_URL: Final[str] = "redis://redis:6379"
DEFAULT_EVENTS_CHANNEL: Final[str] = "dispatch_events"

# --- Routing provider ---
DEFAULT_OSRM_BASE_URL: Final[str] = "https://router.project-osrm.org"

# --- MongoDB ---
DEFAULT_MONGO_URI: Final[str] = "mongodb://mongo:27017"
DEFAULT_MONGO_DATABASE: Final[str] = "dispatch_engine"
DEFAULT_MONGO_MAX_POOL_SIZE: Final[int] = 50
DEFAULT_MONGO_CONNECT_TIMEOUT_MS: Final[int] = 5000
DEFAULT_MONGO_SERVER_SELECTION_TIMEOUT_MS: Final[int] = 5000
DEFAULT_MONGO_SOCKET_TIMEOUT_MS: Final[int] = 10000

# --- Tunables ---
DEFAULT_ROUTING_TIMEOUT_SECONDS: Final[float] = 5.0
DEFAULT_CACHE_OP_TIMEOUT_SECONDS: Final[float] = 0.25
DEFAULT_GEOCELL_SIZE_DEGREES: Final[float] = 0.05
DEFAULT_EVENT_QUEUE_SIZE: Final[int] = 1000


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name, "").strip()
    return value or default


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        msg = f"Invalid number for env var {name}: {raw}"
        raise RuntimeError(msg) from exc
    if value <= minimum:
        msg = f"Env var {name} must be greater than {minimum}, got {raw}"
        raise RuntimeError(msg)
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        msg = f"Invalid integer for env var {name}: {raw}"
        raise RuntimeError(msg) from exc
    if value <= 0:
        msg = f"Env var {name} must be a positive integer, got {raw}"
        raise RuntimeError(msg)
    return value


def require_redis_url() -> str:
    return _env_str("REDIS_URL", DEFAULT_REDIS_URL)


def require_events_channel() -> str:
    return _env_str("DISPATCH_EVENTS_CHANNEL", DEFAULT_EVENTS_CHANNEL)


def require_osrm_base_url() -> str:
    return _env_str("OSRM_BASE_URL", DEFAULT_OSRM_BASE_URL).rstrip("/")


def require_mongo_uri() -> str:
    return _env_str("MONGODB_URI", DEFAULT_MONGO_URI)


def require_mongo_database() -> str:
    return _env_str("MONGODB_DATABASE", DEFAULT_MONGO_DATABASE)


def require_mongo_max_pool_size() -> int:
    return _env_int("MONGODB_MAX_POOL_SIZE", DEFAULT_MONGO_MAX_POOL_SIZE)


def require_mongo_connect_timeout_ms() -> int:
    return _env_int("MONGODB_CONNECTION_TIMEOUT_MS", DEFAULT_MONGO_CONNECT_TIMEOUT_MS)


def require_mongo_server_selection_timeout_ms() -> int:
    return _env_int(
        "MONGODB_SERVER_SELECTION_TIMEOUT_MS",
        DEFAULT_MONGO_SERVER_SELECTION_TIMEOUT_MS,
    )


def require_mongo_socket_timeout_ms() -> int:
    return _env_int("MONGODB_SOCKET_TIMEOUT_MS", DEFAULT_MONGO_SOCKET_TIMEOUT_MS)


def require_routing_timeout() -> float:
    return _env_float("ROUTING_TIMEOUT_SECONDS", DEFAULT_ROUTING_TIMEOUT_SECONDS)


def require_cache_op_timeout() -> float:
    return _env_float("CACHE_OP_TIMEOUT_SECONDS", DEFAULT_CACHE_OP_TIMEOUT_SECONDS)


def require_geocell_size() -> float:
    size = _env_float("GEOCELL_SIZE_DEGREES", DEFAULT_GEOCELL_SIZE_DEGREES)
    if size > 90.0:
        msg = f"GEOCELL_SIZE_DEGREES must be at most 90, got {size}"
        raise RuntimeError(msg)
    return size


def require_event_queue_size() -> int:
    return int(_env_float("EVENT_QUEUE_SIZE", DEFAULT_EVENT_QUEUE_SIZE, minimum=0.0))


__all__ = [
    "DEFAULT_CACHE_OP_TIMEOUT_SECONDS",
    "DEFAULT_EVENTS_CHANNEL",
    "DEFAULT_EVENT_QUEUE_SIZE",
    "DEFAULT_GEOCELL_SIZE_DEGREES",
    "DEFAULT_MONGO_CONNECT_TIMEOUT_MS",
    "DEFAULT_MONGO_DATABASE",
    "DEFAULT_MONGO_MAX_POOL_SIZE",
    "DEFAULT_MONGO_SERVER_SELECTION_TIMEOUT_MS",
    "DEFAULT_MONGO_SOCKET_TIMEOUT_MS",
    "DEFAULT_MONGO_URI",
    "DEFAULT_OSRM_BASE_URL",
    "DEFAULT_REDIS_URL",
    "DEFAULT_ROUTING_TIMEOUT_SECONDS",
    "require_cache_op_timeout",
    "require_event_queue_size",
    "require_events_channel",
    "require_geocell_size",
    "require_mongo_connect_timeout_ms",
    "require_mongo_database",
    "require_mongo_max_pool_size",
    "require_mongo_server_selection_timeout_ms",
    "require_mongo_socket_timeout_ms",
    "require_mongo_uri",
    "require_osrm_base_url",
    "require_redis_url",
    "require_routing_timeout",
]

"""Global constants for the core package.

This module contains shared constants used across the dispatch engine.
"""

from typing import Final

# HTTP Client Constants
HTTP_CONNECTION_LIMIT: Final[int] = 10
HTTP_TIMEOUT_CONNECT: Final[float] = 2.0
HTTP_TIMEOUT_SOCK_READ: Final[float] = 5.0
HTTP_TIMEOUT_TOTAL: Final[float] = 5.0

# Geodesy
EARTH_RADIUS_M: Final[float] = 6371000.0

# Straight-line fallback speed used when the routing provider is unavailable.
FALLBACK_SPEED_MPS: Final[float] = 15.0

# Cache TTLs
NEAREST_VEHICLE_TTL_SECONDS: Final[int] = 60
ROUTE_TTL_SECONDS: Final[int] = 300

# Coordinate rounding for cache keys
NEAREST_KEY_PRECISION: Final[int] = 6
ROUTE_KEY_PRECISION: Final[int] = 5

# Dispatch
MAX_CLAIM_ATTEMPTS: Final[int] = 3

"""
OSRM HTTP client.

Wraps the ``/route/v1/driving`` endpoint and normalizes its response into
distance (meters), duration (seconds) and a list of ``[lon, lat]`` pairs.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import aiohttp

from config import require_osrm_base_url
from core.exceptions import ExternalServiceError, RouteNotFoundError
from core.http.request import request_json
from core.http.retry import retry_transient

if TYPE_CHECKING:
    from core.http.session import HttpSessionManager

logger = logging.getLogger(__name__)


class OsrmClient:
    def __init__(
        self,
        sessions: HttpSessionManager,
        *,
        base_url: str | None = None,
        profile: str = "driving",
    ) -> None:
        self._sessions = sessions
        self._base_url = (base_url or require_osrm_base_url()).rstrip("/")
        self._profile = profile

    def route_url(self, origin: tuple[float, float], destination: tuple[float, float]) -> str:
        coords = f"{origin[0]},{origin[1]};{destination[0]},{destination[1]}"
        return f"{self._base_url}/route/v1/{self._profile}/{coords}"

    @retry_transient()
    async def route(
        self,
        origin: tuple[float, float],
        destination: tuple[float, float],
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Fetch a route between two ``(lon, lat)`` points."""
        url = self.route_url(origin, destination)
        session = await self._sessions.get()
        data = await request_json(
            "GET",
            url,
            session=session,
            params={"overview": "full", "geometries": "geojson"},
            service_name="OSRM route",
            timeout=aiohttp.ClientTimeout(total=timeout) if timeout else None,
        )
        if not isinstance(data, dict):
            msg = "OSRM route error: unexpected response"
            raise ExternalServiceError(msg, {"url": url})
        return self._normalize_route_response(data, origin, destination)

    @staticmethod
    def _normalize_route_response(
        data: dict[str, Any],
        origin: tuple[float, float],
        destination: tuple[float, float],
    ) -> dict[str, Any]:
        code = data.get("code")
        routes = data.get("routes") or []
        if code != "Ok" or not routes or not isinstance(routes[0], dict):
            msg = f"OSRM found no route (code={code})"
            raise RouteNotFoundError(msg, {"code": code, "message": data.get("message")})

        route = routes[0]
        try:
            distance = float(route.get("distance", 0.0))
            duration = float(route.get("duration", 0.0))
        except (TypeError, ValueError) as exc:
            msg = "OSRM route error: non-numeric distance or duration"
            raise ExternalServiceError(msg) from exc

        coords = OsrmClient._coerce_geometry(route.get("geometry"))
        if len(coords) < 2:
            coords = [[origin[0], origin[1]], [destination[0], destination[1]]]
        return {
            "distance_meters": distance,
            "duration_seconds": duration,
            "geometry": coords,
        }

    @staticmethod
    def _coerce_geometry(geometry: Any) -> list[list[float]]:
        if geometry is None:
            return []
        if isinstance(geometry, str):
            return OsrmClient._decode_polyline(geometry, 5)
        coords = geometry.get("coordinates") if isinstance(geometry, dict) else geometry
        if not isinstance(coords, list):
            return []

        normalized: list[list[float]] = []
        for point in coords:
            if not isinstance(point, (list, tuple)) or len(point) < 2:
                continue
            try:
                normalized.append([float(point[0]), float(point[1])])
            except (TypeError, ValueError):
                continue
        return normalized

    @staticmethod
    def _decode_polyline(encoded: str, precision: int) -> list[list[float]]:
        """Decode a Google encoded polyline into ``[lon, lat]`` pairs."""
        coords: list[list[float]] = []
        index = 0
        lat = 0
        lon = 0
        length = len(encoded)
        factor = float(10**precision)

        def next_value() -> int:
            nonlocal index
            result = 0
            shift = 0
            while True:
                if index >= length:
                    raise ValueError("Invalid polyline encoding")
                b = ord(encoded[index]) - 63
                index += 1
                result |= (b & 0x1F) << shift
                shift += 5
                if b < 0x20:
                    break
            if result & 1:
                return ~(result >> 1)
            return result >> 1

        try:
            while index < length:
                lat += next_value()
                lon += next_value()
                coords.append([lon / factor, lat / factor])
        except ValueError:
            return []
        return coords

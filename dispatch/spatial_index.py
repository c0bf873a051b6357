"""
In-process spatial index for nearest-vehicle queries.

Vehicles are bucketed into a fixed longitude/latitude grid ("geocells").
A query visits the occupied cells in increasing order of the exact
spherical distance from the query point to the cell, and stops once the
next cell cannot contain anything closer than the best match so far.

All access goes through a re-entrant lock: mutations replace whole vehicle
snapshots, so a reader sees either the old or the new entity, never a mix.
"""

from __future__ import annotations

import heapq
import logging
import math
import threading
from collections.abc import Callable, Collection

from core.spatial import haversine_distance, min_distance_to_box
from dispatch.models import GeoPoint, NearestVehicle, Vehicle, VehicleStatus

logger = logging.getLogger(__name__)

StatusFilter = Callable[[VehicleStatus], bool]
Cell = tuple[int, int]


def available_only(status: VehicleStatus) -> bool:
    return status is VehicleStatus.AVAILABLE


class SpatialIndex:
    """Geocell grid over the current vehicle positions."""

    def __init__(self, cell_size_degrees: float = 0.05) -> None:
        if not 0 < cell_size_degrees <= 90:
            msg = "cell_size_degrees must be in (0, 90]"
            raise ValueError(msg)
        self._cell_size = cell_size_degrees
        self._lock = threading.RLock()
        self._vehicles: dict[str, Vehicle] = {}
        self._cell_of: dict[str, Cell] = {}
        self._cells: dict[Cell, set[str]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._vehicles)

    def __contains__(self, vehicle_id: object) -> bool:
        with self._lock:
            return vehicle_id in self._vehicles

    def _cell_for(self, point: GeoPoint) -> Cell:
        size = self._cell_size
        col = math.floor(point.longitude / size)
        row = math.floor(point.latitude / size)
        return col, row

    def _cell_bounds(self, cell: Cell) -> tuple[float, float, float, float]:
        col, row = cell
        size = self._cell_size
        lon_min = max(-180.0, col * size)
        lat_min = max(-90.0, row * size)
        lon_max = min(180.0, (col + 1) * size)
        lat_max = min(90.0, (row + 1) * size)
        return lon_min, lat_min, lon_max, lat_max

    def upsert(self, vehicle: Vehicle) -> None:
        """Insert or replace a vehicle snapshot."""
        snapshot = vehicle.snapshot()
        cell = self._cell_for(snapshot.location)
        with self._lock:
            previous = self._cell_of.get(snapshot.id)
            if previous is not None and previous != cell:
                self._discard_from_cell(previous, snapshot.id)
            self._cells.setdefault(cell, set()).add(snapshot.id)
            self._cell_of[snapshot.id] = cell
            self._vehicles[snapshot.id] = snapshot

    def remove(self, vehicle_id: str) -> bool:
        with self._lock:
            cell = self._cell_of.pop(vehicle_id, None)
            if cell is None:
                return False
            self._discard_from_cell(cell, vehicle_id)
            del self._vehicles[vehicle_id]
            return True

    def _discard_from_cell(self, cell: Cell, vehicle_id: str) -> None:
        members = self._cells.get(cell)
        if members is None:
            return
        members.discard(vehicle_id)
        if not members:
            del self._cells[cell]

    def get(self, vehicle_id: str) -> Vehicle | None:
        with self._lock:
            vehicle = self._vehicles.get(vehicle_id)
            return vehicle.snapshot() if vehicle is not None else None

    def nearest(
        self,
        point: GeoPoint,
        status_filter: StatusFilter = available_only,
        *,
        exclude: Collection[str] = (),
    ) -> NearestVehicle | None:
        """
        Return the closest vehicle whose status passes ``status_filter``.

        Ties on distance resolve to the lowest vehicle id. Returns ``None``
        when the index is empty or nothing matches.
        """
        lon, lat = point.longitude, point.latitude
        with self._lock:
            frontier = [
                (min_distance_to_box(lon, lat, *self._cell_bounds(cell)), cell)
                for cell in self._cells
            ]
            heapq.heapify(frontier)

            best: tuple[float, str] | None = None
            while frontier:
                bound, cell = heapq.heappop(frontier)
                if best is not None and bound > best[0]:
                    break
                for vehicle_id in self._cells[cell]:
                    if vehicle_id in exclude:
                        continue
                    vehicle = self._vehicles[vehicle_id]
                    if not status_filter(vehicle.status):
                        continue
                    distance = haversine_distance(
                        lon,
                        lat,
                        vehicle.location.longitude,
                        vehicle.location.latitude,
                    )
                    candidate = (distance, vehicle_id)
                    if best is None or candidate < best:
                        best = candidate

            if best is None:
                return None
            return NearestVehicle(
                vehicle=self._vehicles[best[1]].snapshot(),
                distance_meters=best[0],
            )

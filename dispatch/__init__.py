"""
Dispatch package.

Holds the in-memory authority for vehicles, incidents and hospitals:
- models.py: domain types and status enums
- state.py: allowed status transitions
- spatial_index.py: nearest-vehicle search over a geocell grid
- routing.py: route/ETA computation with straight-line fallback
- store.py: entity maps and per-entity locks
- coordinator.py: every state-mutating operation
"""

from dispatch.coordinator import DispatchCoordinator
from dispatch.models import (
    DispatchResult,
    GeoPoint,
    Hospital,
    Incident,
    IncidentPriority,
    IncidentStatus,
    NearestVehicle,
    RouteResult,
    Vehicle,
    VehicleStatus,
)
from dispatch.routing import RoutingService
from dispatch.spatial_index import SpatialIndex
from dispatch.store import EntityStore

__all__ = [
    "DispatchCoordinator",
    "DispatchResult",
    "EntityStore",
    "GeoPoint",
    "Hospital",
    "Incident",
    "IncidentPriority",
    "IncidentStatus",
    "NearestVehicle",
    "RouteResult",
    "RoutingService",
    "SpatialIndex",
    "Vehicle",
    "VehicleStatus",
]

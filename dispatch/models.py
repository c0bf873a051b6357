"""Domain models for vehicles, incidents, hospitals and dispatch results.

Positions are stored as :class:`GeoPoint` values which are validated on
construction; statuses are string enums so they serialize as plain strings
for the event bus and the persistent store.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.exceptions import ValidationError
from core.spatial import point_geojson, validate_coordinate_pair


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


class _ParseableEnum(str, Enum):
    @classmethod
    def parse(cls, value: Any):
        """Coerce ``value`` (enum member or string) or raise :class:`ValidationError`."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if member.value == normalized:
                    return member
        allowed = [member.value for member in cls]
        msg = f"Unrecognized {cls.__name__} value: {value!r}"
        raise ValidationError(msg, {"value": value, "allowed": allowed})


class VehicleStatus(_ParseableEnum):
    """Operational status of a response vehicle."""

    AVAILABLE = "available"
    BUSY = "busy"
    DISPATCHED = "dispatched"


class IncidentStatus(_ParseableEnum):
    """Lifecycle status of an incident."""

    PENDING = "pending"
    DISPATCHED = "dispatched"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class IncidentPriority(_ParseableEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


TERMINAL_INCIDENT_STATUSES = frozenset(
    {IncidentStatus.RESOLVED, IncidentStatus.CANCELLED},
)


class GeoPoint(BaseModel):
    """A WGS84 position. Out-of-range values are rejected, never clamped."""

    model_config = ConfigDict(frozen=True)

    longitude: float
    latitude: float

    @field_validator("longitude")
    @classmethod
    def _check_longitude(cls, value: float) -> float:
        if not -180.0 <= value <= 180.0:
            msg = f"longitude {value} out of range [-180, 180]"
            raise ValueError(msg)
        return value

    @field_validator("latitude")
    @classmethod
    def _check_latitude(cls, value: float) -> float:
        if not -90.0 <= value <= 90.0:
            msg = f"latitude {value} out of range [-90, 90]"
            raise ValueError(msg)
        return value

    @classmethod
    def of(cls, longitude: Any, latitude: Any) -> GeoPoint:
        """Build a point, raising the engine's :class:`ValidationError` on bad input."""
        lon, lat = validate_coordinate_pair(longitude, latitude)
        return cls(longitude=lon, latitude=lat)

    def as_pair(self) -> list[float]:
        return [self.longitude, self.latitude]

    def to_geojson(self) -> dict[str, Any]:
        return point_geojson(self.longitude, self.latitude)


class Vehicle(BaseModel):
    """A response vehicle tracked by the engine."""

    id: str = Field(default_factory=new_id)
    status: VehicleStatus = VehicleStatus.AVAILABLE
    location: GeoPoint
    last_updated: datetime = Field(default_factory=utc_now)

    def snapshot(self) -> Vehicle:
        return self.model_copy(deep=True)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "location": self.location.to_geojson(),
            "last_updated": self.last_updated.isoformat(),
        }


class Incident(BaseModel):
    """An emergency incident awaiting or receiving a response."""

    id: str = Field(default_factory=new_id)
    address: str
    location: GeoPoint
    priority: IncidentPriority = IncidentPriority.MEDIUM
    notes: str | None = None
    status: IncidentStatus = IncidentStatus.PENDING
    assigned_vehicle_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_INCIDENT_STATUSES

    def snapshot(self) -> Incident:
        return self.model_copy(deep=True)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "address": self.address,
            "location": self.location.to_geojson(),
            "priority": self.priority.value,
            "notes": self.notes,
            "status": self.status.value,
            "assigned_vehicle_id": self.assigned_vehicle_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class Hospital(BaseModel):
    """A fixed point of interest used as an anchor for nearest-vehicle lookups."""

    id: str = Field(default_factory=new_id)
    name: str
    location: GeoPoint
    created_at: datetime = Field(default_factory=utc_now)


class RouteResult(BaseModel):
    distance_meters: float
    duration_seconds: float
    geometry: list[list[float]] = Field(default_factory=list)
    is_fallback: bool = False


class NearestVehicle(BaseModel):
    vehicle: Vehicle
    distance_meters: float


class DispatchResult(BaseModel):
    incident: Incident
    vehicle: Vehicle
    distance_meters: float
    eta_seconds: float
    route: RouteResult

    def to_payload(self) -> dict[str, Any]:
        return {
            "incident": self.incident.to_payload(),
            "assigned_vehicle": self.vehicle.to_payload(),
            "distance": self.distance_meters,
            "eta": self.eta_seconds,
        }

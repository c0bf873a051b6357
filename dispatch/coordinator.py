"""
Dispatch coordinator: the only component that mutates incident and vehicle
status.

Every state transition follows the same shape:

1. validate input and look up the entities (no locks needed);
2. take the incident lock and/or the vehicle lock (always in that order);
3. re-check preconditions and commit the new snapshots synchronously, with
   no suspension point between the check and the write, then queue the
   state-change events;
4. persist the committed snapshots while still holding the locks, shielded
   from request cancellation;
5. after releasing the locks, invalidate cache entries.

Because step 3 never awaits, a cancelled request either committed the whole
transition or none of it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from core.cache import nearest_hospital_anchor, nearest_point_anchor
from core.constants import MAX_CLAIM_ATTEMPTS
from core.exceptions import (
    InvalidStateError,
    NoCapacityError,
    NotFoundError,
    ValidationError,
)
from dispatch.models import (
    TERMINAL_INCIDENT_STATUSES,
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
    utc_now,
)
from dispatch.spatial_index import StatusFilter, available_only
from dispatch.state import check_incident_transition, check_vehicle_transition
from dispatch.store import EntityStore
from events.dispatch_events import (
    INCIDENT_CREATED,
    INCIDENT_DISPATCHED,
    INCIDENT_STATUS_CHANGED,
    VEHICLE_POSITION_CHANGED,
    VEHICLE_STATUS_CHANGED,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from core.cache import DispatchCache
    from db.repository import DispatchRepository
    from dispatch.routing import RoutingService
    from dispatch.spatial_index import SpatialIndex
    from events.notifier import EventNotifier

logger = logging.getLogger(__name__)

PointLike = GeoPoint | tuple[float, float] | list[float]


def as_point(value: PointLike) -> GeoPoint:
    """Accept a GeoPoint or a ``(lon, lat)`` pair; reject anything out of range."""
    if isinstance(value, GeoPoint):
        return value
    if not isinstance(value, (tuple, list)) or len(value) != 2:
        msg = "A point must be a GeoPoint or a (longitude, latitude) pair"
        raise ValidationError(msg, {"value": value})
    return GeoPoint.of(value[0], value[1])


def vehicle_version(vehicle: Vehicle) -> str:
    return vehicle.last_updated.isoformat()


def _next_timestamp(previous: datetime) -> datetime:
    # Strictly increasing per entity so it can double as a version tag.
    now = utc_now()
    if now <= previous:
        return previous + timedelta(microseconds=1)
    return now


class DispatchCoordinator:
    def __init__(
        self,
        *,
        index: SpatialIndex,
        cache: DispatchCache,
        routing: RoutingService,
        notifier: EventNotifier,
        store: EntityStore | None = None,
        repository: DispatchRepository | None = None,
        max_claim_attempts: int = MAX_CLAIM_ATTEMPTS,
    ) -> None:
        self._index = index
        self._cache = cache
        self._routing = routing
        self._notifier = notifier
        self._store = store or EntityStore()
        self._repository = repository
        self._max_claim_attempts = max_claim_attempts

    # ------------------------------------------------------------------
    # Startup and registration
    # ------------------------------------------------------------------

    async def load_from_repository(self) -> None:
        """Hydrate the store and the spatial index from the persistent store."""
        if self._repository is None:
            return
        vehicles = await self._repository.load_vehicles()
        incidents = await self._repository.load_incidents()
        hospitals = await self._repository.load_hospitals()

        for vehicle in vehicles:
            self._store.vehicles[vehicle.id] = vehicle
            self._index.upsert(vehicle)
        for incident in incidents:
            self._store.incidents[incident.id] = incident
        for hospital in hospitals:
            self._store.hospitals[hospital.id] = hospital
        self._store.rebuild_assignments()

        for vehicle in vehicles:
            if (
                vehicle.status is VehicleStatus.DISPATCHED
                and self._store.active_incident_for(vehicle.id) is None
            ):
                logger.warning(
                    "Vehicle %s is dispatched but no active incident references it",
                    vehicle.id,
                )

        # Entries left by a previous process can no longer be served.
        await self._cache.invalidate("nearest_vehicle:*")
        logger.info(
            "Loaded %d vehicle(s), %d incident(s), %d hospital(s)",
            len(vehicles),
            len(incidents),
            len(hospitals),
        )

    async def register_vehicle(
        self,
        location: PointLike,
        *,
        vehicle_id: str | None = None,
        status: VehicleStatus | str = VehicleStatus.AVAILABLE,
    ) -> Vehicle:
        point = as_point(location)
        parsed_status = VehicleStatus.parse(status)
        if parsed_status is VehicleStatus.DISPATCHED:
            msg = "A vehicle cannot be registered as dispatched"
            raise ValidationError(msg, {"status": parsed_status.value})

        fields: dict[str, Any] = {"location": point, "status": parsed_status}
        if vehicle_id is not None:
            fields["id"] = vehicle_id
        vehicle = Vehicle(**fields)

        async with self._store.locked(vehicle_id=vehicle.id):
            if vehicle.id in self._store.vehicles:
                msg = f"Vehicle {vehicle.id} is already registered"
                raise ValidationError(msg, {"vehicle_id": vehicle.id})
            self._store.vehicles[vehicle.id] = vehicle
            self._index.upsert(vehicle)
            await asyncio.shield(self._persist(vehicle=vehicle))

        if parsed_status is VehicleStatus.AVAILABLE:
            await self._cache.invalidate_vehicle(vehicle.id, widen=True)
        logger.info("Registered vehicle %s (%s)", vehicle.id, parsed_status.value)
        return vehicle.snapshot()

    async def register_hospital(
        self,
        name: str,
        location: PointLike,
        *,
        hospital_id: str | None = None,
    ) -> Hospital:
        if not isinstance(name, str) or not name.strip():
            msg = "Hospital name must be a non-empty string"
            raise ValidationError(msg)
        fields: dict[str, Any] = {"name": name.strip(), "location": as_point(location)}
        if hospital_id is not None:
            fields["id"] = hospital_id
        hospital = Hospital(**fields)
        if hospital.id in self._store.hospitals:
            msg = f"Hospital {hospital.id} is already registered"
            raise ValidationError(msg, {"hospital_id": hospital.id})
        self._store.hospitals[hospital.id] = hospital
        await asyncio.shield(self._persist(hospital=hospital))
        return hospital.model_copy()

    async def create_incident(
        self,
        address: str,
        location: PointLike,
        *,
        priority: IncidentPriority | str = IncidentPriority.MEDIUM,
        notes: str | None = None,
    ) -> Incident:
        if not isinstance(address, str) or not address.strip():
            msg = "Incident address must be a non-empty string"
            raise ValidationError(msg)
        incident = Incident(
            address=address.strip(),
            location=as_point(location),
            priority=IncidentPriority.parse(priority),
            notes=notes or None,
        )
        async with self._store.locked(incident_id=incident.id):
            self._store.incidents[incident.id] = incident
            self._notifier.notify(INCIDENT_CREATED, incident.to_payload())
            await asyncio.shield(self._persist(incident=incident))
        logger.info(
            "Created incident %s (%s) at %s",
            incident.id,
            incident.priority.value,
            incident.address,
        )
        return incident.snapshot()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_vehicle(self, vehicle_id: str) -> Vehicle:
        return self._require_vehicle(vehicle_id).snapshot()

    def get_incident(self, incident_id: str) -> Incident:
        return self._require_incident(incident_id).snapshot()

    def get_hospital(self, hospital_id: str) -> Hospital:
        return self._require_hospital(hospital_id).model_copy()

    def list_vehicles(self) -> list[Vehicle]:
        vehicles = sorted(
            reversed(self._store.vehicles.values()),
            key=lambda v: v.last_updated,
            reverse=True,
        )
        return [v.snapshot() for v in vehicles]

    def list_incidents(self) -> list[Incident]:
        incidents = sorted(
            reversed(self._store.incidents.values()),
            key=lambda i: i.created_at,
            reverse=True,
        )
        return [i.snapshot() for i in incidents]

    def list_hospitals(self) -> list[Hospital]:
        hospitals = sorted(self._store.hospitals.values(), key=lambda h: h.created_at)
        return [h.model_copy() for h in hospitals]

    async def find_nearest_vehicle(
        self,
        point: PointLike,
        status_filter: StatusFilter = available_only,
    ) -> NearestVehicle | None:
        """Nearest vehicle passing ``status_filter``; cached for the default filter."""
        location = as_point(point)
        if status_filter is not available_only:
            return self._index.nearest(location, status_filter)
        anchor = nearest_point_anchor(location.longitude, location.latitude)
        return await self._nearest_available(location, anchor)

    async def find_nearest_vehicle_to_hospital(self, hospital_id: str) -> NearestVehicle | None:
        hospital = self._require_hospital(hospital_id)
        return await self._nearest_available(
            hospital.location,
            nearest_hospital_anchor(hospital.id),
        )

    async def route(self, origin: PointLike, destination: PointLike) -> RouteResult:
        return await self._routing.route(as_point(origin), as_point(destination))

    async def _nearest_available(self, point: GeoPoint, anchor: str) -> NearestVehicle | None:
        entry = await self._cache.get_nearest(anchor)
        if entry is not None:
            vehicle = self._store.vehicles.get(str(entry["vehicle_id"]))
            if (
                vehicle is not None
                and vehicle.status is VehicleStatus.AVAILABLE
                and vehicle_version(vehicle) == entry.get("vehicle_version")
            ):
                try:
                    distance = float(entry["distance_meters"])
                except (TypeError, ValueError, KeyError):
                    distance = None
                if distance is not None:
                    return NearestVehicle(vehicle=vehicle.snapshot(), distance_meters=distance)
            logger.debug("Discarding stale nearest-vehicle entry for %s", anchor)
            await self._cache.drop_nearest(anchor)

        generation = self._cache.generation
        match = self._index.nearest(point, available_only)
        if match is not None:
            await self._cache.put_nearest(
                anchor,
                vehicle_id=match.vehicle.id,
                distance_meters=match.distance_meters,
                vehicle_version=vehicle_version(match.vehicle),
                generation=generation,
            )
        return match

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, incident_id: str) -> DispatchResult:
        """Claim the nearest available vehicle for a pending incident."""
        incident = self._require_incident(incident_id)
        if incident.status is not IncidentStatus.PENDING:
            msg = f"Incident {incident_id} is {incident.status.value}, not pending"
            raise InvalidStateError(msg, {"status": incident.status.value})

        location = incident.location
        anchor = nearest_point_anchor(location.longitude, location.latitude)
        lost: set[str] = set()
        claimed: tuple[Vehicle, Incident] | None = None

        for attempt in range(1, self._max_claim_attempts + 1):
            if attempt == 1:
                candidate = await self._nearest_available(location, anchor)
            else:
                candidate = self._index.nearest(location, available_only, exclude=lost)
            if candidate is None:
                break

            vehicle_id = candidate.vehicle.id
            async with self._store.locked(incident_id=incident_id, vehicle_id=vehicle_id):
                claimed = self._commit_claim(incident_id, vehicle_id)
                if claimed is not None:
                    vehicle, incident = claimed
                    self._notifier.notify(VEHICLE_STATUS_CHANGED, vehicle.to_payload())
                    self._notifier.notify(INCIDENT_DISPATCHED, incident.to_payload())
                    await asyncio.shield(self._persist(vehicle=vehicle, incident=incident))
            if claimed is not None:
                break

            lost.add(vehicle_id)
            logger.warning(
                "Vehicle %s was claimed before incident %s could commit (attempt %d/%d)",
                vehicle_id,
                incident_id,
                attempt,
                self._max_claim_attempts,
            )
            await self._cache.invalidate_vehicle(vehicle_id)

        if claimed is None:
            msg = f"No available vehicle for incident {incident_id}"
            raise NoCapacityError(msg, {"incident_id": incident_id, "lost_claims": len(lost)})

        vehicle, incident = claimed
        route = await self._routing.route(vehicle.location, incident.location)
        await self._cache.invalidate_vehicle(vehicle.id)

        logger.info(
            "Dispatched vehicle %s to incident %s (%.0f m, ETA %.0f s%s)",
            vehicle.id,
            incident.id,
            route.distance_meters,
            route.duration_seconds,
            ", straight-line" if route.is_fallback else "",
        )
        return DispatchResult(
            incident=incident,
            vehicle=vehicle,
            distance_meters=route.distance_meters,
            eta_seconds=route.duration_seconds,
            route=route,
        )

    def _commit_claim(self, incident_id: str, vehicle_id: str) -> tuple[Vehicle, Incident] | None:
        """
        Check-and-set for one claim. Caller holds both locks.

        Returns the committed snapshots, or ``None`` when the vehicle was
        taken in the meantime. Raises if the incident itself moved on.
        """
        incident = self._require_incident(incident_id)
        if incident.status is not IncidentStatus.PENDING:
            msg = f"Incident {incident_id} is {incident.status.value}, not pending"
            raise InvalidStateError(msg, {"status": incident.status.value})

        vehicle = self._store.vehicles.get(vehicle_id)
        if (
            vehicle is None
            or vehicle.status is not VehicleStatus.AVAILABLE
            or self._store.active_incident_for(vehicle_id) is not None
        ):
            return None

        timestamp = _next_timestamp(vehicle.last_updated)
        new_vehicle = vehicle.model_copy(
            update={"status": VehicleStatus.DISPATCHED, "last_updated": timestamp},
        )
        new_incident = incident.model_copy(
            update={
                "status": IncidentStatus.DISPATCHED,
                "assigned_vehicle_id": vehicle_id,
                "updated_at": _next_timestamp(incident.updated_at),
            },
        )
        self._store.vehicles[vehicle_id] = new_vehicle
        self._store.incidents[incident_id] = new_incident
        self._store.assign(vehicle_id, incident_id)
        self._index.upsert(new_vehicle)
        return new_vehicle.snapshot(), new_incident.snapshot()

    # ------------------------------------------------------------------
    # Status updates
    # ------------------------------------------------------------------

    async def update_incident_status(
        self,
        incident_id: str,
        new_status: IncidentStatus | str,
    ) -> Incident:
        """
        Move an incident along its lifecycle.

        Reaching RESOLVED or CANCELLED releases the assigned vehicle back to
        AVAILABLE in the same critical section.
        """
        status = IncidentStatus.parse(new_status)
        released: Vehicle | None = None

        try:
            async with self._store.incident_lock(incident_id):
                incident = self._require_incident(incident_id)
                check_incident_transition(incident.status, status)

                vehicle_id = None
                if status in TERMINAL_INCIDENT_STATUSES and incident.assigned_vehicle_id:
                    vehicle_id = incident.assigned_vehicle_id

                async with self._store.locked(vehicle_id=vehicle_id):
                    updated, released = self._commit_incident_status(incident, status)
                    self._notifier.notify(INCIDENT_STATUS_CHANGED, updated.to_payload())
                    if released is not None:
                        self._notifier.notify(VEHICLE_STATUS_CHANGED, released.to_payload())
                    await asyncio.shield(self._persist(vehicle=released, incident=updated))
        finally:
            # A released vehicle must retire cached answers even if the caller
            # was cancelled after the commit; the widened call does no I/O.
            if released is not None:
                await self._cache.invalidate_vehicle(released.id, widen=True)

        if released is not None:
            logger.info(
                "Incident %s %s; vehicle %s released",
                incident_id,
                status.value,
                released.id,
            )
        return updated

    def _commit_incident_status(
        self,
        incident: Incident,
        status: IncidentStatus,
    ) -> tuple[Incident, Vehicle | None]:
        new_incident = incident.model_copy(
            update={"status": status, "updated_at": _next_timestamp(incident.updated_at)},
        )

        new_vehicle = None
        vehicle_id = incident.assigned_vehicle_id
        if status in TERMINAL_INCIDENT_STATUSES and vehicle_id:
            vehicle = self._store.vehicles.get(vehicle_id)
            if vehicle is None:
                logger.warning(
                    "Incident %s references unknown vehicle %s",
                    incident.id,
                    vehicle_id,
                )
            elif self._store.assignments.get(vehicle_id) != incident.id:
                logger.warning(
                    "Vehicle %s is not held by incident %s; leaving it untouched",
                    vehicle_id,
                    incident.id,
                )
            else:
                new_vehicle = vehicle.model_copy(
                    update={
                        "status": VehicleStatus.AVAILABLE,
                        "last_updated": _next_timestamp(vehicle.last_updated),
                    },
                )

        self._store.incidents[incident.id] = new_incident
        if new_vehicle is not None:
            self._store.vehicles[new_vehicle.id] = new_vehicle
            self._store.release(new_vehicle.id)
            self._index.upsert(new_vehicle)
            return new_incident.snapshot(), new_vehicle.snapshot()
        return new_incident.snapshot(), None

    async def update_vehicle_position(self, vehicle_id: str, point: PointLike) -> Vehicle:
        location = as_point(point)

        async with self._store.locked(vehicle_id=vehicle_id):
            vehicle = self._require_vehicle(vehicle_id)
            updated = vehicle.model_copy(
                update={
                    "location": location,
                    "last_updated": _next_timestamp(vehicle.last_updated),
                },
            )
            self._store.vehicles[vehicle_id] = updated
            self._index.upsert(updated)
            self._notifier.notify(VEHICLE_POSITION_CHANGED, updated.to_payload())
            await asyncio.shield(self._persist(vehicle=updated))

        await self._cache.invalidate_vehicle(
            vehicle_id,
            widen=updated.status is VehicleStatus.AVAILABLE,
        )
        return updated.snapshot()

    async def update_vehicle_status(
        self,
        vehicle_id: str,
        status: VehicleStatus | str,
    ) -> Vehicle:
        new_status = VehicleStatus.parse(status)

        async with self._store.locked(vehicle_id=vehicle_id):
            vehicle = self._require_vehicle(vehicle_id)
            check_vehicle_transition(
                vehicle.status,
                new_status,
                has_active_incident=self._store.active_incident_for(vehicle_id) is not None,
            )
            updated = vehicle.model_copy(
                update={
                    "status": new_status,
                    "last_updated": _next_timestamp(vehicle.last_updated),
                },
            )
            self._store.vehicles[vehicle_id] = updated
            self._index.upsert(updated)
            self._notifier.notify(VEHICLE_STATUS_CHANGED, updated.to_payload())
            await asyncio.shield(self._persist(vehicle=updated))

        await self._cache.invalidate_vehicle(
            vehicle_id,
            widen=new_status is VehicleStatus.AVAILABLE,
        )
        return updated.snapshot()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_vehicle(self, vehicle_id: str) -> Vehicle:
        vehicle = self._store.vehicles.get(vehicle_id)
        if vehicle is None:
            msg = f"Vehicle {vehicle_id} not found"
            raise NotFoundError(msg, {"vehicle_id": vehicle_id})
        return vehicle

    def _require_incident(self, incident_id: str) -> Incident:
        incident = self._store.incidents.get(incident_id)
        if incident is None:
            msg = f"Incident {incident_id} not found"
            raise NotFoundError(msg, {"incident_id": incident_id})
        return incident

    def _require_hospital(self, hospital_id: str) -> Hospital:
        hospital = self._store.hospitals.get(hospital_id)
        if hospital is None:
            msg = f"Hospital {hospital_id} not found"
            raise NotFoundError(msg, {"hospital_id": hospital_id})
        return hospital

    async def _persist(
        self,
        *,
        vehicle: Vehicle | None = None,
        incident: Incident | None = None,
        hospital: Hospital | None = None,
    ) -> None:
        """Write committed snapshots to the repository; failures are logged only."""
        if self._repository is None:
            return
        saves: Sequence[tuple[str, Any]] = [
            (kind, entity)
            for kind, entity in (
                ("vehicle", vehicle),
                ("incident", incident),
                ("hospital", hospital),
            )
            if entity is not None
        ]
        for kind, entity in saves:
            try:
                await getattr(self._repository, f"save_{kind}")(entity)
            except Exception:
                logger.exception("Failed to persist %s %s", kind, entity.id)

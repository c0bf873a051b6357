from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime

import pytest
from redis_fakes import FakeRedis, RecordingBus

from core.cache import DispatchCache
from core.exceptions import (
    InvalidStateError,
    NoCapacityError,
    NotFoundError,
    ValidationError,
)
from dispatch.coordinator import DispatchCoordinator
from dispatch.models import (
    DispatchResult,
    GeoPoint,
    Incident,
    IncidentStatus,
    Vehicle,
    VehicleStatus,
)
from dispatch.routing import RoutingService
from dispatch.spatial_index import SpatialIndex
from events.dispatch_events import (
    INCIDENT_CREATED,
    INCIDENT_DISPATCHED,
    INCIDENT_STATUS_CHANGED,
    VEHICLE_POSITION_CHANGED,
    VEHICLE_STATUS_CHANGED,
)
from events.notifier import EventNotifier


class MemoryRepository:
    def __init__(self, *, vehicles=(), incidents=(), hospitals=(), fail=False) -> None:
        self.vehicles = {v.id: v for v in vehicles}
        self.incidents = {i.id: i for i in incidents}
        self.hospitals = {h.id: h for h in hospitals}
        self.fail = fail
        self.saves: list[tuple[str, str]] = []

    async def load_vehicles(self):
        return list(self.vehicles.values())

    async def load_incidents(self):
        return list(self.incidents.values())

    async def load_hospitals(self):
        return list(self.hospitals.values())

    async def _save(self, kind, store, entity):
        if self.fail:
            msg = "mongo down"
            raise ConnectionError(msg)
        self.saves.append((kind, entity.id))
        store[entity.id] = entity

    async def save_vehicle(self, vehicle):
        await self._save("vehicle", self.vehicles, vehicle)

    async def save_incident(self, incident):
        await self._save("incident", self.incidents, incident)

    async def save_hospital(self, hospital):
        await self._save("hospital", self.hospitals, hospital)


def _build(redis=None, repository=None, bus=None) -> DispatchCoordinator:
    cache = DispatchCache(redis, op_timeout=0.2)
    return DispatchCoordinator(
        index=SpatialIndex(0.05),
        cache=cache,
        routing=RoutingService(None, cache),
        notifier=EventNotifier(bus),
        repository=repository,
    )


@pytest.mark.asyncio
async def test_dispatch_scenario(
    coordinator: DispatchCoordinator,
    notifier: EventNotifier,
    bus: RecordingBus,
) -> None:
    await coordinator.register_vehicle((3.35, 6.60), vehicle_id="V1")
    incident = await coordinator.create_incident("12 Marina Road", (3.345, 6.597))

    result = await coordinator.dispatch(incident.id)

    assert isinstance(result, DispatchResult)
    assert result.vehicle.id == "V1"
    assert result.vehicle.status is VehicleStatus.DISPATCHED
    assert result.incident.status is IncidentStatus.DISPATCHED
    assert result.incident.assigned_vehicle_id == "V1"
    assert result.distance_meters > 0
    assert result.eta_seconds > 0
    assert coordinator.get_vehicle("V1").status is VehicleStatus.DISPATCHED
    assert coordinator.get_incident(incident.id).assigned_vehicle_id == "V1"

    with pytest.raises(InvalidStateError):
        await coordinator.dispatch(incident.id)

    await notifier.flush()
    assert bus.names() == [INCIDENT_CREATED, VEHICLE_STATUS_CHANGED, INCIDENT_DISPATCHED]


@pytest.mark.asyncio
async def test_dispatch_picks_nearest_available(coordinator: DispatchCoordinator) -> None:
    await coordinator.register_vehicle((3.40, 6.65), vehicle_id="far")
    await coordinator.register_vehicle((3.346, 6.598), vehicle_id="busy", status="busy")
    await coordinator.register_vehicle((3.36, 6.61), vehicle_id="near")
    incident = await coordinator.create_incident("Ikoyi", (3.345, 6.597))

    result = await coordinator.dispatch(incident.id)

    assert result.vehicle.id == "near"


@pytest.mark.asyncio
async def test_dispatch_without_vehicles_raises_no_capacity(coordinator: DispatchCoordinator) -> None:
    incident = await coordinator.create_incident("Lekki", (3.5, 6.4))

    with pytest.raises(NoCapacityError):
        await coordinator.dispatch(incident.id)

    assert coordinator.get_incident(incident.id).status is IncidentStatus.PENDING


@pytest.mark.asyncio
async def test_dispatch_unknown_incident(coordinator: DispatchCoordinator) -> None:
    with pytest.raises(NotFoundError):
        await coordinator.dispatch("missing")


@pytest.mark.asyncio
async def test_concurrent_dispatch_never_double_assigns(coordinator: DispatchCoordinator) -> None:
    await coordinator.register_vehicle((3.35, 6.60), vehicle_id="V1")
    incidents = [
        await coordinator.create_incident(f"Call {i}", (3.345 + i * 0.001, 6.597))
        for i in range(5)
    ]

    results = await asyncio.gather(
        *(coordinator.dispatch(incident.id) for incident in incidents),
        return_exceptions=True,
    )

    successes = [r for r in results if isinstance(r, DispatchResult)]
    failures = [r for r in results if isinstance(r, NoCapacityError)]
    assert len(successes) == 1
    assert len(failures) == 4
    assigned = [i for i in coordinator.list_incidents() if i.assigned_vehicle_id == "V1"]
    assert len(assigned) == 1
    assert assigned[0].status is IncidentStatus.DISPATCHED


@pytest.mark.asyncio
async def test_concurrent_dispatch_of_one_incident_claims_one_vehicle(
    coordinator: DispatchCoordinator,
) -> None:
    await coordinator.register_vehicle((3.35, 6.60), vehicle_id="V1")
    await coordinator.register_vehicle((3.36, 6.61), vehicle_id="V2")
    incident = await coordinator.create_incident("Yaba", (3.345, 6.597))

    results = await asyncio.gather(
        coordinator.dispatch(incident.id),
        coordinator.dispatch(incident.id),
        return_exceptions=True,
    )

    assert sum(isinstance(r, DispatchResult) for r in results) == 1
    assert sum(isinstance(r, InvalidStateError) for r in results) == 1
    statuses = sorted(v.status.value for v in coordinator.list_vehicles())
    assert statuses == ["available", "dispatched"]


@pytest.mark.asyncio
@pytest.mark.parametrize("final", [IncidentStatus.RESOLVED, IncidentStatus.CANCELLED])
async def test_terminal_status_releases_vehicle(
    coordinator: DispatchCoordinator,
    notifier: EventNotifier,
    bus: RecordingBus,
    final: IncidentStatus,
) -> None:
    await coordinator.register_vehicle((3.35, 6.60), vehicle_id="V1")
    incident = await coordinator.create_incident("Surulere", (3.345, 6.597))
    await coordinator.dispatch(incident.id)
    await coordinator.update_incident_status(incident.id, "in_progress")

    updated = await coordinator.update_incident_status(incident.id, final)

    assert updated.status is final
    assert coordinator.get_vehicle("V1").status is VehicleStatus.AVAILABLE
    nearest = await coordinator.find_nearest_vehicle((3.345, 6.597))
    assert nearest.vehicle.id == "V1"

    await notifier.flush()
    assert bus.names()[-2:] == [INCIDENT_STATUS_CHANGED, VEHICLE_STATUS_CHANGED]

    other = await coordinator.create_incident("Ajah", (3.346, 6.598))
    assert (await coordinator.dispatch(other.id)).vehicle.id == "V1"


@pytest.mark.asyncio
async def test_cancel_pending_incident(coordinator: DispatchCoordinator) -> None:
    incident = await coordinator.create_incident("Ebute Metta", (3.38, 6.48))

    updated = await coordinator.update_incident_status(incident.id, "CANCELLED")

    assert updated.status is IncidentStatus.CANCELLED
    with pytest.raises(InvalidStateError):
        await coordinator.dispatch(incident.id)


@pytest.mark.asyncio
async def test_illegal_incident_transitions(coordinator: DispatchCoordinator) -> None:
    incident = await coordinator.create_incident("Oshodi", (3.34, 6.55))

    with pytest.raises(InvalidStateError):
        await coordinator.update_incident_status(incident.id, IncidentStatus.DISPATCHED)
    with pytest.raises(InvalidStateError):
        await coordinator.update_incident_status(incident.id, IncidentStatus.RESOLVED)
    with pytest.raises(ValidationError):
        await coordinator.update_incident_status(incident.id, "closed")
    with pytest.raises(NotFoundError):
        await coordinator.update_incident_status("missing", IncidentStatus.CANCELLED)

    await coordinator.update_incident_status(incident.id, IncidentStatus.CANCELLED)
    with pytest.raises(InvalidStateError):
        await coordinator.update_incident_status(incident.id, IncidentStatus.PENDING)


@pytest.mark.asyncio
async def test_vehicle_status_rules(coordinator: DispatchCoordinator) -> None:
    await coordinator.register_vehicle((3.35, 6.60), vehicle_id="V1")
    incident = await coordinator.create_incident("Apapa", (3.345, 6.597))

    with pytest.raises(InvalidStateError):
        await coordinator.update_vehicle_status("V1", "dispatched")

    await coordinator.dispatch(incident.id)
    on_scene = await coordinator.update_vehicle_status("V1", VehicleStatus.BUSY)
    assert on_scene.status is VehicleStatus.BUSY

    with pytest.raises(InvalidStateError):
        await coordinator.update_vehicle_status("V1", VehicleStatus.AVAILABLE)

    await coordinator.update_incident_status(incident.id, IncidentStatus.IN_PROGRESS)
    await coordinator.update_incident_status(incident.id, IncidentStatus.RESOLVED)
    assert coordinator.get_vehicle("V1").status is VehicleStatus.AVAILABLE


@pytest.mark.asyncio
async def test_out_of_range_coordinates_leave_state_unchanged(
    coordinator: DispatchCoordinator,
) -> None:
    vehicle = await coordinator.register_vehicle((3.35, 6.60), vehicle_id="V1")

    with pytest.raises(ValidationError):
        await coordinator.update_vehicle_position("V1", (181, 0))
    with pytest.raises(ValidationError):
        await coordinator.update_vehicle_position("V1", (0, -91))
    with pytest.raises(ValidationError):
        await coordinator.create_incident("Nowhere", (0, -91))
    with pytest.raises(ValidationError):
        await coordinator.find_nearest_vehicle((181, 0))

    assert coordinator.get_vehicle("V1") == vehicle
    assert coordinator.list_incidents() == []


@pytest.mark.asyncio
async def test_position_update_moves_vehicle(
    coordinator: DispatchCoordinator,
    notifier: EventNotifier,
    bus: RecordingBus,
) -> None:
    await coordinator.register_vehicle((3.35, 6.60), vehicle_id="V1")

    moved = await coordinator.update_vehicle_position("V1", GeoPoint(longitude=3.5, latitude=6.5))

    assert moved.location == GeoPoint(longitude=3.5, latitude=6.5)
    nearest = await coordinator.find_nearest_vehicle((3.5, 6.5))
    assert nearest.distance_meters == pytest.approx(0.0)
    await notifier.flush()
    assert bus.names() == [VEHICLE_POSITION_CHANGED]


@pytest.mark.asyncio
async def test_cached_answer_follows_vehicle_moves(
    coordinator: DispatchCoordinator,
    fake_redis: FakeRedis,
) -> None:
    await coordinator.register_vehicle((3.36, 6.61), vehicle_id="V1")
    await coordinator.register_vehicle((3.50, 6.70), vehicle_id="V2")
    query = (3.345, 6.597)

    assert (await coordinator.find_nearest_vehicle(query)).vehicle.id == "V1"
    assert fake_redis.keys_with_prefix("nearest_vehicle:point:") != []

    await coordinator.update_vehicle_position("V2", (3.3451, 6.5971))

    assert (await coordinator.find_nearest_vehicle(query)).vehicle.id == "V2"


@pytest.mark.asyncio
async def test_cached_answer_rejected_when_invalidation_was_missed(
    coordinator: DispatchCoordinator,
    fake_redis: FakeRedis,
) -> None:
    await coordinator.register_vehicle((3.36, 6.61), vehicle_id="V1")
    await coordinator.register_vehicle((3.50, 6.70), vehicle_id="V2")
    query = (3.345, 6.597)
    assert (await coordinator.find_nearest_vehicle(query)).vehicle.id == "V1"

    fake_redis.fail = True
    await coordinator.update_vehicle_status("V1", VehicleStatus.BUSY)
    fake_redis.fail = False

    nearest = await coordinator.find_nearest_vehicle(query)

    assert nearest.vehicle.id == "V2"


@pytest.mark.asyncio
async def test_dispatch_with_cache_backend_down() -> None:
    coordinator = _build(redis=FakeRedis(fail=True))
    await coordinator.register_vehicle((3.35, 6.60), vehicle_id="V1")
    incident = await coordinator.create_incident("Festac", (3.345, 6.597))

    result = await coordinator.dispatch(incident.id)

    assert result.vehicle.id == "V1"


@pytest.mark.asyncio
async def test_custom_status_filter_bypasses_cache(
    coordinator: DispatchCoordinator,
    fake_redis: FakeRedis,
) -> None:
    await coordinator.register_vehicle((3.35, 6.60), vehicle_id="V1", status="busy")

    assert await coordinator.find_nearest_vehicle((3.345, 6.597)) is None
    anything = await coordinator.find_nearest_vehicle((3.345, 6.597), lambda _s: True)

    assert anything.vehicle.id == "V1"


@pytest.mark.asyncio
async def test_nearest_vehicle_to_hospital(coordinator: DispatchCoordinator) -> None:
    hospital = await coordinator.register_hospital(
        "General Hospital",
        (3.40, 6.45),
        hospital_id="H1",
    )
    await coordinator.register_vehicle((3.41, 6.46), vehicle_id="close")
    await coordinator.register_vehicle((3.60, 6.60), vehicle_id="distant")

    first = await coordinator.find_nearest_vehicle_to_hospital(hospital.id)
    cached = await coordinator.find_nearest_vehicle_to_hospital(hospital.id)

    assert first.vehicle.id == "close"
    assert cached.vehicle.id == "close"
    assert cached.distance_meters == pytest.approx(first.distance_meters)
    with pytest.raises(NotFoundError):
        await coordinator.find_nearest_vehicle_to_hospital("missing")


@pytest.mark.asyncio
async def test_registration_validation(coordinator: DispatchCoordinator) -> None:
    await coordinator.register_vehicle((3.35, 6.60), vehicle_id="V1")

    with pytest.raises(ValidationError):
        await coordinator.register_vehicle((3.35, 6.60), vehicle_id="V1")
    with pytest.raises(ValidationError):
        await coordinator.register_vehicle((3.35, 6.60), status="dispatched")
    with pytest.raises(ValidationError):
        await coordinator.register_hospital("", (3.35, 6.60))
    with pytest.raises(ValidationError):
        await coordinator.create_incident("   ", (3.35, 6.60))
    with pytest.raises(ValidationError):
        await coordinator.create_incident("Somewhere", (3.35, 6.60), priority="urgent")


@pytest.mark.asyncio
async def test_listing_order(coordinator: DispatchCoordinator) -> None:
    first = await coordinator.create_incident("First", (3.30, 6.50))
    second = await coordinator.create_incident("Second", (3.31, 6.51))
    await coordinator.register_hospital("A", (3.3, 6.5), hospital_id="A")
    await coordinator.register_hospital("B", (3.3, 6.5), hospital_id="B")
    await coordinator.register_vehicle((3.35, 6.60), vehicle_id="V1")
    await coordinator.register_vehicle((3.36, 6.60), vehicle_id="V2")
    await coordinator.update_vehicle_position("V1", (3.37, 6.60))

    assert [i.id for i in coordinator.list_incidents()] == [second.id, first.id]
    assert [h.id for h in coordinator.list_hospitals()] == ["A", "B"]
    assert [v.id for v in coordinator.list_vehicles()] == ["V1", "V2"]


@pytest.mark.asyncio
async def test_returned_entities_are_snapshots(coordinator: DispatchCoordinator) -> None:
    await coordinator.register_vehicle((3.35, 6.60), vehicle_id="V1")

    snapshot = coordinator.get_vehicle("V1")
    snapshot.status = VehicleStatus.BUSY

    assert coordinator.get_vehicle("V1").status is VehicleStatus.AVAILABLE


@pytest.mark.asyncio
async def test_committed_state_is_persisted() -> None:
    repository = MemoryRepository()
    coordinator = _build(repository=repository)
    await coordinator.register_vehicle((3.35, 6.60), vehicle_id="V1")
    incident = await coordinator.create_incident("Marina", (3.345, 6.597))

    await coordinator.dispatch(incident.id)

    assert repository.vehicles["V1"].status is VehicleStatus.DISPATCHED
    assert repository.incidents[incident.id].assigned_vehicle_id == "V1"
    assert ("vehicle", "V1") in repository.saves


@pytest.mark.asyncio
async def test_persistence_failure_keeps_in_memory_state() -> None:
    coordinator = _build(repository=MemoryRepository(fail=True))
    await coordinator.register_vehicle((3.35, 6.60), vehicle_id="V1")
    incident = await coordinator.create_incident("Marina", (3.345, 6.597))

    result = await coordinator.dispatch(incident.id)

    assert result.vehicle.id == "V1"
    assert coordinator.get_incident(incident.id).status is IncidentStatus.DISPATCHED


@pytest.mark.asyncio
async def test_load_from_repository_restores_assignments() -> None:
    point = GeoPoint(longitude=3.35, latitude=6.60)
    timestamp = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
    repository = MemoryRepository(
        vehicles=[
            Vehicle(id="V1", status=VehicleStatus.BUSY, location=point, last_updated=timestamp),
            Vehicle(id="V2", location=GeoPoint(longitude=3.5, latitude=6.7)),
        ],
        incidents=[
            Incident(
                id="I1",
                address="Marina",
                location=point,
                status=IncidentStatus.IN_PROGRESS,
                assigned_vehicle_id="V1",
            ),
        ],
    )
    coordinator = _build(redis=FakeRedis(), repository=repository)

    await coordinator.load_from_repository()

    assert coordinator.get_incident("I1").status is IncidentStatus.IN_PROGRESS
    with pytest.raises(InvalidStateError):
        await coordinator.update_vehicle_status("V1", VehicleStatus.AVAILABLE)
    nearest = await coordinator.find_nearest_vehicle((3.35, 6.60))
    assert nearest.vehicle.id == "V2"

    await coordinator.update_incident_status("I1", IncidentStatus.RESOLVED)
    assert coordinator.get_vehicle("V1").status is VehicleStatus.AVAILABLE


class YieldingRepository(MemoryRepository):
    async def _save(self, kind, store, entity):
        await asyncio.sleep(0)
        await super()._save(kind, store, entity)


async def _cancel_after(coro, yields: int) -> None:
    task = asyncio.create_task(coro)
    for _ in range(yields):
        await asyncio.sleep(0)
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    # let shielded writes finish
    await asyncio.sleep(0.01)


@pytest.mark.asyncio
@pytest.mark.parametrize("yields", range(12))
async def test_cancelled_dispatch_keeps_claim_atomic(yields: int) -> None:
    repository = YieldingRepository()
    coordinator = _build(redis=FakeRedis(), repository=repository)
    await coordinator.register_vehicle((3.35, 6.60), vehicle_id="V1")
    incident = await coordinator.create_incident("Marina", (3.345, 6.597))

    await _cancel_after(coordinator.dispatch(incident.id), yields)

    vehicle = coordinator.get_vehicle("V1")
    current = coordinator.get_incident(incident.id)
    claimed = current.status is IncidentStatus.DISPATCHED
    assert (vehicle.status is VehicleStatus.DISPATCHED) == claimed
    assert current.assigned_vehicle_id == ("V1" if claimed else None)
    if claimed:
        assert repository.vehicles["V1"].status is VehicleStatus.DISPATCHED
        assert repository.incidents[incident.id].assigned_vehicle_id == "V1"
    else:
        assert current.status is IncidentStatus.PENDING
        assert (await coordinator.dispatch(incident.id)).vehicle.id == "V1"


@pytest.mark.asyncio
@pytest.mark.parametrize("yields", range(12))
async def test_cancelled_resolution_keeps_release_atomic(yields: int) -> None:
    repository = YieldingRepository()
    coordinator = _build(redis=FakeRedis(), repository=repository)
    await coordinator.register_vehicle((3.35, 6.60), vehicle_id="V1")
    await coordinator.register_vehicle((3.50, 6.70), vehicle_id="V2")
    incident = await coordinator.create_incident("Marina", (3.345, 6.597))
    await coordinator.dispatch(incident.id)
    await coordinator.update_incident_status(incident.id, "in_progress")
    query = (3.345, 6.597)
    assert (await coordinator.find_nearest_vehicle(query)).vehicle.id == "V2"

    await _cancel_after(coordinator.update_incident_status(incident.id, "resolved"), yields)

    vehicle = coordinator.get_vehicle("V1")
    resolved = coordinator.get_incident(incident.id).status is IncidentStatus.RESOLVED
    assert (vehicle.status is VehicleStatus.AVAILABLE) == resolved
    if resolved:
        assert repository.vehicles["V1"].status is VehicleStatus.AVAILABLE
        assert (await coordinator.find_nearest_vehicle(query)).vehicle.id == "V1"
    else:
        assert vehicle.status is VehicleStatus.DISPATCHED
        assert coordinator.get_incident(incident.id).status is IncidentStatus.IN_PROGRESS
        await coordinator.update_incident_status(incident.id, "resolved")
        assert coordinator.get_vehicle("V1").status is VehicleStatus.AVAILABLE


@pytest.mark.asyncio
async def test_vehicle_freed_during_cache_outage_is_found_afterwards() -> None:
    redis = FakeRedis()
    coordinator = _build(redis=redis)
    await coordinator.register_vehicle((3.35, 6.60), vehicle_id="V1", status="busy")
    await coordinator.register_vehicle((3.50, 6.70), vehicle_id="V2")
    query = (3.345, 6.597)
    assert (await coordinator.find_nearest_vehicle(query)).vehicle.id == "V2"

    redis.fail = True
    await coordinator.update_vehicle_status("V1", VehicleStatus.AVAILABLE)
    redis.fail = False

    assert (await coordinator.find_nearest_vehicle(query)).vehicle.id == "V1"

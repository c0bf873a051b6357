"""Status transition tables for incidents and vehicles."""

from __future__ import annotations

from core.exceptions import InvalidStateError
from dispatch.models import IncidentStatus, VehicleStatus

# PENDING -> DISPATCHED is deliberately absent: only the dispatch protocol
# may perform it.
INCIDENT_TRANSITIONS: dict[IncidentStatus, frozenset[IncidentStatus]] = {
    IncidentStatus.PENDING: frozenset({IncidentStatus.CANCELLED}),
    IncidentStatus.DISPATCHED: frozenset(
        {IncidentStatus.IN_PROGRESS, IncidentStatus.CANCELLED},
    ),
    IncidentStatus.IN_PROGRESS: frozenset(
        {IncidentStatus.RESOLVED, IncidentStatus.CANCELLED},
    ),
    IncidentStatus.RESOLVED: frozenset(),
    IncidentStatus.CANCELLED: frozenset(),
}

# Operational updates coming from crews/telematics. AVAILABLE -> DISPATCHED and
# DISPATCHED -> AVAILABLE are owned by dispatch and incident release.
VEHICLE_OPERATIONAL_TRANSITIONS: dict[VehicleStatus, frozenset[VehicleStatus]] = {
    VehicleStatus.AVAILABLE: frozenset({VehicleStatus.BUSY}),
    VehicleStatus.BUSY: frozenset({VehicleStatus.AVAILABLE}),
    VehicleStatus.DISPATCHED: frozenset({VehicleStatus.BUSY}),
}


def check_incident_transition(current: IncidentStatus, new: IncidentStatus) -> None:
    if current in (IncidentStatus.RESOLVED, IncidentStatus.CANCELLED):
        msg = f"Incident is {current.value}; no further transitions are accepted"
        raise InvalidStateError(msg, {"current": current.value, "requested": new.value})
    if new is IncidentStatus.DISPATCHED:
        msg = "Incidents can only become dispatched through the dispatch operation"
        raise InvalidStateError(msg, {"current": current.value, "requested": new.value})
    if new not in INCIDENT_TRANSITIONS[current]:
        msg = f"Illegal incident transition {current.value} -> {new.value}"
        raise InvalidStateError(msg, {"current": current.value, "requested": new.value})


def check_vehicle_transition(
    current: VehicleStatus,
    new: VehicleStatus,
    *,
    has_active_incident: bool,
) -> None:
    if new is VehicleStatus.DISPATCHED:
        msg = "Vehicles can only become dispatched through the dispatch operation"
        raise InvalidStateError(msg, {"current": current.value, "requested": new.value})
    if new is VehicleStatus.AVAILABLE and has_active_incident:
        msg = "Vehicle is assigned to an active incident; resolve or cancel it first"
        raise InvalidStateError(msg, {"current": current.value, "requested": new.value})
    if new not in VEHICLE_OPERATIONAL_TRANSITIONS[current]:
        msg = f"Illegal vehicle transition {current.value} -> {new.value}"
        raise InvalidStateError(msg, {"current": current.value, "requested": new.value})

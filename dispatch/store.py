"""
In-memory entity store shared by concurrent dispatch requests.

The store is the authority for vehicle and incident state while the
process runs. Each entity has its own ``asyncio.Lock``; callers that need
both always take the incident lock before the vehicle lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator

from dispatch.models import Hospital, Incident, Vehicle

logger = logging.getLogger(__name__)


class EntityStore:
    def __init__(self) -> None:
        self.vehicles: dict[str, Vehicle] = {}
        self.incidents: dict[str, Incident] = {}
        self.hospitals: dict[str, Hospital] = {}
        # vehicle id -> id of the active incident it is assigned to
        self.assignments: dict[str, str] = {}
        self._vehicle_locks: dict[str, asyncio.Lock] = {}
        self._incident_locks: dict[str, asyncio.Lock] = {}

    def vehicle_lock(self, vehicle_id: str) -> asyncio.Lock:
        lock = self._vehicle_locks.get(vehicle_id)
        if lock is None:
            lock = self._vehicle_locks.setdefault(vehicle_id, asyncio.Lock())
        return lock

    def incident_lock(self, incident_id: str) -> asyncio.Lock:
        lock = self._incident_locks.get(incident_id)
        if lock is None:
            lock = self._incident_locks.setdefault(incident_id, asyncio.Lock())
        return lock

    @contextlib.asynccontextmanager
    async def locked(
        self,
        *,
        incident_id: str | None = None,
        vehicle_id: str | None = None,
    ) -> AsyncIterator[None]:
        """Hold the incident and/or vehicle lock, always in that order."""
        async with contextlib.AsyncExitStack() as stack:
            if incident_id is not None:
                await stack.enter_async_context(self.incident_lock(incident_id))
            if vehicle_id is not None:
                await stack.enter_async_context(self.vehicle_lock(vehicle_id))
            yield

    def active_incident_for(self, vehicle_id: str) -> Incident | None:
        """The non-terminal incident currently holding ``vehicle_id``, if any."""
        incident_id = self.assignments.get(vehicle_id)
        if incident_id is None:
            return None
        return self.incidents.get(incident_id)

    def assign(self, vehicle_id: str, incident_id: str) -> None:
        self.assignments[vehicle_id] = incident_id

    def release(self, vehicle_id: str) -> None:
        self.assignments.pop(vehicle_id, None)

    def rebuild_assignments(self) -> None:
        """Recompute the vehicle -> active incident map after bulk loading."""
        self.assignments.clear()
        for incident in self.incidents.values():
            if incident.assigned_vehicle_id and not incident.is_terminal:
                existing = self.assignments.get(incident.assigned_vehicle_id)
                if existing is not None:
                    logger.warning(
                        "Vehicle %s referenced by active incidents %s and %s",
                        incident.assigned_vehicle_id,
                        existing,
                        incident.id,
                    )
                    continue
                self.assignments[incident.assigned_vehicle_id] = incident.id

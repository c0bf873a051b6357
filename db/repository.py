"""
Persistent store adapter.

The coordinator reads every record once at startup and writes each entity
back after a committed mutation. ``DispatchRepository`` is the seam; the
Beanie implementation below is the production one.
"""

from __future__ import annotations

import logging
from typing import Protocol

from core.spatial import parse_point_geojson
from db.models import HospitalDocument, IncidentDocument, VehicleDocument
from dispatch.models import (
    GeoPoint,
    Hospital,
    Incident,
    IncidentPriority,
    IncidentStatus,
    Vehicle,
    VehicleStatus,
)

logger = logging.getLogger(__name__)


class DispatchRepository(Protocol):
    async def load_vehicles(self) -> list[Vehicle]: ...

    async def load_incidents(self) -> list[Incident]: ...

    async def load_hospitals(self) -> list[Hospital]: ...

    async def save_vehicle(self, vehicle: Vehicle) -> None: ...

    async def save_incident(self, incident: Incident) -> None: ...

    async def save_hospital(self, hospital: Hospital) -> None: ...


def _point(value: dict) -> GeoPoint:
    lon, lat = parse_point_geojson(value)
    return GeoPoint(longitude=lon, latitude=lat)


def vehicle_from_document(doc: VehicleDocument) -> Vehicle:
    return Vehicle(
        id=doc.vehicle_id,
        status=VehicleStatus.parse(doc.status),
        location=_point(doc.location),
        last_updated=doc.last_updated,
    )


def incident_from_document(doc: IncidentDocument) -> Incident:
    return Incident(
        id=doc.incident_id,
        address=doc.address,
        location=_point(doc.location),
        priority=IncidentPriority.parse(doc.priority),
        notes=doc.notes,
        status=IncidentStatus.parse(doc.status),
        assigned_vehicle_id=doc.assigned_vehicle_id,
        created_at=doc.created_at,
        updated_at=doc.updated_at,
    )


def hospital_from_document(doc: HospitalDocument) -> Hospital:
    return Hospital(
        id=doc.hospital_id,
        name=doc.name,
        location=_point(doc.location),
        created_at=doc.created_at,
    )


class BeanieDispatchRepository:
    """MongoDB-backed repository. Requires Beanie to be initialized."""

    async def load_vehicles(self) -> list[Vehicle]:
        docs = await VehicleDocument.find_all().to_list()
        return self._convert(docs, vehicle_from_document, "vehicle")

    async def load_incidents(self) -> list[Incident]:
        docs = await IncidentDocument.find_all().to_list()
        return self._convert(docs, incident_from_document, "incident")

    async def load_hospitals(self) -> list[Hospital]:
        docs = await HospitalDocument.find_all().to_list()
        return self._convert(docs, hospital_from_document, "hospital")

    @staticmethod
    def _convert(docs, converter, kind: str) -> list:
        converted = []
        for doc in docs:
            try:
                converted.append(converter(doc))
            except Exception:
                logger.warning("Skipping invalid %s record %s", kind, doc.id, exc_info=True)
        return converted

    async def save_vehicle(self, vehicle: Vehicle) -> None:
        doc = await VehicleDocument.find_one(VehicleDocument.vehicle_id == vehicle.id)
        if doc is None:
            doc = VehicleDocument(
                vehicle_id=vehicle.id,
                location=vehicle.location.to_geojson(),
            )
        doc.status = vehicle.status.value
        doc.location = vehicle.location.to_geojson()
        doc.last_updated = vehicle.last_updated
        await doc.save()

    async def save_incident(self, incident: Incident) -> None:
        doc = await IncidentDocument.find_one(IncidentDocument.incident_id == incident.id)
        if doc is None:
            doc = IncidentDocument(
                incident_id=incident.id,
                address=incident.address,
                location=incident.location.to_geojson(),
                created_at=incident.created_at,
            )
        doc.address = incident.address
        doc.location = incident.location.to_geojson()
        doc.priority = incident.priority.value
        doc.notes = incident.notes
        doc.status = incident.status.value
        doc.assigned_vehicle_id = incident.assigned_vehicle_id
        doc.updated_at = incident.updated_at
        await doc.save()

    async def save_hospital(self, hospital: Hospital) -> None:
        doc = await HospitalDocument.find_one(HospitalDocument.hospital_id == hospital.id)
        if doc is None:
            doc = HospitalDocument(
                hospital_id=hospital.id,
                name=hospital.name,
                location=hospital.location.to_geojson(),
                created_at=hospital.created_at,
            )
        doc.name = hospital.name
        doc.location = hospital.location.to_geojson()
        await doc.save()

"""Beanie ODM document models for MongoDB collections.

Documents mirror the in-memory domain models but keep positions as GeoJSON
points, so the collections can carry 2dsphere indexes for ad-hoc queries.

Usage:
    from db.models import VehicleDocument

    doc = await VehicleDocument.find_one(VehicleDocument.vehicle_id == "V1")
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from beanie import Document, Indexed
from pydantic import Field
from pymongo import DESCENDING, GEOSPHERE, IndexModel


def _utc_now() -> datetime:
    return datetime.now(UTC)


class VehicleDocument(Document):
    """Persisted response vehicle."""

    vehicle_id: Indexed(str, unique=True)
    status: str = "available"
    location: dict[str, Any]  # GeoJSON Point
    last_updated: datetime = Field(default_factory=_utc_now)

    class Settings:
        name = "vehicles"
        indexes = [
            IndexModel([("location", GEOSPHERE)], name="vehicles_location_2dsphere"),
            IndexModel([("status", 1)], name="vehicles_status_idx"),
        ]


class IncidentDocument(Document):
    """Persisted incident."""

    incident_id: Indexed(str, unique=True)
    address: str
    location: dict[str, Any]  # GeoJSON Point
    priority: str = "medium"
    notes: str | None = None
    status: str = "pending"
    assigned_vehicle_id: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    class Settings:
        name = "incidents"
        indexes = [
            IndexModel([("location", GEOSPHERE)], name="incidents_location_2dsphere"),
            IndexModel([("created_at", DESCENDING)], name="incidents_created_at_idx"),
        ]


class HospitalDocument(Document):
    """Persisted hospital / point of interest."""

    hospital_id: Indexed(str, unique=True)
    name: str
    location: dict[str, Any]  # GeoJSON Point
    created_at: datetime = Field(default_factory=_utc_now)

    class Settings:
        name = "hospitals"
        indexes = [
            IndexModel([("location", GEOSPHERE)], name="hospitals_location_2dsphere"),
        ]


ALL_DOCUMENT_MODELS = [VehicleDocument, IncidentDocument, HospitalDocument]

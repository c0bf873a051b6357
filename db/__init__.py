"""
Database package.

MongoDB persistence for the dispatch engine: Beanie document models, the
connection manager and the repository the coordinator writes through.
"""

from db.manager import DatabaseManager
from db.models import (
    ALL_DOCUMENT_MODELS,
    HospitalDocument,
    IncidentDocument,
    VehicleDocument,
)
from db.repository import BeanieDispatchRepository, DispatchRepository

__all__ = [
    "ALL_DOCUMENT_MODELS",
    "BeanieDispatchRepository",
    "DatabaseManager",
    "DispatchRepository",
    "HospitalDocument",
    "IncidentDocument",
    "VehicleDocument",
]

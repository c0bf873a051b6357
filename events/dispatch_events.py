"""Dispatch event definitions.

Events are emitted after every state transition the coordinator commits:
- vehicle status and position changes
- incident creation, dispatch and status changes
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

VEHICLE_STATUS_CHANGED = "vehicle.status-changed"
VEHICLE_POSITION_CHANGED = "vehicle.position-changed"
INCIDENT_CREATED = "incident.created"
INCIDENT_DISPATCHED = "incident.dispatched"
INCIDENT_STATUS_CHANGED = "incident.status-changed"

EVENT_NAMES = frozenset(
    {
        VEHICLE_STATUS_CHANGED,
        VEHICLE_POSITION_CHANGED,
        INCIDENT_CREATED,
        INCIDENT_DISPATCHED,
        INCIDENT_STATUS_CHANGED,
    },
)


@dataclass
class DispatchEvent:
    """A state-change notification queued for the event bus."""

    name: str
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event": self.name,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }

"""Events package for dispatch state-change notifications.

Contains event definitions, the Redis pub/sub bus and the non-blocking
notifier used by the dispatch coordinator.
"""

from events.dispatch_events import (
    INCIDENT_CREATED,
    INCIDENT_DISPATCHED,
    INCIDENT_STATUS_CHANGED,
    VEHICLE_POSITION_CHANGED,
    VEHICLE_STATUS_CHANGED,
    DispatchEvent,
)
from events.notifier import EventBus, EventNotifier, RedisEventBus

__all__ = [
    "INCIDENT_CREATED",
    "INCIDENT_DISPATCHED",
    "INCIDENT_STATUS_CHANGED",
    "VEHICLE_POSITION_CHANGED",
    "VEHICLE_STATUS_CHANGED",
    "DispatchEvent",
    "EventBus",
    "EventNotifier",
    "RedisEventBus",
]

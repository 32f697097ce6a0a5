"""
Runtime plumbing: internal event bus and file helpers.
"""

from swap_engine.runtime.event_bus import Event, EventBus, EventHandler, EventType
from swap_engine.runtime.files import atomic_write_json, read_json

__all__ = [
    "Event",
    "EventBus",
    "EventHandler",
    "EventType",
    "atomic_write_json",
    "read_json",
]

"""
Event bus for internal pub/sub messaging.

The work queue publishes job lifecycle events here; the execution
pipeline, lifecycle logging and any other observer subscribe to the types
they care about.
"""

import asyncio
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from swap_engine.logging import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    """Types of events in the system."""

    # Lifecycle events
    ENGINE_STARTED = "engine.started"
    ENGINE_STOPPED = "engine.stopped"

    # Job events
    JOB_ACTIVE = "job.active"
    JOB_COMPLETED = "job.completed"
    JOB_RETRYING = "job.retrying"
    JOB_FAILED = "job.failed"
    JOB_STALLED = "job.stalled"


@dataclass
class Event:
    """
    An event in the system.

    Carries type, timestamp, and arbitrary payload data.
    """

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    id: UUID = field(default_factory=uuid4)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    job_id: str | None = None

    def __hash__(self) -> int:
        return hash(self.id)


# Type for event handlers
EventHandler = Callable[[Event], Coroutine[Any, Any, None]]


class EventBus:
    """
    Simple async event bus for internal pub/sub.

    Supports:
    - Multiple handlers per event type
    - Wildcard subscriptions
    - Async handlers

    A failing handler is logged and never affects the publisher or the
    other handlers.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[EventHandler]] = {}
        self._wildcard_handlers: list[EventHandler] = []
        self._lock = asyncio.Lock()

    async def subscribe(
        self,
        event_type: EventType | None,
        handler: EventHandler,
    ) -> None:
        """
        Subscribe to events.

        Args:
            event_type: Event type to subscribe to, or None for all events
            handler: Async handler function
        """
        async with self._lock:
            if event_type is None:
                self._wildcard_handlers.append(handler)
            else:
                self._handlers.setdefault(event_type, []).append(handler)

    async def unsubscribe(
        self,
        event_type: EventType | None,
        handler: EventHandler,
    ) -> None:
        """
        Unsubscribe from events.

        Args:
            event_type: Event type, or None for wildcard
            handler: Handler to remove
        """
        async with self._lock:
            if event_type is None:
                if handler in self._wildcard_handlers:
                    self._wildcard_handlers.remove(handler)
            else:
                handlers = self._handlers.get(event_type, [])
                if handler in handlers:
                    handlers.remove(handler)

    async def publish(self, event: Event) -> None:
        """
        Publish an event to all subscribers and wait for them to finish.

        Args:
            event: Event to publish
        """
        handlers: list[EventHandler] = []

        async with self._lock:
            handlers.extend(self._handlers.get(event.type, []))
            handlers.extend(self._wildcard_handlers)

        if not handlers:
            return

        results = await asyncio.gather(
            *[handler(event) for handler in handlers],
            return_exceptions=True,
        )
        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    "Event handler %s failed for %s: %s",
                    getattr(handler, "__qualname__", handler),
                    event.type.value,
                    result,
                    exc_info=result,
                )

    async def clear(self) -> None:
        """Remove all handlers."""
        async with self._lock:
            self._handlers.clear()
            self._wildcard_handlers.clear()

"""
Order-status events.

The engine publishes one event after every committed transition.
Listeners run after the state change is durable; a failing listener is
logged and never undoes or blocks the transition.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from courier_dispatch.models.base import utcnow
from courier_dispatch.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)


class AssignmentEventType(str, Enum):
    """Types of assignment events."""

    CREATED = "assignment.created"
    RESERVED = "assignment.reserved"
    ACCEPTED = "assignment.accepted"
    REJECTED = "assignment.rejected"
    TIMEOUT = "assignment.timeout"
    IN_TRANSIT = "assignment.in_transit"
    DELIVERED = "assignment.delivered"
    CANCELLED = "assignment.cancelled"
    FAILED = "assignment.failed"


@dataclass
class AssignmentEvent:
    """An order-status change."""

    event_type: AssignmentEventType
    order_id: str
    status: str
    partner_id: Optional[str] = None
    attempt: int = 0
    data: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    event_id: UUID = field(default_factory=uuid4)

    def to_payload(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "status": self.status,
            "partner_id": self.partner_id,
            "attempt": self.attempt,
            "occurred_at": self.timestamp.isoformat(),
            **self.data,
        }


class EventListener(ABC):
    """Receives published assignment events."""

    @abstractmethod
    async def handle(self, event: AssignmentEvent) -> None:
        pass


class RecordingListener(EventListener):
    """Keeps every event in memory. Used by the admin view and tests."""

    def __init__(self, max_events: int = 1000):
        self.max_events = max_events
        self.events: list[AssignmentEvent] = []

    async def handle(self, event: AssignmentEvent) -> None:
        self.events.append(event)
        if len(self.events) > self.max_events:
            del self.events[: len(self.events) - self.max_events]

    def of_type(self, event_type: AssignmentEventType) -> list[AssignmentEvent]:
        return [e for e in self.events if e.event_type == event_type]


class WebhookListener(EventListener):
    """
    Forwards events to the notification webhooks.

    Delivery (with its retries) runs in background tasks so a slow
    receiver never holds up an API call.
    """

    def __init__(self, webhook_service: WebhookService):
        self.webhook_service = webhook_service
        self._pending: set[asyncio.Task] = set()

    async def handle(self, event: AssignmentEvent) -> None:
        if not self.webhook_service.enabled:
            return
        task = asyncio.create_task(
            self.webhook_service.dispatch_event(
                event.event_type.value,
                event.to_payload(),
                event_id=str(event.event_id),
            )
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight deliveries."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)


class EventPublisher:
    """
    Fan-out of assignment events to registered listeners.

    Features:
    - Listeners called in registration order
    - Listener failures isolated and logged
    """

    def __init__(self, listeners: Optional[list[EventListener]] = None):
        self.listeners: list[EventListener] = list(listeners or [])
        self.events_published = 0
        self.listener_errors = 0

    def register_listener(self, listener: EventListener) -> None:
        self.listeners.append(listener)
        logger.info(f"Registered event listener: {listener.__class__.__name__}")

    async def publish(self, event: AssignmentEvent) -> None:
        self.events_published += 1
        logger.debug(
            f"Publishing {event.event_type.value} for order {event.order_id}",
            extra={"order_id": event.order_id, "event": event.event_type.value},
        )
        for listener in self.listeners:
            try:
                await listener.handle(event)
            except Exception as e:
                self.listener_errors += 1
                logger.error(
                    f"Event listener {listener.__class__.__name__} failed on "
                    f"{event.event_type.value}: {e}",
                    exc_info=True,
                )

    async def close(self) -> None:
        for listener in self.listeners:
            if isinstance(listener, WebhookListener):
                await listener.drain()

    def get_metrics(self) -> dict:
        return {
            "events_published": self.events_published,
            "listener_errors": self.listener_errors,
            "listeners_count": len(self.listeners),
        }


def create_event_publisher(webhook_service: Optional[WebhookService] = None) -> EventPublisher:
    """Publisher wired to the webhook endpoints from settings."""
    publisher = EventPublisher()
    publisher.register_listener(WebhookListener(webhook_service or WebhookService()))
    return publisher

"""
Collaborator Notification Service

The engine owns no notification, accounting or exception-review logic; it
only emits events for those collaborators:

- ORDER_SHIPPED / ORDER_BACKORDERED -> notification collaborator
- PICK_EXCEPTION                    -> notification collaborator (supervisor review)
- INVENTORY_DEDUCTED                -> accounting collaborator (costing)

Services append events to a per-transaction EventOutbox. The outbox is
dispatched only after the transaction commits, so a rolled-back operation
never notifies anyone.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional


logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Events emitted to external collaborators."""
    ORDER_SHIPPED = "ORDER_SHIPPED"
    ORDER_BACKORDERED = "ORDER_BACKORDERED"
    PICK_EXCEPTION = "PICK_EXCEPTION"
    INVENTORY_DEDUCTED = "INVENTORY_DEDUCTED"


NOTIFICATION_EVENTS = frozenset({
    EventType.ORDER_SHIPPED,
    EventType.ORDER_BACKORDERED,
    EventType.PICK_EXCEPTION,
})
ACCOUNTING_EVENTS = frozenset({EventType.INVENTORY_DEDUCTED})


@dataclass(frozen=True)
class FulfillmentEvent:
    """One outbound event."""
    event_type: EventType
    order_id: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[FulfillmentEvent], Awaitable[None]]


class EventOutbox:
    """Events collected during one transaction."""

    def __init__(self):
        self._events: List[FulfillmentEvent] = []

    def emit(self, event_type: EventType, order_id: Optional[str] = None, **payload: Any) -> FulfillmentEvent:
        event = FulfillmentEvent(event_type=event_type, order_id=order_id, payload=payload)
        self._events.append(event)
        return event

    def drain(self) -> List[FulfillmentEvent]:
        events, self._events = self._events, []
        return events

    def __len__(self) -> int:
        return len(self._events)


async def log_notification(event: FulfillmentEvent) -> None:
    """Default notification handler: logs the event."""
    logger.info(
        "[NOTIFY] %s order=%s payload=%s",
        event.event_type.value, event.order_id, event.payload,
    )


class EventDispatcher:
    """
    Routes committed events to collaborator handlers.

    Handlers are independent: one failing handler is logged and the rest
    still run. Delivery failures never undo the committed state.
    """

    def __init__(
        self,
        notification_handlers: Optional[List[EventHandler]] = None,
        accounting_handlers: Optional[List[EventHandler]] = None,
    ):
        if notification_handlers is None:
            notification_handlers = [log_notification]
        self.notification_handlers: List[EventHandler] = list(notification_handlers)
        self.accounting_handlers: List[EventHandler] = list(accounting_handlers or [])

    def add_notification_handler(self, handler: EventHandler) -> None:
        self.notification_handlers.append(handler)

    def add_accounting_handler(self, handler: EventHandler) -> None:
        self.accounting_handlers.append(handler)

    def _handlers_for(self, event: FulfillmentEvent) -> List[EventHandler]:
        if event.event_type in ACCOUNTING_EVENTS:
            return self.accounting_handlers
        if event.event_type in NOTIFICATION_EVENTS:
            return self.notification_handlers
        return []

    async def dispatch(self, events: List[FulfillmentEvent]) -> None:
        for event in events:
            for handler in self._handlers_for(event):
                try:
                    await handler(event)
                except Exception:
                    logger.exception(
                        "Collaborator handler %r failed for %s (order=%s)",
                        getattr(handler, "__name__", handler),
                        event.event_type.value,
                        event.order_id,
                    )

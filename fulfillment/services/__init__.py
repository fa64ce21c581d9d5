# Services module
from fulfillment.services.audit_service import AuditService
from fulfillment.services.catalog_service import CatalogService
from fulfillment.services.inventory_service import InventoryLedger
from fulfillment.services.order_service import OrderService
from fulfillment.services.order_state_machine import OrderStateMachine
from fulfillment.services.allocation_service import (
    AllocationShortfall,
    PickTaskAllocator,
    plan_allocation,
)
from fulfillment.services.notification_service import (
    EventDispatcher,
    EventOutbox,
    EventType,
    FulfillmentEvent,
)
from fulfillment.services.fulfillment_engine import FulfillmentEngine

__all__ = [
    "AuditService",
    "CatalogService",
    "InventoryLedger",
    "OrderService",
    "OrderStateMachine",
    "AllocationShortfall",
    "PickTaskAllocator",
    "plan_allocation",
    # Collaborator events
    "EventDispatcher",
    "EventOutbox",
    "EventType",
    "FulfillmentEvent",
    "FulfillmentEngine",
]

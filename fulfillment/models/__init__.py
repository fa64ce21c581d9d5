# Models module; importing it registers every table with Base.metadata
from fulfillment.models.catalog import Sku, BinLocation, BinType
from fulfillment.models.inventory import (
    InventoryUnit,
    InventoryTransaction,
    InventoryTransactionType,
)
from fulfillment.models.order import (
    Order,
    OrderItem,
    OrderStateChange,
    OrderStatus,
    OrderPriority,
    OrderItemStatus,
)
from fulfillment.models.pick_task import PickTask, TaskStatus

__all__ = [
    "Sku",
    "BinLocation",
    "BinType",
    "InventoryUnit",
    "InventoryTransaction",
    "InventoryTransactionType",
    "Order",
    "OrderItem",
    "OrderStateChange",
    "OrderStatus",
    "OrderPriority",
    "OrderItemStatus",
    "PickTask",
    "TaskStatus",
]

"""
Order Fulfillment State Machine

This module is the SINGLE SOURCE OF TRUTH for all order status transitions.
All status changes must go through OrderStateMachine.transition(), which
validates the move, stamps the milestone timestamp and appends exactly one
OrderStateChange in the same transaction.

    PENDING -> PICKING -> PICKED -> PACKING -> PACKED -> SHIPPED
       |          |                     |                (terminal)
       v          v                     v
    BACKORDER   PENDING (unclaim)     PICKED (packing unclaim)

    CANCELLED is reachable from every non-terminal state.
"""
import logging
from datetime import datetime, timezone
from fractions import Fraction
from math import floor
from typing import Dict, List, Optional, Sequence, Tuple

from fulfillment.core.enum_utils import get_enum_value
from fulfillment.core.exceptions import InvalidStateTransitionError
from fulfillment.models.order import Order, OrderItem, OrderItemStatus, OrderStatus
from fulfillment.services.audit_service import AuditService


logger = logging.getLogger(__name__)


# =============================================================================
# TRANSITION RULES
# =============================================================================

# Format: current_status -> [list of allowed next statuses]
ORDER_TRANSITIONS: Dict[str, List[str]] = {
    OrderStatus.PENDING.value: [
        OrderStatus.PICKING.value,      # Claimed by a picker
        OrderStatus.CANCELLED.value,
        OrderStatus.BACKORDER.value,    # No stock anywhere for an item
    ],
    OrderStatus.PICKING.value: [
        OrderStatus.PICKED.value,       # Every item fully picked
        OrderStatus.PENDING.value,      # Unclaim
        OrderStatus.CANCELLED.value,
    ],
    OrderStatus.PICKED.value: [
        OrderStatus.PACKING.value,      # Claimed by a packer
        OrderStatus.CANCELLED.value,
    ],
    OrderStatus.PACKING.value: [
        OrderStatus.PACKED.value,       # Every item verified
        OrderStatus.PICKED.value,       # Packer hands the order back
        OrderStatus.CANCELLED.value,
    ],
    OrderStatus.PACKED.value: [
        OrderStatus.SHIPPED.value,      # Carrier handoff
        OrderStatus.CANCELLED.value,
    ],
    OrderStatus.BACKORDER.value: [
        OrderStatus.PENDING.value,      # Stock arrived
        OrderStatus.CANCELLED.value,
    ],
    OrderStatus.SHIPPED.value: [],      # Terminal
    OrderStatus.CANCELLED.value: [],    # Terminal
}

TRANSITION_ACTIONS: Dict[Tuple[str, str], str] = {
    (OrderStatus.PENDING.value, OrderStatus.PICKING.value): "Claim for Picking",
    (OrderStatus.PENDING.value, OrderStatus.BACKORDER.value): "Backorder",
    (OrderStatus.PICKING.value, OrderStatus.PICKED.value): "Picking Complete",
    (OrderStatus.PICKING.value, OrderStatus.PENDING.value): "Unclaim",
    (OrderStatus.PICKED.value, OrderStatus.PACKING.value): "Claim for Packing",
    (OrderStatus.PACKING.value, OrderStatus.PACKED.value): "Packing Complete",
    (OrderStatus.PACKING.value, OrderStatus.PICKED.value): "Unclaim Packing",
    (OrderStatus.PACKED.value, OrderStatus.SHIPPED.value): "Ship",
    (OrderStatus.BACKORDER.value, OrderStatus.PENDING.value): "Release Backorder",
}

# Milestone stamped the first time the order enters a status
TIMESTAMP_FIELDS: Dict[str, str] = {
    OrderStatus.PICKING.value: "claimed_at",
    OrderStatus.PICKED.value: "picked_at",
    OrderStatus.PACKED.value: "packed_at",
    OrderStatus.SHIPPED.value: "shipped_at",
    OrderStatus.CANCELLED.value: "cancelled_at",
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def can_transition(current_status: str, new_status: str) -> bool:
    """Check if a transition is allowed."""
    allowed = ORDER_TRANSITIONS.get(get_enum_value(current_status), [])
    return get_enum_value(new_status) in allowed


def get_allowed_transitions(current_status: str) -> List[str]:
    """Get list of statuses that can be transitioned to from current status."""
    return list(ORDER_TRANSITIONS.get(get_enum_value(current_status), []))


def get_transition_action(current_status: str, new_status: str) -> str:
    """Get human-readable action name for a transition."""
    current, new = get_enum_value(current_status), get_enum_value(new_status)
    if new == OrderStatus.CANCELLED.value:
        return "Cancel"
    return TRANSITION_ACTIONS.get((current, new), f"{current} -> {new}")


def validate_transition(current_status: str, new_status: str) -> None:
    """
    Validate a status transition. Raises InvalidStateTransitionError if invalid.

    Unlike a no-op edit, re-entering the current status is never a transition.
    """
    current, new = get_enum_value(current_status), get_enum_value(new_status)
    if can_transition(current, new):
        return

    allowed = get_allowed_transitions(current)
    if not allowed:
        raise InvalidStateTransitionError(
            f"Order in '{current}' status cannot change. This is a terminal state.",
            current_status=current,
            target_status=new,
        )
    raise InvalidStateTransitionError(
        f"Cannot change order from '{current}' to '{new}'. "
        f"Allowed transitions: {', '.join(allowed)}",
        current_status=current,
        target_status=new,
    )


def is_terminal(status: str) -> bool:
    """Is this a terminal (final) state?"""
    return get_enum_value(status) in (OrderStatus.SHIPPED.value, OrderStatus.CANCELLED.value)


def can_cancel(status: str) -> bool:
    return not is_terminal(status)


# =============================================================================
# DERIVED FIELDS
# =============================================================================

def derive_item_status(picked_quantity: int, quantity: int) -> str:
    """Item status follows picked_quantity; it is never set independently."""
    if picked_quantity <= 0:
        return OrderItemStatus.PENDING.value
    if picked_quantity < quantity:
        return OrderItemStatus.PARTIAL_PICKED.value
    return OrderItemStatus.FULLY_PICKED.value


def compute_progress(items: Sequence[Tuple[int, int]]) -> int:
    """
    Unweighted average completion ratio across items, as a 0-100 integer.

    Each item counts equally regardless of its quantity. Rounds half up.

    Args:
        items: (picked_quantity, quantity) pairs

    Examples:
        >>> compute_progress([(3, 3), (2, 4)])
        75
        >>> compute_progress([])
        0
    """
    if not items:
        return 0
    total = sum((Fraction(picked, quantity) for picked, quantity in items), Fraction(0))
    return floor(total * 100 / len(items) + Fraction(1, 2))


def all_items_picked(items: Sequence[OrderItem]) -> bool:
    return bool(items) and all(
        item.status == OrderItemStatus.FULLY_PICKED.value for item in items
    )


def all_items_verified(items: Sequence[OrderItem]) -> bool:
    return bool(items) and all(
        item.verified_quantity >= item.quantity for item in items
    )


# =============================================================================
# TRANSITION EXECUTOR
# =============================================================================

class OrderStateMachine:
    """Applies validated transitions to Order rows and records them."""

    def __init__(self, audit: AuditService):
        self.audit = audit

    async def transition(
        self,
        order: Order,
        new_status: OrderStatus,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Transition an order to a new status.

        This function:
        1. Validates the transition is allowed
        2. Updates the status and stamps the milestone timestamp
        3. Appends one OrderStateChange on the same session

        Raises:
            InvalidStateTransitionError: If transition is not allowed
        """
        current_status = order.status
        new_value = get_enum_value(new_status)

        try:
            validate_transition(current_status, new_value)
        except InvalidStateTransitionError:
            logger.warning(
                "Rejected transition order=%s %s -> %s", order.id, current_status, new_value
            )
            raise

        order.status = new_value
        field_name = TIMESTAMP_FIELDS.get(new_value)
        if field_name and getattr(order, field_name) is None:
            setattr(order, field_name, datetime.now(timezone.utc))

        await self.audit.record_state_change(
            order_id=order.id,
            from_status=current_status,
            to_status=new_value,
            actor=actor,
            reason=reason,
        )
        logger.info(
            "Order %s: %s -> %s (%s) by %s",
            order.id, current_status, new_value,
            get_transition_action(current_status, new_value), actor,
        )
        return order

    def recompute(self, order: Order) -> int:
        """Re-derive every item status and the order progress from picked quantities."""
        for item in order.items:
            item.status = derive_item_status(item.picked_quantity, item.quantity)
        order.progress = compute_progress(
            [(item.picked_quantity, item.quantity) for item in order.items]
        )
        return order.progress

    async def advance_if_picked(self, order: Order, actor: Optional[str] = None) -> bool:
        """Move a PICKING order to PICKED once every item is fully picked."""
        if order.status == OrderStatus.PICKING.value and all_items_picked(order.items):
            await self.transition(order, OrderStatus.PICKED, actor=actor, reason="All items picked")
            return True
        return False

    async def advance_if_packed(self, order: Order, actor: Optional[str] = None) -> bool:
        """Move a PACKING order to PACKED once every item is verified."""
        if order.status == OrderStatus.PACKING.value and all_items_verified(order.items):
            await self.transition(order, OrderStatus.PACKED, actor=actor, reason="All items verified")
            return True
        return False

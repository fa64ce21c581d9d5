"""
Fulfillment error taxonomy.

Every failure raised by the engine derives from FulfillmentError so the
request-handling layer can map it to an operator-facing message. A failed
operation never leaves partial state behind: the enclosing transaction is
rolled back before the error reaches the caller.
"""
from typing import Any, Dict, Optional


class FulfillmentError(Exception):
    """Base class for all engine errors."""

    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(FulfillmentError):
    """Unknown identity."""

    def __init__(self, entity: str, identifier: Any):
        self.entity = entity
        self.identifier = identifier
        super().__init__(
            f"{entity} '{identifier}' not found",
            {"entity": entity, "identifier": str(identifier)},
        )


class InvalidRequestError(FulfillmentError):
    """Malformed input, e.g. a non-positive quantity or a blank reason."""


class InsufficientAvailabilityError(FulfillmentError):
    """A reservation or allocation cannot be satisfied from available stock."""


class OrderBackorderedError(InsufficientAvailabilityError):
    """The claim found demand the warehouse cannot meet; the order is now BACKORDER."""

    def __init__(self, order_id: str, shortages: Dict[str, int]):
        self.order_id = order_id
        self.shortages = shortages
        super().__init__(
            f"Order {order_id} moved to BACKORDER: insufficient inventory",
            {"order_id": order_id, "shortages": shortages},
        )


class InvalidStateError(FulfillmentError):
    """The current persisted state does not allow the requested mutation."""


class InvalidStateTransitionError(InvalidStateError):
    """A state machine guard rejected the transition."""

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        target_status: Optional[str] = None,
    ):
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            message,
            {"current_status": current_status, "target_status": target_status},
        )


class AlreadyClaimedError(FulfillmentError):
    """The order (or one of its tasks) belongs to another operator."""


class CapacityExceededError(FulfillmentError):
    """The operator already holds the maximum number of in-flight orders."""


class OverPickError(FulfillmentError):
    """Picked or verified quantity exceeds what remains."""


class LockTimeoutError(FulfillmentError):
    """A row lock could not be acquired in time; the caller may retry."""

    retryable = True

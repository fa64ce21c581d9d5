"""Prefixed opaque identifiers, e.g. ORD-20250118-9F2C41D07A3B."""
import uuid
from datetime import datetime, timezone

ORDER_PREFIX = "ORD"
ORDER_ITEM_PREFIX = "OI"
PICK_TASK_PREFIX = "PT"
INVENTORY_UNIT_PREFIX = "IU"
TRANSACTION_PREFIX = "TXN"
STATE_CHANGE_PREFIX = "OSC"


def new_id(prefix: str) -> str:
    """Generate a collision-resistant id: PREFIX-YYYYMMDD-<12 hex>."""
    today = datetime.now(timezone.utc).strftime("%Y%m%d")
    return f"{prefix}-{today}-{uuid.uuid4().hex[:12].upper()}"

"""Warehouse order fulfillment engine."""

__version__ = "1.0.0"

from fulfillment.config import Settings, get_settings
from fulfillment.database import Database
from fulfillment.logging_setup import configure_logging
from fulfillment.services.fulfillment_engine import FulfillmentEngine
from fulfillment.services.notification_service import EventDispatcher

__all__ = [
    "Settings",
    "get_settings",
    "Database",
    "configure_logging",
    "FulfillmentEngine",
    "EventDispatcher",
]

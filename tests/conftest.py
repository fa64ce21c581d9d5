import pytest

from fulfillment.config import Settings
from fulfillment.database import Database
from fulfillment.services.fulfillment_engine import FulfillmentEngine
from fulfillment.services.notification_service import EventDispatcher


SKUS = ("W", "X", "Y", "Z")
BINS = ("A-01-01", "A-01-02", "B-02-01", "C-03-01")


class RecordingCollaborator:
    """Captures every event routed to it."""

    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if e.event_type == event_type]


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}",
        DB_LOCK_TIMEOUT_MS=15000,
    )


@pytest.fixture()
async def database(settings):
    db = Database(settings)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture()
def recorder():
    return RecordingCollaborator()


@pytest.fixture()
def make_engine(database, settings, recorder):
    def _make(**overrides):
        engine_settings = settings.model_copy(update=overrides) if overrides else settings
        dispatcher = EventDispatcher(
            notification_handlers=[recorder],
            accounting_handlers=[recorder],
        )
        return FulfillmentEngine(database, engine_settings, dispatcher)

    return _make


@pytest.fixture()
async def engine(make_engine):
    engine = make_engine()
    for code in SKUS:
        await engine.register_sku(code, name=f"Widget {code}", category="widgets")
    for code in BINS:
        await engine.register_bin(code)
    return engine


@pytest.fixture()
def stock(engine):
    """Receive stock: await stock(("W", "A-01-01", 10), ...)."""

    async def _stock(*entries):
        for sku, bin_code, quantity in entries:
            await engine.receive(sku, bin_code, quantity, reason="Initial stock")

    return _stock


@pytest.fixture()
def new_order(engine):
    """Create an order: await new_order(("W", 5), ("X", 2), priority="HIGH")."""

    async def _new_order(*lines, customer_id="CUST-1", priority="NORMAL"):
        return await engine.create_order(
            customer_id,
            [{"sku": sku, "quantity": qty} for sku, qty in lines],
            priority=priority,
        )

    return _new_order

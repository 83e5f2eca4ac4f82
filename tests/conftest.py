"""
Pytest fixtures for the shipment intake test suite.

Provides:
- A fresh SQLite file database per test (file-backed so worker threads share it)
- Seeded customers and inventory items, stocked through the ledger
- A scripted fake of the AI text-extraction capability
- A FastAPI TestClient wired to the test database and fakes
"""

import asyncio
import io
from decimal import Decimal

import pytest
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from shipment_intake.context import RequestContext
from shipment_intake.database import init_db
from shipment_intake.exceptions import TransientExtractionError
from shipment_intake.models.customer import Customer
from shipment_intake.models.inventory import InventoryItem
from shipment_intake.services.cache_service import CacheInvalidationCoordinator
from shipment_intake.services.ledger_service import KeyedLockRegistry, StockLedger
from shipment_intake.services.matcher_service import EntityMatcher
from shipment_intake.services.pipeline_service import ExtractionPipeline, Thresholds
from shipment_intake.services.reconciliation_service import ReconciliationEngine
from shipment_intake.services.session_service import create_access_token


class FakeCapability:
    """Scripted stand-in for the AI capability.

    ``transient_failures`` makes the first N text-extraction calls fail with a
    retryable error. ``payload`` may be a dict, or an exception to raise from
    parsing.
    """

    def __init__(self, payload=None, text="SHIPPING DOCUMENT", transient_failures=0, delay=0.0):
        self.payload = payload if payload is not None else {}
        self.text = text
        self.transient_failures = transient_failures
        self.delay = delay
        self.extract_calls = 0
        self.parse_calls = 0

    async def extract_text(self, image_bytes, content_type="image/png"):
        self.extract_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientExtractionError("Upstream returned HTTP 503", {"status": 503})
        return self.text

    async def parse_structured(self, text):
        self.parse_calls += 1
        if isinstance(self.payload, Exception):
            raise self.payload
        return dict(self.payload)


def shipment_payload(customer="Acme Corp", items=None, total=None, confidence=0.9, shipment_date="2024-03-01"):
    items = items if items is not None else [
        {"description": "Widget A", "quantity": 10, "unit_price": "12.50", "confidence": confidence},
    ]
    if total is None:
        total = sum(Decimal(str(i["unit_price"])) * i["quantity"] for i in items if i.get("unit_price") is not None)
    return {
        "customer_name": {"value": customer, "confidence": confidence},
        "shipment_date": {"value": shipment_date, "confidence": confidence},
        "total_amount": {"value": str(total), "confidence": confidence},
        "items": items,
        "overall_confidence": confidence,
    }


def make_png(seed: int = 0) -> bytes:
    """A small valid PNG; different seeds give different bytes (and hashes)."""
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), color=(seed % 256, (seed * 7) % 256, (seed * 13) % 256)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def engine(tmp_path):
    db_engine = create_engine(
        f"sqlite:///{tmp_path / 'intake.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    init_db(bind=db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def cache():
    return CacheInvalidationCoordinator()


@pytest.fixture
def locks():
    return KeyedLockRegistry()


@pytest.fixture
def ctx():
    return RequestContext(actor_id="user-1", role="staff", correlation_id="corr-test")


@pytest.fixture
def ledger(db, cache, locks):
    return StockLedger(db, cache, locks=locks, retry_backoff=0.0)


@pytest.fixture
def seed(db, session_factory, locks):
    """Acme Corp plus two stocked items. Returns a dict of ids."""
    acme = Customer(name="Acme Corp", company="Acme Corporation", email="orders@acme.test")
    globex = Customer(name="Globex", company="Globex Industries")
    widget = InventoryItem(sku="WID-A", name="Widget A", unit_price=Decimal("12.50"), current_stock=0)
    gadget = InventoryItem(sku="GAD-B", name="Gadget B", unit_price=Decimal("4.00"), current_stock=0)
    db.add_all([acme, globex, widget, gadget])
    db.commit()

    seeding = session_factory()
    try:
        stock = StockLedger(seeding, locks=locks)
        stock.receive(widget.id, 50, actor_id="seed", correlation_id="seed")
        stock.receive(gadget.id, 20, actor_id="seed", correlation_id="seed")
    finally:
        seeding.close()
    db.expire_all()

    return {"acme": acme.id, "globex": globex.id, "widget": widget.id, "gadget": gadget.id}


@pytest.fixture
def set_stock(session_factory, locks):
    """Move an item's stock to an exact level through receipt/reserve movements."""

    def _set(item_id: str, level: int) -> None:
        session = session_factory()
        try:
            stock = StockLedger(session, locks=locks)
            current = stock.current_stock(item_id)
            if level > current:
                stock.receive(item_id, level - current, actor_id="seed", correlation_id="seed")
            elif level < current:
                handle = stock.reserve([(item_id, current - level)], correlation_id="seed", actor_id="seed")
                stock.commit(handle, actor_id="seed")
        finally:
            session.close()

    return _set


@pytest.fixture
def reconciler(db, ledger, cache):
    return ReconciliationEngine(db, ledger, EntityMatcher(db), cache)


@pytest.fixture
def make_reconciler(session_factory, cache, locks):
    """Build an engine on its own session, for use from worker threads.

    Engines share one document lock registry unless given their own, which
    stands in for a second process.
    """
    sessions = []
    shared_document_locks = KeyedLockRegistry()

    def _make(document_locks=None):
        session = session_factory()
        sessions.append(session)
        return ReconciliationEngine(
            session,
            StockLedger(session, cache, locks=locks, retry_backoff=0.0),
            EntityMatcher(session),
            cache,
            document_locks=document_locks or shared_document_locks,
        )

    yield _make
    for session in sessions:
        session.close()


def no_sleep(seconds):
    async def _noop():
        return None
    return _noop()


@pytest.fixture
def make_pipeline():
    def _make(capability, **kwargs):
        kwargs.setdefault("thresholds", Thresholds(auto_approve=0.7, review=0.4, total_tolerance=0.01))
        kwargs.setdefault("max_attempts", 3)
        kwargs.setdefault("backoff_seconds", 0.0)
        kwargs.setdefault("timeout_seconds", 5.0)
        kwargs.setdefault("sleep", no_sleep)
        return ExtractionPipeline(capability, **kwargs)

    return _make


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {create_access_token('user-1', 'staff')}"}

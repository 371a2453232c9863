"""
Pytest fixtures for the stock kernel test suite.

Provides:
- A fresh in-memory SQLite database per test (schema created from the ORM)
- A session the test owns (services flush, the fixture rolls back)
- Deterministic clock, in-memory catalog, and recording event sink
- Every service and selector wired to the same session, clock and publisher
- A `receive` helper that creates units with strictly increasing
  acquisition dates

Concurrency tests build their own file-backed database; see
tests/concurrency/.
"""

import json
import logging
from decimal import Decimal
from io import StringIO
from typing import Generator
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import Session

from stock_kernel.catalog import InMemoryCatalog
from stock_kernel.db.engine import (
    create_tables,
    get_session,
    init_engine_from_url,
    reset_engine,
)
from stock_kernel.domain.attributes import ProductCategory
from stock_kernel.domain.clock import DeterministicClock
from stock_kernel.domain.dtos import TagStatus, TagType
from stock_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from stock_kernel.models.tag import Tag
from stock_kernel.selectors.inventory_selector import InventorySelector
from stock_kernel.selectors.ownership_selector import OwnershipChecker
from stock_kernel.selectors.tag_selector import TagSelector
from stock_kernel.services.allocation_engine import AllocationEngine
from stock_kernel.services.event_publisher import EventPublisher, RecordingEventSink
from stock_kernel.services.instance_store import InstanceStore
from stock_kernel.services.loan_service import LoanService
from stock_kernel.services.stock_service import StockService
from stock_kernel.services.tag_lifecycle import TagLifecycleManager

TEST_ACTOR = "test-actor"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow_locks: mark test as potentially waiting for DB locks"
    )


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture stock_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, lifecycle):
            lifecycle.create(...)
            logs = captured_logs()
            assert any(r["message"] == "tag_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("stock_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_engine():
    """Fresh in-memory database with every table created."""
    engine = init_engine_from_url("sqlite://")
    create_tables()
    yield engine
    reset_engine()


@pytest.fixture
def session(db_engine) -> Generator[Session, None, None]:
    sess = get_session()
    yield sess
    sess.rollback()
    sess.close()


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock()


@pytest.fixture
def catalog() -> InMemoryCatalog:
    """
    A small catalog:
        WALL-WHITE   wall panel, 100.00
        TOILET-1     toilet, 250.00
        SEAT-1       accessory, 20.00
        TOILET-KIT   bundle of 1 TOILET-1 + 2 SEAT-1
        DRILL-1      tool, 80.00
        SAW-1        tool, 120.00
    """
    cat = InMemoryCatalog()
    cat.register(
        "WALL-WHITE",
        "100.00",
        ProductCategory.WALL,
        attributes={
            "product_line": "Classic",
            "color_name": "White",
            "dimensions": "60x96",
            "finish": "Gloss",
        },
    )
    cat.register("TOILET-1", "250.00", ProductCategory.TOILET, attributes={"name": "Toilet"})
    cat.register("SEAT-1", "20.00", ProductCategory.ACCESSORY, attributes={"name": "Seat"})
    cat.register(
        "TOILET-KIT",
        "300.00",
        ProductCategory.TOILET,
        components=[("TOILET-1", 1), ("SEAT-1", 2)],
    )
    cat.register("DRILL-1", "80.00", ProductCategory.TOOL, attributes={"name": "Drill"})
    cat.register("SAW-1", "120.00", ProductCategory.TOOL, attributes={"name": "Saw"})
    return cat


@pytest.fixture
def recorder() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def publisher(recorder) -> EventPublisher:
    return EventPublisher([recorder])


# =============================================================================
# Services and selectors
# =============================================================================


@pytest.fixture
def store(session, clock) -> InstanceStore:
    return InstanceStore(session, clock)


@pytest.fixture
def allocation_engine(session, store, publisher, clock) -> AllocationEngine:
    return AllocationEngine(session, store=store, publisher=publisher, clock=clock)


@pytest.fixture
def lifecycle(session, catalog, allocation_engine, publisher, clock) -> TagLifecycleManager:
    return TagLifecycleManager(
        session, catalog, engine=allocation_engine, publisher=publisher, clock=clock
    )


@pytest.fixture
def stock_service(session, catalog, lifecycle, clock) -> StockService:
    return StockService(session, catalog, lifecycle=lifecycle, clock=clock)


@pytest.fixture
def loan_service(session, catalog, lifecycle, clock) -> LoanService:
    return LoanService(session, catalog, lifecycle=lifecycle, clock=clock)


@pytest.fixture
def inventory(session) -> InventorySelector:
    return InventorySelector(session, low_stock_threshold=2, overstock_threshold=10)


@pytest.fixture
def tag_selector(session) -> TagSelector:
    return TagSelector(session)


@pytest.fixture
def checker(session) -> OwnershipChecker:
    return OwnershipChecker(session)


@pytest.fixture
def make_tag(session, clock):
    """
    Insert a bare active tag row (no lines) and return its id.

    For tests that exercise the store or engine below the lifecycle layer.
    """

    def _make(tag_type: TagType = TagType.RESERVED) -> UUID:
        tag = Tag(
            id=uuid4(),
            tag_type=tag_type.value,
            status=TagStatus.ACTIVE.value,
            created_by=TEST_ACTOR,
            created_at=clock.now(),
            updated_at=clock.now(),
        )
        session.add(tag)
        session.flush()
        return tag.id

    return _make


@pytest.fixture
def receive(store, clock):
    """
    Create units one at a time, one second apart.

    Usage::

        units = receive("TOILET-1", costs=[10, 20, 30])
        # units[0] is the oldest
    """

    def _receive(catalog_entry_id: str, costs=None, count: int | None = None, location=None):
        if costs is None:
            costs = [Decimal("10")] * (count or 1)
        records = []
        for cost in costs:
            clock.advance(1)
            records.append(
                store.create(
                    catalog_entry_id,
                    Decimal(str(cost)),
                    location,
                    added_by=TEST_ACTOR,
                )
            )
        return records

    return _receive

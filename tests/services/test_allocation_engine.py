"""
AllocationEngine unit tests.

Tests cover:
- fifo and cost_based selection order
- Manual selection validation (unknown, duplicate, foreign, owned, count)
- Insufficient stock leaves every instance untouched
- Lost race: partial claim undone, retried, or reported as insufficient
- Release and transfer are conditional on the current owner
- One event per completed transition
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from stock_kernel.domain.dtos import SelectionMethod
from stock_kernel.domain.events import StockEventType
from stock_kernel.exceptions import (
    ConsistencyViolationError,
    InsufficientStockError,
    InvalidSelectionError,
)
from stock_kernel.services.allocation_engine import AllocationEngine
from stock_kernel.services.instance_store import InstanceStore


class RacingInstanceStore(InstanceStore):
    """
    Store whose first `steal` selections lose one candidate to a rival tag
    between the SELECT and the conditional UPDATE.
    """

    def __init__(self, session, clock, rival_tag_id, steal: int = 1):
        super().__init__(session, clock)
        self.rival_tag_id = rival_tag_id
        self.remaining_steals = steal

    def find_available(self, catalog_entry_id, method=SelectionMethod.FIFO, limit=None):
        candidates = super().find_available(catalog_entry_id, method, limit)
        if self.remaining_steals and candidates:
            self.remaining_steals -= 1
            self.set_owner([candidates[0].id], self.rival_tag_id, expected_owner=None)
        return candidates


def _owner_map(store, units):
    return {r.id: r.tag_id for r in store.get_many([u.id for u in units])}


# =============================================================================
# Selection order
# =============================================================================


class TestSelectionMethods:
    def test_fifo_takes_oldest(self, allocation_engine, receive, make_tag):
        units = receive("TOILET-1", costs=[30, 10, 20])
        tag_id = make_tag()

        result = allocation_engine.allocate(tag_id, "TOILET-1", 2, SelectionMethod.FIFO)

        assert result.instance_ids == (units[0].id, units[1].id)
        assert result.quantity == 2
        assert result.attempts == 1

    def test_cost_based_takes_cheapest(self, allocation_engine, receive, make_tag):
        units = receive("TOILET-1", costs=[30, 10, 20])
        tag_id = make_tag()

        result = allocation_engine.allocate(
            tag_id, "TOILET-1", 2, SelectionMethod.COST_BASED
        )

        assert result.instance_ids == (units[1].id, units[2].id)

    def test_cost_based_tie_broken_by_date(self, allocation_engine, receive, make_tag):
        units = receive("TOILET-1", costs=[15, 15, 5])
        tag_id = make_tag()

        result = allocation_engine.allocate(
            tag_id, "TOILET-1", 2, SelectionMethod.COST_BASED
        )

        assert result.instance_ids == (units[2].id, units[0].id)

    def test_allocated_units_owned_by_tag(self, allocation_engine, store, receive, make_tag):
        units = receive("TOILET-1", count=3)
        tag_id = make_tag()

        allocation_engine.allocate(tag_id, "TOILET-1", 2)

        owners = _owner_map(store, units)
        assert owners[units[0].id] == tag_id
        assert owners[units[1].id] == tag_id
        assert owners[units[2].id] is None

    def test_second_tag_gets_remaining_units(self, allocation_engine, receive, make_tag):
        units = receive("TOILET-1", count=3)
        first, second = make_tag(), make_tag()

        allocation_engine.allocate(first, "TOILET-1", 2)
        result = allocation_engine.allocate(second, "TOILET-1", 1)

        assert result.instance_ids == (units[2].id,)


# =============================================================================
# Insufficient stock
# =============================================================================


class TestInsufficientStock:
    def test_raises_with_counts(self, allocation_engine, receive, make_tag):
        receive("TOILET-1", count=2)

        with pytest.raises(InsufficientStockError) as exc_info:
            allocation_engine.allocate(make_tag(), "TOILET-1", 3)

        assert exc_info.value.requested == 3
        assert exc_info.value.available == 2
        assert exc_info.value.code == "INSUFFICIENT_STOCK"

    def test_no_ownership_change(self, allocation_engine, store, receive, make_tag):
        units = receive("TOILET-1", count=2)

        with pytest.raises(InsufficientStockError):
            allocation_engine.allocate(make_tag(), "TOILET-1", 3)

        assert set(_owner_map(store, units).values()) == {None}

    def test_unknown_entry_has_no_stock(self, allocation_engine, make_tag):
        with pytest.raises(InsufficientStockError) as exc_info:
            allocation_engine.allocate(make_tag(), "NOPE", 1)
        assert exc_info.value.available == 0

    def test_non_positive_quantity_rejected(self, allocation_engine, receive, make_tag):
        receive("TOILET-1", count=1)
        with pytest.raises(ValueError):
            allocation_engine.allocate(make_tag(), "TOILET-1", 0)

    def test_manual_ids_with_fifo_rejected(self, allocation_engine, receive, make_tag):
        units = receive("TOILET-1", count=1)
        with pytest.raises(ValueError):
            allocation_engine.allocate(
                make_tag(), "TOILET-1", 1, SelectionMethod.FIFO, [units[0].id]
            )


# =============================================================================
# Manual selection
# =============================================================================


class TestManualSelection:
    def test_exact_ids_claimed(self, allocation_engine, store, receive, make_tag):
        units = receive("TOILET-1", count=3)
        tag_id = make_tag()

        result = allocation_engine.allocate(
            tag_id, "TOILET-1", None, SelectionMethod.MANUAL, [units[2].id]
        )

        assert result.instance_ids == (units[2].id,)
        assert result.method == SelectionMethod.MANUAL
        assert store.get(units[2].id).tag_id == tag_id

    def test_empty_selection(self, allocation_engine, make_tag):
        with pytest.raises(InvalidSelectionError):
            allocation_engine.allocate(make_tag(), "TOILET-1", None, SelectionMethod.MANUAL, [])

    def test_duplicate_ids(self, allocation_engine, receive, make_tag):
        unit = receive("TOILET-1")[0]
        with pytest.raises(InvalidSelectionError, match="duplicate"):
            allocation_engine.allocate(
                make_tag(), "TOILET-1", None, SelectionMethod.MANUAL, [unit.id, unit.id]
            )

    def test_quantity_mismatch(self, allocation_engine, receive, make_tag):
        units = receive("TOILET-1", count=2)
        with pytest.raises(InvalidSelectionError, match="does not match"):
            allocation_engine.allocate(
                make_tag(), "TOILET-1", 3, SelectionMethod.MANUAL, [u.id for u in units]
            )

    def test_unknown_id(self, allocation_engine, receive, make_tag):
        unit = receive("TOILET-1")[0]
        missing = uuid4()

        with pytest.raises(InvalidSelectionError) as exc_info:
            allocation_engine.allocate(
                make_tag(), "TOILET-1", None, SelectionMethod.MANUAL, [unit.id, missing]
            )

        assert exc_info.value.instance_ids == [str(missing)]

    def test_other_catalog_entry(self, allocation_engine, store, receive, make_tag):
        toilet = receive("TOILET-1")[0]
        seat = receive("SEAT-1")[0]

        with pytest.raises(InvalidSelectionError, match="another catalog entry"):
            allocation_engine.allocate(
                make_tag(), "TOILET-1", None, SelectionMethod.MANUAL, [toilet.id, seat.id]
            )

        assert store.get(toilet.id).tag_id is None

    def test_already_owned(self, allocation_engine, store, receive, make_tag):
        units = receive("TOILET-1", count=2)
        holder = make_tag()
        allocation_engine.allocate(holder, "TOILET-1", None, SelectionMethod.MANUAL, [units[0].id])

        with pytest.raises(InvalidSelectionError, match="already allocated"):
            allocation_engine.allocate(
                make_tag(), "TOILET-1", None, SelectionMethod.MANUAL, [u.id for u in units]
            )

        owners = _owner_map(store, units)
        assert owners[units[0].id] == holder
        assert owners[units[1].id] is None


# =============================================================================
# Lost races
# =============================================================================


class TestLostRace:
    def test_retry_succeeds_with_fresh_candidates(
        self, session, clock, publisher, receive, make_tag
    ):
        units = receive("TOILET-1", count=3)
        rival, tag_id = make_tag(), make_tag()
        racing = RacingInstanceStore(session, clock, rival)
        engine = AllocationEngine(
            session, store=racing, publisher=publisher, clock=clock, allocation_retries=1
        )

        result = engine.allocate(tag_id, "TOILET-1", 2)

        assert result.attempts == 2
        assert result.instance_ids == (units[1].id, units[2].id)
        owners = _owner_map(racing, units)
        assert owners[units[0].id] == rival

    def test_partial_claim_released_before_failing(
        self, session, clock, publisher, receive, make_tag, captured_logs
    ):
        units = receive("TOILET-1", count=2)
        rival, tag_id = make_tag(), make_tag()
        racing = RacingInstanceStore(session, clock, rival)
        engine = AllocationEngine(
            session, store=racing, publisher=publisher, clock=clock, allocation_retries=0
        )

        with pytest.raises(InsufficientStockError) as exc_info:
            engine.allocate(tag_id, "TOILET-1", 2)

        assert exc_info.value.available == 1
        owners = _owner_map(racing, units)
        assert owners[units[0].id] == rival
        assert owners[units[1].id] is None
        assert any(r["message"] == "allocation_race_lost" for r in captured_logs())

    def test_retries_exhausted(self, session, clock, publisher, receive, make_tag):
        receive("TOILET-1", count=5)
        rival, tag_id = make_tag(), make_tag()
        racing = RacingInstanceStore(session, clock, rival, steal=3)
        engine = AllocationEngine(
            session, store=racing, publisher=publisher, clock=clock, allocation_retries=2
        )

        with pytest.raises(InsufficientStockError):
            engine.allocate(tag_id, "TOILET-1", 2)

        assert racing.find_by_owner(tag_id) == []
        assert racing.count_available("TOILET-1") == 2

    def test_negative_retries_rejected(self, session):
        with pytest.raises(ValueError):
            AllocationEngine(session, allocation_retries=-1)


# =============================================================================
# Release and transfer
# =============================================================================


class TestReleaseAndTransfer:
    def test_release_returns_units_to_pool(self, allocation_engine, store, receive, make_tag):
        units = receive("TOILET-1", count=2)
        tag_id = make_tag()
        result = allocation_engine.allocate(tag_id, "TOILET-1", 2)

        released = allocation_engine.release(tag_id, result.instance_ids, "bob", "TOILET-1")

        assert released == 2
        assert store.count_available("TOILET-1") == 2
        # Release never deletes.
        assert len(store.get_many([u.id for u in units])) == 2

    def test_release_of_foreign_units_is_violation(
        self, allocation_engine, store, receive, make_tag, captured_logs
    ):
        units = receive("TOILET-1", count=2)
        owner, other = make_tag(), make_tag()
        allocation_engine.allocate(owner, "TOILET-1", 2)

        with pytest.raises(ConsistencyViolationError) as exc_info:
            allocation_engine.release(other, [u.id for u in units], "bob")

        assert exc_info.value.recoverable is False
        critical = [r for r in captured_logs() if r["level"] == "CRITICAL"]
        assert critical and critical[0]["message"] == "ownership_consistency_violation"
        assert store.count_available("TOILET-1") == 0

    def test_release_empty_is_noop(self, allocation_engine, recorder, make_tag):
        assert allocation_engine.release(make_tag(), []) == 0
        assert recorder.events == []

    def test_transfer_moves_owner_directly(self, allocation_engine, store, receive, make_tag):
        units = receive("DRILL-1", count=2)
        loan, repair = make_tag(), make_tag()
        allocation_engine.allocate(loan, "DRILL-1", 2)

        moved = allocation_engine.transfer(loan, repair, [units[0].id], "bob", "DRILL-1")

        assert moved == 1
        owners = _owner_map(store, units)
        assert owners[units[0].id] == repair
        assert owners[units[1].id] == loan
        assert store.count_available("DRILL-1") == 0

    def test_transfer_from_wrong_owner_is_violation(
        self, allocation_engine, receive, make_tag
    ):
        units = receive("DRILL-1", count=1)
        with pytest.raises(ConsistencyViolationError):
            allocation_engine.transfer(make_tag(), make_tag(), [units[0].id], "bob")


# =============================================================================
# Events
# =============================================================================


class TestEvents:
    def test_allocate_publishes_one_event(self, allocation_engine, recorder, receive, make_tag):
        receive("TOILET-1", count=2)
        tag_id = make_tag()

        result = allocation_engine.allocate(
            tag_id, "TOILET-1", 2, SelectionMethod.COST_BASED, actor="carol"
        )

        events = recorder.of_type(StockEventType.ALLOCATED)
        assert len(events) == 1
        event = events[0]
        assert event.tag_id == tag_id
        assert event.catalog_entry_id == "TOILET-1"
        assert event.instance_ids == result.instance_ids
        assert event.method == SelectionMethod.COST_BASED
        assert event.actor == "carol"

    def test_failed_allocation_publishes_nothing(self, allocation_engine, recorder, make_tag):
        with pytest.raises(InsufficientStockError):
            allocation_engine.allocate(make_tag(), "TOILET-1", 1)
        assert recorder.events == []

    def test_transfer_event_names_destination(
        self, allocation_engine, recorder, receive, make_tag
    ):
        receive("DRILL-1")
        loan, repair = make_tag(), make_tag()
        result = allocation_engine.allocate(loan, "DRILL-1", 1)

        allocation_engine.transfer(loan, repair, result.instance_ids, "bob")

        event = recorder.of_type(StockEventType.TRANSFERRED)[0]
        assert event.tag_id == loan
        assert event.details["to_tag_id"] == str(repair)

    def test_cost_is_frozen_across_transitions(
        self, allocation_engine, store, receive, make_tag
    ):
        unit = receive("TOILET-1", costs=[Decimal("123.45")])[0]
        tag_id = make_tag()
        allocation_engine.allocate(tag_id, "TOILET-1", 1)
        allocation_engine.release(tag_id, [unit.id])

        assert store.get(unit.id).acquisition_cost == Decimal("123.45")

"""
Tool loan tests.

Tests cover:
- Checkout only accepts tool catalog entries
- Functional returns release units back to the pool (never delete)
- Damaged returns move units onto a new broken/imperfect tag
- Partial returns keep the loan active until every unit is back
- Returns against non-loan or terminal tags are rejected
"""

from datetime import timedelta

import pytest

from stock_kernel.domain.dtos import (
    LineRemoval,
    LineRequest,
    ReturnCondition,
    SelectionMethod,
    TagStatus,
    TagType,
)
from stock_kernel.domain.events import StockEventType
from stock_kernel.exceptions import (
    CatalogCategoryMismatchError,
    InvalidSelectionError,
    InvalidTransitionError,
)
from tests.conftest import TEST_ACTOR


@pytest.fixture
def drills(receive):
    return receive("DRILL-1", count=3)


@pytest.fixture
def loan(loan_service, drills, clock):
    return loan_service.checkout(
        [LineRequest("DRILL-1", 2)],
        TEST_ACTOR,
        customer_name="Site crew",
        due_date=clock.now() + timedelta(days=3),
    )


class TestCheckout:
    def test_checkout_creates_loaned_tag(self, loan, drills):
        assert loan.tag_type == TagType.LOANED
        assert loan.status == TagStatus.ACTIVE
        assert loan.line_for("DRILL-1").instance_ids == (drills[0].id, drills[1].id)

    def test_non_tool_rejected(self, loan_service, store, receive):
        receive("TOILET-1")

        with pytest.raises(CatalogCategoryMismatchError) as exc_info:
            loan_service.checkout([LineRequest("TOILET-1", 1)], TEST_ACTOR)

        assert exc_info.value.expected == "tool"
        assert exc_info.value.actual == "toilet"
        assert store.count_available("TOILET-1") == 1

    def test_mixed_tools(self, loan_service, receive):
        receive("DRILL-1")
        receive("SAW-1")

        tag = loan_service.checkout(
            [LineRequest("DRILL-1", 1), LineRequest("SAW-1", 1)], TEST_ACTOR
        )

        assert tag.total_quantity == 2


class TestFunctionalReturn:
    def test_return_everything(self, loan_service, store, loan, drills):
        result = loan_service.return_tools(loan.id, "bob")

        assert result.loan.status == TagStatus.FULFILLED
        assert result.condition == ReturnCondition.FUNCTIONAL
        assert result.condition_tag_id is None
        assert set(result.returned_instance_ids) == {drills[0].id, drills[1].id}
        # Returned tools still exist and are available again.
        assert store.count_available("DRILL-1") == 3

    def test_partial_return_keeps_loan_active(self, loan_service, store, loan, drills):
        result = loan_service.return_tools(
            loan.id, "bob", returns={"DRILL-1": [drills[1].id]}
        )

        assert result.loan.status == TagStatus.ACTIVE
        assert result.loan.line_for("DRILL-1").instance_ids == (drills[0].id,)
        assert store.get(drills[1].id).is_available

    def test_return_notes_appended(self, loan_service, loan):
        result = loan_service.return_tools(loan.id, "bob", notes="returned clean")
        assert result.loan.notes == "returned clean"

    def test_returned_event(self, loan_service, recorder, loan):
        recorder.clear()

        loan_service.return_tools(loan.id, "bob")

        returned = recorder.of_type(StockEventType.RETURNED)
        assert len(returned) == 1
        assert returned[0].details["condition"] == "functional"
        assert len(recorder.of_type(StockEventType.RELEASED)) == 1


class TestDamagedReturn:
    def test_broken_units_move_to_broken_tag(
        self, loan_service, lifecycle, store, inventory, checker, loan, drills
    ):
        result = loan_service.return_tools(
            loan.id,
            "bob",
            returns={"DRILL-1": [drills[0].id]},
            condition=ReturnCondition.BROKEN,
            notes="chuck cracked",
        )

        broken = lifecycle.get(result.condition_tag_id)
        assert broken.tag_type == TagType.BROKEN
        assert broken.status == TagStatus.ACTIVE
        line = broken.line_for("DRILL-1")
        assert line.instance_ids == (drills[0].id,)
        assert line.method == SelectionMethod.MANUAL
        assert "chuck cracked" in broken.notes
        assert store.get(drills[0].id).tag_id == broken.id

        snapshot = inventory.get_snapshot("DRILL-1")
        assert snapshot.broken == 1
        assert snapshot.loaned == 1
        assert snapshot.available == 1
        checker.assert_consistent()

    def test_needs_maintenance_goes_to_imperfect(self, loan_service, lifecycle, loan):
        result = loan_service.return_tools(
            loan.id, "bob", condition=ReturnCondition.NEEDS_MAINTENANCE
        )

        assert result.loan.status == TagStatus.FULFILLED
        condition_tag = lifecycle.get(result.condition_tag_id)
        assert condition_tag.tag_type == TagType.IMPERFECT
        assert condition_tag.total_quantity == 2

    def test_damaged_return_never_deletes(self, loan_service, store, loan, drills):
        loan_service.return_tools(loan.id, "bob", condition=ReturnCondition.BROKEN)
        assert len(store.get_many([d.id for d in drills])) == 3

    def test_repaired_units_released_by_cancelling_condition_tag(
        self, loan_service, lifecycle, store, loan
    ):
        result = loan_service.return_tools(
            loan.id, "bob", condition=ReturnCondition.NEEDS_MAINTENANCE
        )

        lifecycle.cancel(result.condition_tag_id, "bob", reason="repaired")

        assert store.count_available("DRILL-1") == 3


class TestReturnValidation:
    def test_foreign_ids_rejected(self, loan_service, loan, drills):
        with pytest.raises(InvalidSelectionError, match="not on this loan"):
            loan_service.return_tools(loan.id, "bob", returns={"DRILL-1": [drills[2].id]})

    def test_empty_mapping_rejected(self, loan_service, loan):
        with pytest.raises(ValueError):
            loan_service.return_tools(loan.id, "bob", returns={})

    def test_non_loan_tag_rejected(self, lifecycle, receive):
        receive("DRILL-1")
        reserved = lifecycle.create(
            TagType.RESERVED, [LineRequest("DRILL-1", 1)], TEST_ACTOR
        )
        with pytest.raises(InvalidTransitionError):
            lifecycle.return_loan(reserved.id, "bob")

    def test_returned_loan_is_terminal(self, loan_service, loan):
        loan_service.return_tools(loan.id, "bob")
        with pytest.raises(InvalidTransitionError):
            loan_service.return_tools(loan.id, "bob")

    def test_nothing_left_to_return(self, loan_service, lifecycle, loan, drills):
        lifecycle.remove_items(loan.id, [LineRemoval("DRILL-1", 2)], "bob")

        with pytest.raises(InvalidSelectionError):
            loan_service.return_tools(loan.id, "bob")

"""
Event delivery tests.

A failing sink must never fail the transition that triggered it.
"""

import pytest

from stock_kernel.domain.dtos import LineRequest, SelectionMethod, TagType
from stock_kernel.domain.events import StockEvent, StockEventType
from stock_kernel.services.event_publisher import (
    EventPublisher,
    LoggingEventSink,
    RecordingEventSink,
)
from tests.conftest import TEST_ACTOR


def _event(clock, **overrides):
    fields = dict(
        event_type=StockEventType.ALLOCATED,
        actor=TEST_ACTOR,
        occurred_at=clock.now(),
        catalog_entry_id="SEAT-1",
        method=SelectionMethod.FIFO,
    )
    fields.update(overrides)
    return StockEvent(**fields)


class TestStockEvent:
    def test_details_are_frozen(self, clock):
        event = _event(clock, details={"reason": "x"})
        with pytest.raises(TypeError):
            event.details["reason"] = "y"

    def test_log_dict_flattens_details(self, clock):
        event = _event(clock, details={"to_tag_id": "abc"})

        flat = event.to_log_dict()

        assert flat["event_type"] == "allocated"
        assert flat["method"] == "fifo"
        assert flat["quantity"] == 0
        assert flat["detail_to_tag_id"] == "abc"


class TestEventPublisher:
    def test_sinks_called_in_order(self, clock):
        calls = []
        publisher = EventPublisher([
            lambda e: calls.append("first"),
            lambda e: calls.append("second"),
        ])

        publisher.publish(_event(clock))

        assert calls == ["first", "second"]

    def test_failing_sink_is_logged_and_skipped(self, clock, captured_logs):
        def broken(event):
            raise RuntimeError("sink down")

        recorder = RecordingEventSink()
        publisher = EventPublisher([broken, recorder])

        publisher.publish(_event(clock))

        assert len(recorder.events) == 1
        failures = [r for r in captured_logs() if r["message"] == "event_sink_failed"]
        assert len(failures) == 1
        assert failures[0]["exc_type"] == "RuntimeError"

    def test_unsubscribe(self, clock):
        recorder = RecordingEventSink()
        publisher = EventPublisher()
        publisher.subscribe(recorder)
        publisher.unsubscribe(recorder)

        publisher.publish(_event(clock))

        assert recorder.events == []
        assert publisher.sinks == ()

    def test_failing_sink_does_not_fail_allocation(
        self, lifecycle, publisher, store, receive
    ):
        def broken(event):
            raise RuntimeError("sink down")

        publisher.subscribe(broken)
        receive("SEAT-1", count=2)

        tag = lifecycle.create(TagType.RESERVED, [LineRequest("SEAT-1", 2)], TEST_ACTOR)

        assert len(store.find_by_owner(tag.id)) == 2


class TestLoggingEventSink:
    def test_writes_structured_record(self, clock, captured_logs):
        sink = LoggingEventSink()

        sink(_event(clock, event_type=StockEventType.RELEASED))

        record = captured_logs()[-1]
        assert record["message"] == "stock_released"
        assert record["logger"] == "stock_kernel.events"
        assert record["catalog_entry_id"] == "SEAT-1"
        assert record["event_type"] == "released"

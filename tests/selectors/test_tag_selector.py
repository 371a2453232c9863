"""
TagSelector tests: customer lookup, active listings, overdue loans, counts.
"""

from datetime import timedelta
from uuid import uuid4

from stock_kernel.domain.dtos import LineRequest, TagStatus, TagType
from tests.conftest import TEST_ACTOR


def _tag(lifecycle, entry, tag_type=TagType.RESERVED, **kwargs):
    return lifecycle.create(tag_type, [LineRequest(entry, 1)], TEST_ACTOR, **kwargs)


class TestTagSelector:
    def test_get(self, tag_selector, lifecycle, receive):
        receive("SEAT-1")
        tag = _tag(lifecycle, "SEAT-1")

        assert tag_selector.get(tag.id) == tag
        assert tag_selector.get(uuid4()) is None

    def test_list_active_filters_type_and_status(
        self, tag_selector, lifecycle, clock, receive
    ):
        receive("SEAT-1", count=3)
        receive("DRILL-1")
        reserved = _tag(lifecycle, "SEAT-1")
        clock.advance(1)
        cancelled = _tag(lifecycle, "SEAT-1")
        lifecycle.cancel(cancelled.id, TEST_ACTOR)
        clock.advance(1)
        loan = _tag(lifecycle, "DRILL-1", TagType.LOANED)

        assert [t.id for t in tag_selector.list_active()] == [reserved.id, loan.id]
        assert [t.id for t in tag_selector.list_active(TagType.LOANED)] == [loan.id]

    def test_list_by_customer_is_case_insensitive(self, tag_selector, lifecycle, receive):
        receive("SEAT-1", count=3)
        smith = _tag(lifecycle, "SEAT-1", customer_name="Anna Smith")
        _tag(lifecycle, "SEAT-1", customer_name="Bob Jones")
        smithson = _tag(lifecycle, "SEAT-1", customer_name="SMITHSON Builders")
        lifecycle.cancel(smithson.id, TEST_ACTOR)

        assert {t.id for t in tag_selector.list_by_customer("smith")} == {
            smith.id,
            smithson.id,
        }
        active = tag_selector.list_by_customer("smith", status=TagStatus.ACTIVE)
        assert [t.id for t in active] == [smith.id]

    def test_customer_search_escapes_wildcards(self, tag_selector, lifecycle, receive):
        receive("SEAT-1")
        _tag(lifecycle, "SEAT-1", customer_name="Acme")
        assert tag_selector.list_by_customer("%") == []

    def test_list_overdue(self, tag_selector, lifecycle, clock, receive):
        receive("DRILL-1", count=3)
        now = clock.now()
        late = _tag(lifecycle, "DRILL-1", TagType.LOANED, due_date=now - timedelta(days=2))
        later = _tag(lifecycle, "DRILL-1", TagType.LOANED, due_date=now - timedelta(days=1))
        _tag(lifecycle, "DRILL-1", TagType.LOANED, due_date=now + timedelta(days=1))

        overdue = tag_selector.list_overdue(now)

        assert [t.id for t in overdue] == [late.id, later.id]

        lifecycle.return_loan(late.id, TEST_ACTOR)
        assert [t.id for t in tag_selector.list_overdue(now)] == [later.id]

    def test_status_counts(self, tag_selector, lifecycle, receive):
        receive("SEAT-1", count=3)
        first = _tag(lifecycle, "SEAT-1")
        _tag(lifecycle, "SEAT-1")
        third = _tag(lifecycle, "SEAT-1")
        lifecycle.cancel(first.id, TEST_ACTOR)
        lifecycle.fulfill_all(third.id, TEST_ACTOR)

        counts = tag_selector.status_counts()

        assert counts == {
            (TagType.RESERVED, TagStatus.ACTIVE): 1,
            (TagType.RESERVED, TagStatus.CANCELLED): 1,
            (TagType.RESERVED, TagStatus.FULFILLED): 1,
        }

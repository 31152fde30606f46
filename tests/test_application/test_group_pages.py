"""
Tests for per-group "load more" paging.
"""
import pytest
from datetime import datetime, timezone
from decimal import Decimal

from studyfin.domain.finance import (
    Aggregate, Group, GroupLoadFailed, GroupRef, PaymentRecord, RecordPage, ReportPeriod,
)
from studyfin.application.group_pages import (
    GroupPageTracker, LOAD_FAILED_MESSAGE, LOAD_TIMED_OUT_MESSAGE,
)


_D = Decimal
FEE = GroupRef("payments", "monthly_fee")
RENT = GroupRef("expenses", "Rent")


def _rec(id):
    return PaymentRecord(
        id=id, amount=_D("100"),
        occurred_at=datetime(2026, 10, 1, tzinfo=timezone.utc),
        payment_type="monthly_fee",
    )


def _aggregate(loaded=2, total=5):
    return Aggregate(
        period=ReportPeriod.parse("2026-10-01", "2026-10-31"),
        total_income=_D(100 * total),
        total_expenses=_D("0"),
        payment_groups=[Group("monthly_fee", "monthly_fee", _D(100 * total), total,
                              [_rec(i) for i in range(1, loaded + 1)])],
        expense_groups=[Group("Rent", "Rent", _D("0"), 0, [])],
    )


class FakeServer:
    """Serves ids 1..total in pages of page_size, records every call"""

    def __init__(self, total=5):
        self.total = total
        self.calls = []

    def __call__(self, ref, page, page_size):
        self.calls.append((ref, page, page_size))
        start = page * page_size
        ids = range(start + 1, min(start + page_size, self.total) + 1)
        return RecordPage(items=[_rec(i) for i in ids], total=self.total)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestReset:

    def test_initial_state_from_aggregate(self):
        tracker = GroupPageTracker(FakeServer(), page_size=2)
        tracker.reset(_aggregate(loaded=2, total=5))
        state = tracker.state(FEE)
        assert state.page == 0
        assert state.loaded_count == 2
        assert state.total_count == 5
        assert not tracker.is_exhausted(FEE)

    def test_empty_group_is_exhausted(self):
        tracker = GroupPageTracker(FakeServer(), page_size=2)
        tracker.reset(_aggregate())
        assert tracker.is_exhausted(RENT)

    def test_state_is_a_copy(self):
        tracker = GroupPageTracker(FakeServer(), page_size=2)
        tracker.reset(_aggregate())
        tracker.state(FEE).loaded_count = 99
        assert tracker.state(FEE).loaded_count == 2

    def test_reset_none_clears(self):
        tracker = GroupPageTracker(FakeServer(), page_size=2)
        tracker.reset(_aggregate())
        tracker.reset(None)
        assert tracker.state(FEE) is None


class TestLoadMore:

    def test_pages_until_exhausted(self):
        server = FakeServer(total=5)
        agg = _aggregate(loaded=2, total=5)
        tracker = GroupPageTracker(server, page_size=2)
        tracker.reset(agg)

        loaded = [tracker.state(FEE).loaded_count]
        while not tracker.is_exhausted(FEE):
            tracker.load_more(FEE)
            loaded.append(tracker.state(FEE).loaded_count)

        assert loaded == [2, 4, 5]
        assert [page for _, page, _ in server.calls] == [1, 2]
        assert [r.id for r in agg.find_group(FEE).items] == [1, 2, 3, 4, 5]

    def test_range_totals_untouched(self):
        agg = _aggregate(loaded=2, total=5)
        tracker = GroupPageTracker(FakeServer(total=5), page_size=2)
        tracker.reset(agg)
        tracker.load_more(FEE)
        group = agg.find_group(FEE)
        assert group.amount == _D("500")
        assert group.item_count == 5
        assert agg.total_income == _D("500")

    def test_exhausted_group_makes_no_request(self):
        server = FakeServer()
        tracker = GroupPageTracker(server, page_size=2)
        tracker.reset(_aggregate())
        assert tracker.load_more(RENT) == []
        assert server.calls == []

    def test_unknown_group_raises(self):
        tracker = GroupPageTracker(FakeServer(), page_size=2)
        tracker.reset(_aggregate())
        with pytest.raises(KeyError):
            tracker.load_more(GroupRef("payments", "nope"))

    def test_duplicates_not_appended(self):
        agg = _aggregate(loaded=2, total=5)

        def overlapping(ref, page, page_size):
            return RecordPage(items=[_rec(2), _rec(3)], total=5)

        tracker = GroupPageTracker(overlapping, page_size=2)
        tracker.reset(agg)
        added = tracker.load_more(FEE)
        assert [r.id for r in added] == [3]
        assert tracker.state(FEE).loaded_count == 3

    def test_empty_page_closes_group(self):
        tracker = GroupPageTracker(lambda ref, page, size: RecordPage(items=[], total=5), page_size=2)
        tracker.reset(_aggregate(loaded=2, total=5))
        assert tracker.load_more(FEE) == []
        assert tracker.is_exhausted(FEE)
        assert tracker.state(FEE).loaded_count == 2

    def test_repeated_rows_keep_group_open(self):
        # a delete + insert shifted the offset: page 1 repeats what is loaded
        pages = {1: [_rec(1), _rec(2)], 2: [_rec(3), _rec(4)]}
        calls = []

        def shifted(ref, page, page_size):
            calls.append(page)
            return RecordPage(items=pages.get(page, []), total=5)

        agg = _aggregate(loaded=2, total=5)
        tracker = GroupPageTracker(shifted, page_size=2)
        tracker.reset(agg)

        assert tracker.load_more(FEE) == []
        state = tracker.state(FEE)
        assert state.total_count == 5
        assert state.page == 1
        assert not tracker.is_exhausted(FEE)

        assert [r.id for r in tracker.load_more(FEE)] == [3, 4]
        assert calls == [1, 2]
        assert tracker.state(FEE).loaded_count == 4

    def test_shrinking_total_is_adopted(self):
        tracker = GroupPageTracker(lambda ref, page, size: RecordPage(items=[_rec(3)], total=3), page_size=2)
        tracker.reset(_aggregate(loaded=2, total=5))
        tracker.load_more(FEE)
        state = tracker.state(FEE)
        assert state.total_count == 3
        assert state.loaded_count == 3
        assert tracker.is_exhausted(FEE)


class TestInFlight:

    def test_second_request_ignored_while_loading(self):
        server = FakeServer(total=10)
        nested_results = []

        def reentrant(ref, page, page_size):
            nested_results.append(tracker.load_more(ref))
            assert tracker.is_loading(ref)
            return server(ref, page, page_size)

        tracker = GroupPageTracker(reentrant, page_size=2)
        tracker.reset(_aggregate(loaded=2, total=10))
        tracker.load_more(FEE)

        assert nested_results == [[]]
        assert len(server.calls) == 1
        assert not tracker.is_loading(FEE)

    def test_other_groups_independent(self):
        agg = _aggregate(loaded=2, total=5)
        agg.expense_groups[0].item_count = 3
        seen = []

        def fetch(ref, page, page_size):
            seen.append(ref)
            if ref == FEE:
                # a different group may start while this one is in flight
                tracker.load_more(RENT)
            return RecordPage(items=[], total=0)

        tracker = GroupPageTracker(fetch, page_size=2)
        tracker.reset(agg)
        tracker.load_more(FEE)
        assert seen == [FEE, RENT]


class TestFailure:

    def test_failure_reverts_to_idle_with_error(self):
        def broken(ref, page, page_size):
            raise ConnectionError("boom")

        tracker = GroupPageTracker(broken, page_size=2)
        tracker.reset(_aggregate())
        with pytest.raises(GroupLoadFailed) as exc:
            tracker.load_more(FEE)

        assert exc.value.ref == FEE
        assert isinstance(exc.value.cause, ConnectionError)
        state = tracker.state(FEE)
        assert not state.is_loading
        assert state.page == 0
        assert state.loaded_count == 2
        assert tracker.error(FEE) == LOAD_FAILED_MESSAGE

    def test_retry_after_failure_clears_error(self):
        attempts = []
        server = FakeServer(total=5)

        def flaky(ref, page, page_size):
            attempts.append(page)
            if len(attempts) == 1:
                raise TimeoutError("slow")
            return server(ref, page, page_size)

        tracker = GroupPageTracker(flaky, page_size=2)
        tracker.reset(_aggregate())
        with pytest.raises(GroupLoadFailed):
            tracker.load_more(FEE)
        tracker.load_more(FEE)
        assert attempts == [1, 1]
        assert tracker.error(FEE) is None
        assert tracker.state(FEE).loaded_count == 4


class TestStaleResults:

    def test_result_after_reset_discarded(self):
        new_agg = _aggregate(loaded=1, total=1)

        def fetch(ref, page, page_size):
            tracker.reset(new_agg)
            return RecordPage(items=[_rec(3), _rec(4)], total=5)

        tracker = GroupPageTracker(fetch, page_size=2)
        tracker.reset(_aggregate(loaded=2, total=5))
        assert tracker.load_more(FEE) == []
        assert tracker.state(FEE).loaded_count == 1
        assert [r.id for r in new_agg.find_group(FEE).items] == [1]

    def test_failure_after_reset_leaves_new_state_alone(self):
        def fetch(ref, page, page_size):
            tracker.reset(_aggregate(loaded=2, total=5))
            raise ConnectionError("late")

        tracker = GroupPageTracker(fetch, page_size=2)
        tracker.reset(_aggregate(loaded=2, total=5))
        with pytest.raises(GroupLoadFailed):
            tracker.load_more(FEE)
        assert tracker.error(FEE) is None


class TestWatchdog:

    def test_stuck_loading_cleared_and_late_result_dropped(self):
        clock = FakeClock()

        def slow(ref, page, page_size):
            clock.now += 31
            assert tracker.expire_stale() == [FEE]
            return RecordPage(items=[_rec(3)], total=5)

        tracker = GroupPageTracker(slow, page_size=2, watchdog_seconds=30, clock=clock)
        tracker.reset(_aggregate(loaded=2, total=5))
        assert tracker.load_more(FEE) == []

        state = tracker.state(FEE)
        assert not state.is_loading
        assert state.loaded_count == 2
        assert state.error == LOAD_TIMED_OUT_MESSAGE

    def test_within_watchdog_stays_loading(self):
        clock = FakeClock()

        def quick(ref, page, page_size):
            clock.now += 5
            assert tracker.is_loading(ref)
            return RecordPage(items=[_rec(3)], total=5)

        tracker = GroupPageTracker(quick, page_size=2, watchdog_seconds=30, clock=clock)
        tracker.reset(_aggregate(loaded=2, total=5))
        assert [r.id for r in tracker.load_more(FEE)] == [3]

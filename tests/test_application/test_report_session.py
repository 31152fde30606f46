"""
Tests for BalanceSheetSession (open, paging, exports).
"""
import csv
import io
import pytest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock

import requests

from studyfin.domain.finance import (
    GroupRef, InvalidPeriod, PaymentRecord, RecordPage, ReportPeriod, ReportUnavailable,
)
from studyfin.application.finance_client import FinanceApiClient
from studyfin.application.group_pages import LOAD_FAILED_MESSAGE
from studyfin.application.report_session import BalanceSheetSession, REPORT_UNAVAILABLE_MESSAGE


_D = Decimal
OCT = ReportPeriod.parse("2026-10-01", "2026-10-31")
NOV = ReportPeriod.parse("2026-11-01", "2026-11-30")
FEE = GroupRef("payments", "monthly_fee")


def _payment_row(id, amount=100, day=3):
    return {
        "id": id, "amount": amount, "payment_date": f"2026-10-{day:02d}T05:00:00Z",
        "payment_type": "monthly_fee", "payment_mode": "cash", "student_name": f"Student {id}",
    }


def _detail(total_items=3, loaded=1):
    return {
        "totalIncome": 100 * total_items, "totalExpenses": 0,
        "paymentGroups": [{
            "key": "monthly_fee", "label": "monthly_fee", "amount": 100 * total_items,
            "itemCount": total_items, "items": [_payment_row(i) for i in range(1, loaded + 1)],
        }],
        "expenseGroups": [],
    }


def _page(ids, total):
    return RecordPage(
        items=[PaymentRecord(id=i, amount=_D("100"), occurred_at=datetime(2026, 10, 3, 5, tzinfo=timezone.utc),
                             payment_type="monthly_fee", student_name=f"Student {i}") for i in ids],
        total=total,
    )


@pytest.fixture
def client():
    mock = Mock(spec=FinanceApiClient)
    mock.get_detail.return_value = _detail()
    return mock


@pytest.fixture
def session(client):
    return BalanceSheetSession(client, page_size=1, fallback_page_size=500, watchdog_seconds=30,
                               tz_name="Asia/Kolkata", currency="INR")


class TestOpen:

    def test_open_loads_aggregate_and_page_state(self, session, client):
        agg = session.open(OCT)
        assert agg is session.aggregate
        assert agg.total_income == _D("300")
        assert session.error is None
        state = session.group_state(FEE)
        assert state.loaded_count == 1
        assert state.total_count == 3
        client.get_detail.assert_called_once_with(OCT, 1)

    def test_invalid_period_raises_before_request(self, session, client):
        with pytest.raises(InvalidPeriod):
            session.open("2026-10-01..2026-10-31")
        client.get_detail.assert_not_called()

    def test_unavailable_sets_error_without_raising(self, session, client):
        client.get_detail.side_effect = requests.ConnectionError("down")
        client.list_records.side_effect = requests.ConnectionError("down")
        assert session.open(OCT) is None
        assert session.aggregate is None
        assert session.error == REPORT_UNAVAILABLE_MESSAGE

    def test_malformed_detail_payload_does_not_escape(self, session, client):
        client.get_detail.return_value = {"paymentGroups": [None], "expenseGroups": []}
        client.list_records.side_effect = requests.ConnectionError("down")
        assert session.open(OCT) is None
        assert session.error == REPORT_UNAVAILABLE_MESSAGE

    def test_period_change_replaces_state(self, session, client):
        session.open(OCT)
        client.get_detail.return_value = _detail(total_items=1, loaded=1)
        session.open(NOV)
        assert session.period == NOV
        assert session.aggregate.total_income == _D("100")
        assert session.is_exhausted(FEE)

    def test_superseded_response_discarded(self, session, client):
        def detail(period, page_size):
            if period == OCT:
                # user switched to November while October was loading
                session.open(NOV)
                return _detail(total_items=3)
            return _detail(total_items=1)

        client.get_detail.side_effect = detail
        assert session.open(OCT) is None
        assert session.period == NOV
        assert session.aggregate.total_income == _D("100")

    def test_refresh_reopens_same_period(self, session, client):
        assert session.refresh() is None
        session.open(OCT)
        session.refresh()
        assert client.get_detail.call_count == 2


class TestLoadMore:

    def test_load_more_uses_list_endpoint_with_key(self, session, client):
        client.list_records.return_value = _page([2], total=3)
        session.open(OCT)
        added = session.load_more(FEE)
        assert [r.id for r in added] == [2]
        client.list_records.assert_called_once_with("payments", OCT, key="monthly_fee", page=1, page_size=1)

    def test_failure_is_inline_error(self, session, client):
        client.list_records.side_effect = requests.Timeout("slow")
        session.open(OCT)
        assert session.load_more(FEE) == []
        assert session.group_error(FEE) == LOAD_FAILED_MESSAGE
        assert session.error is None
        assert session.aggregate.total_income == _D("300")


class TestExports:

    def test_export_csv_reflects_loaded_items(self, session, client):
        client.list_records.return_value = _page([2], total=3)
        session.open(OCT)
        session.load_more(FEE)
        rows = list(csv.reader(io.StringIO(session.export_csv())))
        assert rows[1] == ["Income", "monthly_fee", "300.00", "2 of 3 items"]
        assert [r[0] for r in rows[2:]] == ["Income Item", "Income Item"]

    def test_export_before_open(self, session):
        rows = list(csv.reader(io.StringIO(session.export_csv())))
        assert rows == [["Section", "Category/Type", "Amount", "Details"]]
        assert session.csv_filename() == "balance_sheet_from_to.csv"

    def test_export_html(self, session):
        session.open(OCT)
        html = session.export_html("October")
        assert "<h2>October</h2>" in html
        assert "Student 1" in html

    def test_export_complete_csv_fetches_everything(self, session, client):
        client.list_records.side_effect = [_page([1, 2, 3], total=3), RecordPage(items=[], total=0)]
        session.open(OCT)
        rows = list(csv.reader(io.StringIO(session.export_complete_csv())))
        assert rows[1] == ["Income", "monthly_fee", "300.00", "3 of 3 items"]
        assert len(rows) == 5
        assert [c.kwargs["page_size"] for c in client.list_records.call_args_list] == [500, 500]

    def test_export_complete_csv_failure(self, session, client):
        session.open(OCT)
        client.list_records.side_effect = requests.ConnectionError("down")
        with pytest.raises(ReportUnavailable):
            session.export_complete_csv()

    def test_export_complete_csv_without_period(self, session):
        with pytest.raises(ReportUnavailable):
            session.export_complete_csv()

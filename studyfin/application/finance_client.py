"""
HTTP client for the finance endpoints and the aggregate fetch with fallback.

fetch_aggregate() asks the pre-aggregated /finance/detail endpoint first.
If that fails in any way it pulls the raw /payments and /expenses lists for
the same period and aggregates locally. If both paths fail the caller gets
ReportUnavailable.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests

from studyfin.config import get_settings
from studyfin.domain.finance import (
    Aggregate, Group, GroupRef, InvalidPeriod, MonthlyBucket, MonthlyOverview,
    RecordPage, ReportPeriod, ReportUnavailable,
    SECTION_PAYMENTS, SECTION_EXPENSES, SECTIONS,
    PAYMENT_FALLBACK_KEY, EXPENSE_FALLBACK_KEY,
)
from studyfin.application.aggregation import build_aggregate, decode_records, filter_period
from studyfin.utils.money import to_decimal

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")

# Failures that send the detail request down the fallback path
FETCH_ERRORS = (requests.RequestException, ValueError, TypeError)


class FinanceApiClient:
    """
    Thin wrapper over requests.Session for the finance API.

    Every call carries the bearer token and a bounded timeout; non-2xx
    responses raise requests.HTTPError.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self.token = token if token is not None else settings.API_TOKEN
        self.timeout = timeout or settings.REQUEST_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    def _get(self, path: str, params: Dict[str, Any] | None = None) -> Any:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        resp = self.session.get(
            f"{self.base_url}{path}",
            params=params or {},
            headers=headers,
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json()

    def get_detail(self, period: ReportPeriod, group_page_size: int | None = None) -> Any:
        params: Dict[str, Any] = period.as_query_params()
        if group_page_size:
            params["groupPageSize"] = group_page_size
        return self._get("/finance/detail", params)

    def list_records(
        self,
        section: str,
        period: ReportPeriod,
        key: str | None = None,
        page: int = 0,
        page_size: int = 10,
    ) -> RecordPage:
        """GET /payments or /expenses, optionally narrowed to one group key."""
        if section not in SECTIONS:
            raise ValueError(f"Unknown section: {section!r}")
        params: Dict[str, Any] = period.as_query_params()
        params.update({"page": page, "pageSize": page_size})
        if key is not None:
            params["key"] = key
        return decode_record_page(section, self._get(f"/{section}", params))

    def get_group_items(self, ref: GroupRef, period: ReportPeriod, page: int, page_size: int) -> RecordPage:
        params: Dict[str, Any] = period.as_query_params()
        params.update({"group": ref.section, "key": ref.key, "page": page, "pageSize": page_size})
        return decode_record_page(ref.section, self._get("/finance/group-items", params))

    def get_monthly(self, months: int = 6, offset: int = 0, period: str = "month") -> MonthlyOverview:
        payload = self._get("/finance/monthly", {"months": months, "offset": offset, "period": period})
        return decode_monthly(payload)


# === Payload decoding ===

def _to_int(value, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def decode_record_page(section: str, payload: Any) -> RecordPage:
    """
    Decode a list response.

    Accepts {items, total}, the older {payments|expenses: [...], total}
    shape, and a bare JSON array.
    """
    if isinstance(payload, list):
        rows = payload
        total = len(rows)
    elif isinstance(payload, dict):
        rows = payload.get("items")
        if rows is None:
            rows = payload.get(section, [])
        if not isinstance(rows, list):
            raise ValueError(f"{section} payload has no item list")
        total = _to_int(payload.get("total"), len(rows))
    else:
        raise ValueError(f"Unexpected {section} payload type: {type(payload).__name__}")

    records, skipped = decode_records(section, rows)
    return RecordPage(items=records, total=total, skipped=skipped)


def _decode_group(section: str, data: Dict[str, Any], key: str | None = None) -> Group:
    if not isinstance(data, dict):
        raise ValueError(f"{section} group entry must be an object, got {type(data).__name__}")
    fallback = PAYMENT_FALLBACK_KEY if section == SECTION_PAYMENTS else EXPENSE_FALLBACK_KEY
    key = str(key or data.get("key") or fallback)
    items, _ = decode_records(section, data.get("items") or [])
    amount = to_decimal(data.get("amount"))
    return Group(
        key=key,
        label=str(data.get("label") or key),
        amount=amount if amount is not None else _ZERO,
        item_count=_to_int(data.get("itemCount", data.get("total")), len(items)),
        items=items,
    )


def aggregate_from_payload(payload: Any, period: ReportPeriod) -> Aggregate:
    """
    Decode a /finance/detail response into an Aggregate.

    Understands the current paymentGroups/expenseGroups shape and the legacy
    paymentsByType/expenseByCategory shape.

    Raises:
        ValueError: the payload is not a recognisable aggregate
    """
    if not isinstance(payload, dict):
        raise ValueError("Finance detail payload must be a JSON object")

    if "paymentGroups" in payload or "expenseGroups" in payload:
        payment_groups = [_decode_group(SECTION_PAYMENTS, g) for g in payload.get("paymentGroups") or []]
        expense_groups = [_decode_group(SECTION_EXPENSES, g) for g in payload.get("expenseGroups") or []]
    elif "paymentsByType" in payload or "expenseByCategory" in payload:
        payment_groups = [
            _decode_group(SECTION_PAYMENTS, g, key=g.get("type") if isinstance(g, dict) else None)
            for g in payload.get("paymentsByType") or []
        ]
        expense_groups = [
            _decode_group(SECTION_EXPENSES, g, key=g.get("category") if isinstance(g, dict) else None)
            for g in payload.get("expenseByCategory") or []
        ]
    else:
        raise ValueError("Finance detail payload has no group lists")

    total_income = to_decimal(payload.get("totalIncome"))
    if total_income is None:
        total_income = sum((g.amount for g in payment_groups), _ZERO)
    total_expenses = to_decimal(payload.get("totalExpenses"))
    if total_expenses is None:
        total_expenses = sum((g.amount for g in expense_groups), _ZERO)

    return Aggregate(
        period=period,
        total_income=total_income,
        total_expenses=total_expenses,
        payment_groups=payment_groups,
        expense_groups=expense_groups,
        truncated=bool(payload.get("truncated", False)),
    )


def decode_monthly(payload: Any) -> MonthlyOverview:
    if not isinstance(payload, dict):
        raise ValueError("Monthly payload must be a JSON object")
    buckets: List[MonthlyBucket] = []
    for row in payload.get("months") or []:
        if not isinstance(row, dict):
            raise ValueError(f"Monthly bucket must be an object, got {type(row).__name__}")
        buckets.append(MonthlyBucket(
            year=_to_int(row.get("year"), 0),
            month=row.get("month"),
            month_label=str(row.get("monthLabel") or ""),
            income=to_decimal(row.get("income")) or _ZERO,
            expenses=to_decimal(row.get("expenses")) or _ZERO,
        ))
    return MonthlyOverview(months=buckets, has_more=bool(payload.get("hasMore", False)))


# === Aggregate fetch ===

def fetch_aggregate_from_lists(
    client: FinanceApiClient,
    period: ReportPeriod,
    page_size: int | None = None,
    tz_name: str | None = None,
) -> Aggregate:
    """
    Pull every payment and expense in the period (capped at `page_size`
    rows per section) and aggregate locally.
    """
    settings = get_settings()
    page_size = page_size or settings.FALLBACK_PAGE_SIZE
    tz_name = tz_name or settings.TIMEZONE

    payments = client.list_records(SECTION_PAYMENTS, period, page=0, page_size=page_size)
    expenses = client.list_records(SECTION_EXPENSES, period, page=0, page_size=page_size)

    truncated = False
    for section, page in ((SECTION_PAYMENTS, payments), (SECTION_EXPENSES, expenses)):
        received = len(page.items) + page.skipped
        if page.total > received:
            truncated = True
            logger.warning(
                "Fallback %s list truncated: received %d of %d rows (cap %d)",
                section, received, page.total, page_size,
            )

    return build_aggregate(
        period,
        filter_period(payments.items, period, tz_name),
        filter_period(expenses.items, period, tz_name),
        truncated=truncated,
    )


def fetch_aggregate(
    client: FinanceApiClient,
    period: ReportPeriod,
    page_size_hint: int | None = None,
    fallback_page_size: int | None = None,
    tz_name: str | None = None,
) -> Aggregate:
    """
    Obtain the Aggregate for `period`.

    Raises:
        InvalidPeriod: `period` is not a ReportPeriod (checked before any I/O)
        ReportUnavailable: detail endpoint and fallback both failed
    """
    if not isinstance(period, ReportPeriod):
        raise InvalidPeriod(f"Expected ReportPeriod, got {type(period).__name__}")

    try:
        payload = client.get_detail(period, page_size_hint)
        return aggregate_from_payload(payload, period)
    except FETCH_ERRORS as e:
        logger.warning("Finance detail endpoint unavailable, falling back to list endpoints: %s", e)

    try:
        return fetch_aggregate_from_lists(client, period, fallback_page_size, tz_name)
    except FETCH_ERRORS as e:
        logger.error("Finance report unavailable for period %s: %s", period.as_query_params(), e)
        raise ReportUnavailable("Finance report is unavailable", cause=e) from e

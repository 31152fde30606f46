"""
Finance report API endpoints (balance sheet detail, group paging, monthly overview, exports)
"""
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import HTMLResponse, Response
from pydantic import BaseModel

from studyfin.api.deps import get_finance_service, get_report_period, require_api_token
from studyfin.application.finance_queries import FinanceQueryValidationError, FinanceReportService
from studyfin.application.report_export import CSV_CONTENT_TYPE, csv_filename, to_csv, to_printable_html
from studyfin.config import get_settings
from studyfin.domain.finance import ReportPeriod
from studyfin.utils.dates import make_timestamp_formatter


router = APIRouter(
    prefix="/api/v1/finance",
    tags=["finance"],
    dependencies=[Depends(require_api_token)],
)


# === Response models ===

class GroupResponse(BaseModel):
    key: str
    label: str
    amount: float
    itemCount: int
    items: list[dict[str, Any]]


class AggregateResponse(BaseModel):
    startDate: date | None = None
    endDate: date | None = None
    totalIncome: float
    totalExpenses: float
    net: float
    paymentGroups: list[GroupResponse]
    expenseGroups: list[GroupResponse]
    truncated: bool = False


class RecordPageResponse(BaseModel):
    items: list[dict[str, Any]]
    total: int


class MonthlyBucketResponse(BaseModel):
    year: int
    month: int | None = None
    monthLabel: str
    income: float
    expenses: float
    net: float


class MonthlyResponse(BaseModel):
    months: list[MonthlyBucketResponse]
    hasMore: bool


def record_page_response(page) -> RecordPageResponse:
    return RecordPageResponse(items=[item.to_payload() for item in page.items], total=page.total)


# === Endpoints ===

@router.get("/detail", response_model=AggregateResponse)
def finance_detail(
    period: ReportPeriod = Depends(get_report_period),
    group_page_size: int | None = Query(None, alias="groupPageSize", ge=1),
    service: FinanceReportService = Depends(get_finance_service),
):
    """Grouped totals for the period with the first page of items per group"""
    size = group_page_size or get_settings().GROUP_PAGE_SIZE
    aggregate = service.build_detail(period, group_page_size=size)
    return AggregateResponse(**aggregate.to_payload())


@router.get("/group-items", response_model=RecordPageResponse)
def finance_group_items(
    group: str = Query(""),
    key: str = Query(""),
    period: ReportPeriod = Depends(get_report_period),
    page: int = Query(0, ge=0),
    page_size: int = Query(10, alias="pageSize", ge=1),
    service: FinanceReportService = Depends(get_finance_service),
):
    """One page of a payment-type or expense-category group"""
    if not group or not key:
        raise HTTPException(status_code=400, detail="group and key are required")
    page_size = min(page_size, get_settings().MAX_PAGE_SIZE)
    try:
        result = service.list_records(group.lower(), period, key=key, page=page, page_size=page_size)
    except FinanceQueryValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return record_page_response(result)


@router.get("/monthly", response_model=MonthlyResponse)
def finance_monthly(
    months: int = Query(6, ge=1, le=120),
    offset: int = Query(0, ge=0),
    period: str = Query("month"),
    service: FinanceReportService = Depends(get_finance_service),
):
    """Month (or year) buckets for the overview widget, newest first"""
    try:
        overview = service.monthly_overview(months=months, offset=offset, period=period)
    except FinanceQueryValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return MonthlyResponse(**overview.to_payload())


@router.get("/export.csv")
def finance_export_csv(
    period: ReportPeriod = Depends(get_report_period),
    service: FinanceReportService = Depends(get_finance_service),
):
    """Complete balance sheet for the period as CSV"""
    aggregate = service.build_complete(period)
    content = to_csv(aggregate, make_timestamp_formatter(service.tz_name))
    return Response(
        content=content,
        media_type=CSV_CONTENT_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{csv_filename(period)}"'},
    )


@router.get("/print", response_class=HTMLResponse)
def finance_print(
    period: ReportPeriod = Depends(get_report_period),
    title: str | None = Query(None),
    service: FinanceReportService = Depends(get_finance_service),
):
    """Print-ready HTML of the complete balance sheet"""
    aggregate = service.build_complete(period)
    return to_printable_html(
        aggregate, period, title,
        currency=get_settings().CURRENCY,
        format_timestamp=make_timestamp_formatter(service.tz_name),
    )

"""
Expense list API (raw rows for the report fallback path and group paging)
"""
from fastapi import APIRouter, Depends, Query

from studyfin.api.deps import get_finance_service, get_report_period, require_api_token
from studyfin.api.v1.finance import RecordPageResponse, record_page_response
from studyfin.application.finance_queries import FinanceReportService
from studyfin.config import get_settings
from studyfin.domain.finance import ReportPeriod


router = APIRouter(
    prefix="/api/v1/expenses",
    tags=["expenses"],
    dependencies=[Depends(require_api_token)],
)


@router.get("", response_model=RecordPageResponse)
def list_expenses(
    period: ReportPeriod = Depends(get_report_period),
    key: str | None = Query(None),
    page: int = Query(0, ge=0),
    page_size: int = Query(10, alias="pageSize", ge=1),
    service: FinanceReportService = Depends(get_finance_service),
):
    """
    Expenses in the period, newest first

    `key` narrows to one category by name; "Uncategorized" also matches
    rows without a category.
    """
    page_size = min(page_size, get_settings().MAX_PAGE_SIZE)
    return record_page_response(service.list_expenses(period, key=key, page=page, page_size=page_size))

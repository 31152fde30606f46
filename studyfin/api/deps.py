"""
FastAPI dependencies (DB session, bearer token check)
"""
import secrets

from fastapi import Depends, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from studyfin.config import get_settings
from studyfin.domain.finance import InvalidPeriod, ReportPeriod
from studyfin.application.finance_queries import FinanceReportService
from studyfin.infrastructure.db.session import get_db as _get_db


# Re-export get_db for routers
get_db = _get_db

_bearer = HTTPBearer(auto_error=False)


def require_api_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> str:
    """
    Reject requests without a valid bearer token

    Raises:
        HTTPException(401): header missing or token mismatch

    Usage:
        router = APIRouter(dependencies=[Depends(require_api_token)])
    """
    expected = get_settings().API_TOKEN
    if credentials is None or not secrets.compare_digest(credentials.credentials, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials


def get_report_period(
    start_date: str | None = Query(None, alias="startDate"),
    end_date: str | None = Query(None, alias="endDate"),
) -> ReportPeriod:
    """
    startDate/endDate query params as a ReportPeriod

    Raises:
        HTTPException(400): unparseable date or startDate > endDate
    """
    try:
        return ReportPeriod.parse(start_date, end_date)
    except InvalidPeriod as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def get_finance_service(db: Session = Depends(get_db)) -> FinanceReportService:
    return FinanceReportService(db, tz_name=get_settings().TIMEZONE)

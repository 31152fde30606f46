"""
Balance-sheet report session: one period, one Aggregate, one page tracker.

Changing the period (or refreshing) fetches a new Aggregate and swaps it in
together with fresh page state. A response that arrives for a period the
session has already moved away from is dropped.
"""
import logging
from threading import RLock
from typing import List, Optional

from studyfin.config import get_settings
from studyfin.domain.finance import (
    Aggregate, FinancialRecord, GroupLoadFailed, GroupPageState, GroupRef,
    InvalidPeriod, RecordPage, ReportPeriod, ReportUnavailable,
)
from studyfin.application.finance_client import (
    FETCH_ERRORS, FinanceApiClient, fetch_aggregate, fetch_aggregate_from_lists,
)
from studyfin.application.group_pages import GroupPageTracker
from studyfin.application.report_export import csv_filename, to_csv, to_printable_html
from studyfin.utils.dates import make_timestamp_formatter

logger = logging.getLogger(__name__)

REPORT_UNAVAILABLE_MESSAGE = "Failed to load the balance sheet"


class BalanceSheetSession:
    """
    Usage:
        session = BalanceSheetSession(FinanceApiClient())
        session.open(ReportPeriod.parse("2026-10-01", "2026-10-31"))
        session.load_more(GroupRef("payments", "monthly_fee"))
        text = session.export_csv()
    """

    def __init__(
        self,
        client: FinanceApiClient,
        page_size: int | None = None,
        fallback_page_size: int | None = None,
        watchdog_seconds: float | None = None,
        tz_name: str | None = None,
        currency: str | None = None,
        tracker: GroupPageTracker | None = None,
    ):
        settings = get_settings()
        self.client = client
        self.page_size = page_size or settings.GROUP_PAGE_SIZE
        self.fallback_page_size = fallback_page_size or settings.FALLBACK_PAGE_SIZE
        self.tz_name = tz_name or settings.TIMEZONE
        self.currency = currency or settings.CURRENCY
        self.tracker = tracker or GroupPageTracker(
            self._fetch_group_page,
            page_size=self.page_size,
            watchdog_seconds=watchdog_seconds or settings.LOAD_MORE_WATCHDOG_SECONDS,
        )
        self._lock = RLock()
        self._request_seq = 0
        self.period: Optional[ReportPeriod] = None
        self.aggregate: Optional[Aggregate] = None
        self.error: Optional[str] = None

    # --- lifecycle ---

    def open(self, period: ReportPeriod) -> Optional[Aggregate]:
        """
        Load the report for `period`, replacing whatever was shown before.

        Returns the new Aggregate, or None when the data could not be
        loaded (self.error then holds a user-facing message).

        Raises:
            InvalidPeriod: before any request is made
        """
        if not isinstance(period, ReportPeriod):
            raise InvalidPeriod(f"Expected ReportPeriod, got {type(period).__name__}")

        with self._lock:
            self._request_seq += 1
            seq = self._request_seq
            self.period = period
            self.aggregate = None
            self.error = None
            self.tracker.reset(None)

        try:
            aggregate = fetch_aggregate(
                self.client, period,
                page_size_hint=self.page_size,
                fallback_page_size=self.fallback_page_size,
                tz_name=self.tz_name,
            )
        except ReportUnavailable as e:
            with self._lock:
                if seq == self._request_seq:
                    self.error = REPORT_UNAVAILABLE_MESSAGE
            logger.warning("Balance sheet unavailable: %s (cause: %s)", e, e.cause)
            return None

        with self._lock:
            if seq != self._request_seq:
                logger.info("Discarding aggregate for superseded period %s", period.as_query_params())
                return None
            self.aggregate = aggregate
            self.tracker.reset(aggregate)
            return aggregate

    def refresh(self) -> Optional[Aggregate]:
        if self.period is None:
            return None
        return self.open(self.period)

    # --- paging ---

    def _fetch_group_page(self, ref: GroupRef, page: int, page_size: int) -> RecordPage:
        period = self.period
        if period is None:
            raise ReportUnavailable("No report period is open")
        return self.client.list_records(ref.section, period, key=ref.key, page=page, page_size=page_size)

    def load_more(self, ref: GroupRef) -> List[FinancialRecord]:
        """Next page of one group; failures stay on that group as an inline error."""
        try:
            return self.tracker.load_more(ref)
        except GroupLoadFailed as e:
            logger.warning("%s", e)
            return []

    def is_exhausted(self, ref: GroupRef) -> bool:
        return self.tracker.is_exhausted(ref)

    def group_state(self, ref: GroupRef) -> Optional[GroupPageState]:
        return self.tracker.state(ref)

    def group_error(self, ref: GroupRef) -> Optional[str]:
        return self.tracker.error(ref)

    # --- exports ---

    def csv_filename(self) -> str:
        return csv_filename(self.period)

    def export_csv(self) -> str:
        """What is on screen: group totals plus the items loaded so far."""
        return to_csv(self.aggregate, make_timestamp_formatter(self.tz_name))

    def export_html(self, title: str | None = None) -> str:
        return to_printable_html(
            self.aggregate, self.period, title,
            currency=self.currency,
            format_timestamp=make_timestamp_formatter(self.tz_name),
        )

    def export_complete_csv(self) -> str:
        """
        Second request for every record of the period, then CSV.

        Raises:
            ReportUnavailable: no period open, or the list endpoints failed
        """
        if self.period is None:
            raise ReportUnavailable("No report period is open")
        try:
            aggregate = fetch_aggregate_from_lists(
                self.client, self.period, self.fallback_page_size, self.tz_name
            )
        except FETCH_ERRORS as e:
            raise ReportUnavailable("Complete export is unavailable", cause=e) from e
        return to_csv(aggregate, make_timestamp_formatter(self.tz_name))

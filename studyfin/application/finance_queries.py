"""
Finance report queries over payments and expenses.

Backs the /finance/detail, /finance/group-items, /finance/monthly and list
endpoints. Period bounds are local calendar dates converted to a half-open
UTC range before they reach SQL.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from studyfin.domain.finance import (
    Aggregate, ExpenseRecord, Group, MonthlyBucket, MonthlyOverview, PaymentRecord,
    RecordPage, ReportPeriod,
    SECTION_PAYMENTS, SECTION_EXPENSES, PAYMENT_FALLBACK_KEY, EXPENSE_FALLBACK_KEY,
)
from studyfin.infrastructure.db.models import Payment, Expense, ExpenseCategory, Student
from studyfin.utils.dates import DEFAULT_TIMEZONE, ensure_utc, local_day_start_utc, local_today, period_bounds_utc
from studyfin.utils.money import to_decimal

_ZERO = Decimal("0")

PERIOD_MONTH = "month"
PERIOD_YEAR = "year"


class FinanceQueryValidationError(ValueError):
    """Invalid paging or bucketing arguments"""
    pass


def _dec(value) -> Decimal:
    result = to_decimal(value)
    return result if result is not None else _ZERO


def _shift_month(year: int, month: int, delta: int) -> Tuple[int, int]:
    """Move (year, month) back by `delta` months."""
    y, m0 = divmod(year * 12 + (month - 1) - delta, 12)
    return y, m0 + 1


def _check_paging(page: int, page_size: int) -> None:
    if page < 0:
        raise FinanceQueryValidationError("page must be >= 0")
    if page_size < 1:
        raise FinanceQueryValidationError("pageSize must be >= 1")


class FinanceReportService:
    """Read-side queries for the balance sheet."""

    def __init__(self, db: Session, tz_name: str = DEFAULT_TIMEZONE):
        self.db = db
        self.tz_name = tz_name

    # --- filters ---

    def _bounds(self, period: ReportPeriod) -> Tuple[Optional[datetime], Optional[datetime]]:
        return period_bounds_utc(period.start_date, period.end_date, self.tz_name)

    @staticmethod
    def _payment_filters(start, end, key: Optional[str] = None) -> list:
        conds = []
        if start is not None:
            conds.append(Payment.payment_date >= start)
        if end is not None:
            conds.append(Payment.payment_date < end)
        if key is not None:
            if key == PAYMENT_FALLBACK_KEY:
                conds.append(or_(Payment.payment_type.is_(None), Payment.payment_type == "", Payment.payment_type == key))
            else:
                conds.append(Payment.payment_type == key)
        return conds

    @staticmethod
    def _expense_filters(start, end, key: Optional[str] = None) -> list:
        """
        Needs ExpenseCategory outer-joined when `key` is given.

        Group keys are category names (the same key _expense_summaries
        produces), so "2024" is a name, never an id.
        """
        conds = []
        if start is not None:
            conds.append(Expense.expense_date >= start)
        if end is not None:
            conds.append(Expense.expense_date < end)
        if key is not None:
            if key == EXPENSE_FALLBACK_KEY:
                conds.append(or_(Expense.expense_category_id.is_(None), ExpenseCategory.name == key))
            else:
                conds.append(ExpenseCategory.name == key)
        return conds

    # --- row mapping ---

    @staticmethod
    def _payment_record(p: Payment, student_name: Optional[str], seat_number: Optional[str]) -> PaymentRecord:
        return PaymentRecord(
            id=p.id,
            amount=_dec(p.amount),
            occurred_at=ensure_utc(p.payment_date),
            payment_type=p.payment_type or None,
            payment_mode=p.payment_mode,
            student_id=p.student_id,
            student_name=student_name,
            seat_number=seat_number,
            description=p.description,
        )

    @staticmethod
    def _expense_record(e: Expense, category_name: Optional[str]) -> ExpenseRecord:
        return ExpenseRecord(
            id=e.id,
            amount=_dec(e.amount),
            occurred_at=ensure_utc(e.expense_date),
            category_id=e.expense_category_id,
            category_name=category_name,
            description=e.description,
        )

    # --- lists ---

    def list_payments(
        self, period: ReportPeriod, key: Optional[str] = None, page: int = 0, page_size: int = 10
    ) -> RecordPage:
        """Payments in the period, newest first, with the total row count."""
        _check_paging(page, page_size)
        start, end = self._bounds(period)
        conds = self._payment_filters(start, end, key)

        total = self.db.query(func.count(Payment.id)).filter(*conds).scalar() or 0
        rows = (
            self.db.query(Payment, Student.name, Student.seat_number)
            .outerjoin(Student, Payment.student_id == Student.id)
            .filter(*conds)
            .order_by(Payment.payment_date.desc(), Payment.id.desc())
            .limit(page_size)
            .offset(page * page_size)
            .all()
        )
        return RecordPage(items=[self._payment_record(p, name, seat) for p, name, seat in rows], total=total)

    def list_expenses(
        self, period: ReportPeriod, key: Optional[str] = None, page: int = 0, page_size: int = 10
    ) -> RecordPage:
        """Expenses in the period, newest first, with the total row count."""
        _check_paging(page, page_size)
        start, end = self._bounds(period)
        conds = self._expense_filters(start, end, key)

        total = (
            self.db.query(func.count(Expense.id))
            .select_from(Expense)
            .outerjoin(ExpenseCategory, Expense.expense_category_id == ExpenseCategory.id)
            .filter(*conds)
            .scalar()
        ) or 0
        rows = (
            self.db.query(Expense, ExpenseCategory.name)
            .outerjoin(ExpenseCategory, Expense.expense_category_id == ExpenseCategory.id)
            .filter(*conds)
            .order_by(Expense.expense_date.desc(), Expense.id.desc())
            .limit(page_size)
            .offset(page * page_size)
            .all()
        )
        return RecordPage(items=[self._expense_record(e, name) for e, name in rows], total=total)

    def list_records(
        self, section: str, period: ReportPeriod, key: Optional[str] = None, page: int = 0, page_size: int = 10
    ) -> RecordPage:
        if section == SECTION_PAYMENTS:
            return self.list_payments(period, key, page, page_size)
        if section == SECTION_EXPENSES:
            return self.list_expenses(period, key, page, page_size)
        raise FinanceQueryValidationError(f"Unsupported group type: {section!r}")

    # --- detail ---

    def _payment_summaries(self, start, end) -> Dict[str, Tuple[Decimal, int]]:
        rows = (
            self.db.query(Payment.payment_type, func.sum(Payment.amount), func.count(Payment.id))
            .filter(*self._payment_filters(start, end))
            .group_by(Payment.payment_type)
            .all()
        )
        summaries: Dict[str, Tuple[Decimal, int]] = {}
        for payment_type, amount, count in rows:
            key = payment_type or PAYMENT_FALLBACK_KEY
            prev_amount, prev_count = summaries.get(key, (_ZERO, 0))
            summaries[key] = (prev_amount + _dec(amount), prev_count + int(count or 0))
        return summaries

    def _expense_summaries(self, start, end) -> Dict[str, Tuple[Decimal, int]]:
        rows = (
            self.db.query(ExpenseCategory.name, func.sum(Expense.amount), func.count(Expense.id))
            .select_from(Expense)
            .outerjoin(ExpenseCategory, Expense.expense_category_id == ExpenseCategory.id)
            .filter(*self._expense_filters(start, end))
            .group_by(Expense.expense_category_id, ExpenseCategory.name)
            .all()
        )
        summaries: Dict[str, Tuple[Decimal, int]] = {}
        for name, amount, count in rows:
            key = name or EXPENSE_FALLBACK_KEY
            prev_amount, prev_count = summaries.get(key, (_ZERO, 0))
            summaries[key] = (prev_amount + _dec(amount), prev_count + int(count or 0))
        return summaries

    def build_detail(self, period: ReportPeriod, group_page_size: int = 10) -> Aggregate:
        """
        Grouped totals for the period plus the first `group_page_size` items
        of every group. Groups are ordered by amount (desc), then key.
        """
        _check_paging(0, group_page_size)
        start, end = self._bounds(period)

        payment_groups = []
        for key, (amount, count) in sorted(self._payment_summaries(start, end).items(), key=lambda kv: (-kv[1][0], kv[0])):
            items = self.list_payments(period, key, 0, group_page_size).items
            payment_groups.append(Group(key=key, label=key, amount=amount, item_count=count, items=items))

        expense_groups = []
        for key, (amount, count) in sorted(self._expense_summaries(start, end).items(), key=lambda kv: (-kv[1][0], kv[0])):
            items = self.list_expenses(period, key, 0, group_page_size).items
            expense_groups.append(Group(key=key, label=key, amount=amount, item_count=count, items=items))

        return Aggregate(
            period=period,
            total_income=sum((g.amount for g in payment_groups), _ZERO),
            total_expenses=sum((g.amount for g in expense_groups), _ZERO),
            payment_groups=payment_groups,
            expense_groups=expense_groups,
        )

    def build_complete(self, period: ReportPeriod) -> Aggregate:
        """Like build_detail, with every item of every group loaded."""
        start, end = self._bounds(period)
        payments_total = self.db.query(func.count(Payment.id)).filter(*self._payment_filters(start, end)).scalar() or 0
        expenses_total = (
            self.db.query(func.count(Expense.id)).filter(*self._expense_filters(start, end)).scalar()
        ) or 0
        return self.build_detail(period, group_page_size=max(payments_total, expenses_total, 1))

    # --- monthly overview ---

    def _sum_between(self, column, amount_column, start: datetime, end: datetime) -> Decimal:
        value = self.db.query(func.sum(amount_column)).filter(column >= start, column < end).scalar()
        return _dec(value)

    def monthly_overview(
        self, months: int = 6, offset: int = 0, period: str = PERIOD_MONTH, today: Optional[date] = None
    ) -> MonthlyOverview:
        """
        Income/expense buckets, newest first, starting `offset` units before
        the current month (or year) in the business timezone.
        """
        if months < 1:
            raise FinanceQueryValidationError("months must be >= 1")
        if offset < 0:
            raise FinanceQueryValidationError("offset must be >= 0")
        period = (period or PERIOD_MONTH).lower()
        if period not in (PERIOD_MONTH, PERIOD_YEAR):
            raise FinanceQueryValidationError(f"Unsupported period: {period!r}")

        today = today or local_today(self.tz_name)
        buckets: List[MonthlyBucket] = []
        oldest_start: Optional[datetime] = None

        for i in range(months):
            if period == PERIOD_YEAR:
                year = today.year - offset - i
                first_day, next_first_day = date(year, 1, 1), date(year + 1, 1, 1)
                bucket = MonthlyBucket(year=year, month=None, month_label=str(year))
            else:
                year, month = _shift_month(today.year, today.month, offset + i)
                ny, nm = _shift_month(year, month, -1)
                first_day, next_first_day = date(year, month, 1), date(ny, nm, 1)
                bucket = MonthlyBucket(year=year, month=month, month_label=first_day.strftime("%b-%Y"))

            start = local_day_start_utc(first_day, self.tz_name)
            end = local_day_start_utc(next_first_day, self.tz_name)
            bucket.income = self._sum_between(Payment.payment_date, Payment.amount, start, end)
            bucket.expenses = self._sum_between(Expense.expense_date, Expense.amount, start, end)
            buckets.append(bucket)
            oldest_start = start

        has_more = (
            self.db.query(Payment.id).filter(Payment.payment_date < oldest_start).first() is not None
            or self.db.query(Expense.id).filter(Expense.expense_date < oldest_start).first() is not None
        )
        return MonthlyOverview(months=buckets, has_more=has_more)

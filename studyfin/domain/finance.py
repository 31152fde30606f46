"""
Finance report domain: records, report periods, groups, aggregates, page state.

Records are a tagged union (PaymentRecord | ExpenseRecord, discriminated by
`kind`). Amounts are Decimal; timestamps are aware UTC datetimes.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Tuple, Union

from studyfin.utils.dates import parse_iso_date, parse_timestamp
from studyfin.utils.money import to_decimal

RECORD_KIND_PAYMENT = "payment"
RECORD_KIND_EXPENSE = "expense"

SECTION_PAYMENTS = "payments"
SECTION_EXPENSES = "expenses"
SECTIONS = (SECTION_PAYMENTS, SECTION_EXPENSES)

# Sentinel groups for records without a category key
PAYMENT_FALLBACK_KEY = "other"
EXPENSE_FALLBACK_KEY = "Uncategorized"

GROUP_STATUS_IDLE = "idle"
GROUP_STATUS_LOADING = "loading"

_ZERO = Decimal("0")


# === Errors ===

class InvalidPeriod(ValueError):
    """Period bounds are unparseable or start_date > end_date"""
    pass


class MalformedRecord(ValueError):
    """A record whose timestamp cannot be resolved to a calendar date"""

    def __init__(self, kind: str, record_id: Any, reason: str):
        super().__init__(f"Malformed {kind} record id={record_id!r}: {reason}")
        self.kind = kind
        self.record_id = record_id
        self.reason = reason


class ReportUnavailable(Exception):
    """Both the detail endpoint and the list-endpoint fallback failed"""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class GroupLoadFailed(Exception):
    """A single group's "load more" request failed"""

    def __init__(self, ref: "GroupRef", cause: Optional[BaseException] = None):
        super().__init__(f"Failed to load more items for {ref.section}/{ref.key}: {cause}")
        self.ref = ref
        self.cause = cause


# === Period ===

@dataclass(frozen=True)
class ReportPeriod:
    """
    Inclusive calendar-date range in the business timezone.

    None on either side means unbounded.
    """
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    def __post_init__(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise InvalidPeriod(
                f"startDate {self.start_date.isoformat()} is after endDate {self.end_date.isoformat()}"
            )

    @classmethod
    def parse(cls, start: Any = None, end: Any = None) -> "ReportPeriod":
        """Build from ISO strings (or dates); empty strings are unbounded."""
        try:
            start_date = parse_iso_date(start)
            end_date = parse_iso_date(end)
        except ValueError as e:
            raise InvalidPeriod(f"Dates must be YYYY-MM-DD: {e}") from e
        return cls(start_date=start_date, end_date=end_date)

    def as_query_params(self) -> Dict[str, str]:
        params = {}
        if self.start_date:
            params["startDate"] = self.start_date.isoformat()
        if self.end_date:
            params["endDate"] = self.end_date.isoformat()
        return params


class GroupRef(NamedTuple):
    """Address of a group: section ("payments"/"expenses") plus category key"""
    section: str
    key: str


# === Records ===

@dataclass
class PaymentRecord:
    id: Any
    amount: Decimal
    occurred_at: datetime
    payment_type: Optional[str] = None
    payment_mode: Optional[str] = None
    student_id: Optional[int] = None
    student_name: Optional[str] = None
    seat_number: Optional[str] = None
    description: Optional[str] = None
    amount_valid: bool = True
    kind: str = field(default=RECORD_KIND_PAYMENT, init=False)

    @property
    def category_key(self) -> str:
        return self.payment_type or ""

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "PaymentRecord":
        """
        Decode a payment row from JSON.

        Raises:
            MalformedRecord: payment_date missing or unparseable
        """
        record_id = payload.get("id")
        occurred_at = parse_timestamp(payload.get("payment_date"))
        if occurred_at is None:
            raise MalformedRecord(RECORD_KIND_PAYMENT, record_id, f"bad payment_date {payload.get('payment_date')!r}")
        amount = to_decimal(payload.get("amount"))
        return cls(
            id=record_id,
            amount=amount if amount is not None else _ZERO,
            occurred_at=occurred_at,
            payment_type=payload.get("payment_type") or None,
            payment_mode=payload.get("payment_mode"),
            student_id=payload.get("student_id"),
            student_name=payload.get("student_name"),
            seat_number=payload.get("seat_number"),
            description=payload.get("description"),
            amount_valid=amount is not None,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "amount": float(self.amount),
            "payment_date": self.occurred_at.isoformat(),
            "payment_type": self.payment_type,
            "payment_mode": self.payment_mode,
            "student_id": self.student_id,
            "student_name": self.student_name,
            "seat_number": self.seat_number,
            "description": self.description,
        }


@dataclass
class ExpenseRecord:
    id: Any
    amount: Decimal
    occurred_at: datetime
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    description: Optional[str] = None
    amount_valid: bool = True
    kind: str = field(default=RECORD_KIND_EXPENSE, init=False)

    @property
    def category_key(self) -> str:
        if self.category_name:
            return self.category_name
        if self.category_id is not None:
            return str(self.category_id)
        return ""

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ExpenseRecord":
        """
        Decode an expense row from JSON.

        Older payloads carry the category as `category`, newer ones as
        `category_name` + `category_id`.

        Raises:
            MalformedRecord: expense_date missing or unparseable
        """
        record_id = payload.get("id")
        occurred_at = parse_timestamp(payload.get("expense_date"))
        if occurred_at is None:
            raise MalformedRecord(RECORD_KIND_EXPENSE, record_id, f"bad expense_date {payload.get('expense_date')!r}")
        amount = to_decimal(payload.get("amount"))
        category_id = payload.get("category_id", payload.get("expense_category_id"))
        return cls(
            id=record_id,
            amount=amount if amount is not None else _ZERO,
            occurred_at=occurred_at,
            category_id=category_id,
            category_name=payload.get("category_name") or payload.get("category") or None,
            description=payload.get("description"),
            amount_valid=amount is not None,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "amount": float(self.amount),
            "expense_date": self.occurred_at.isoformat(),
            "category_id": self.category_id,
            "category_name": self.category_name,
            "description": self.description,
        }


FinancialRecord = Union[PaymentRecord, ExpenseRecord]


def group_key(record: FinancialRecord) -> str:
    """Category key of a record, falling back to the section's sentinel group."""
    if isinstance(record, PaymentRecord):
        return record.category_key or PAYMENT_FALLBACK_KEY
    if isinstance(record, ExpenseRecord):
        return record.category_key or EXPENSE_FALLBACK_KEY
    raise TypeError(f"Unsupported record type: {type(record).__name__}")


def record_from_payload(section: str, payload: Dict[str, Any]) -> FinancialRecord:
    if section == SECTION_PAYMENTS:
        return PaymentRecord.from_payload(payload)
    if section == SECTION_EXPENSES:
        return ExpenseRecord.from_payload(payload)
    raise ValueError(f"Unknown section: {section!r}")


# === Aggregates ===

@dataclass
class Group:
    """
    Records sharing a category key.

    amount/item_count cover the whole period; items holds only what has been
    loaded for display so far.
    """
    key: str
    label: str
    amount: Decimal = _ZERO
    item_count: int = 0
    items: List[FinancialRecord] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "amount": float(self.amount),
            "itemCount": self.item_count,
            "items": [item.to_payload() for item in self.items],
        }


@dataclass
class Aggregate:
    period: ReportPeriod
    total_income: Decimal = _ZERO
    total_expenses: Decimal = _ZERO
    payment_groups: List[Group] = field(default_factory=list)
    expense_groups: List[Group] = field(default_factory=list)
    # Built from capped list responses (fallback path)
    truncated: bool = False

    @property
    def net(self) -> Decimal:
        return self.total_income - self.total_expenses

    def groups(self, section: str) -> List[Group]:
        if section == SECTION_PAYMENTS:
            return self.payment_groups
        if section == SECTION_EXPENSES:
            return self.expense_groups
        raise ValueError(f"Unknown section: {section!r}")

    def iter_groups(self) -> Iterator[Tuple[GroupRef, Group]]:
        for section in SECTIONS:
            for group in self.groups(section):
                yield GroupRef(section, group.key), group

    def find_group(self, ref: GroupRef) -> Optional[Group]:
        for group in self.groups(ref.section):
            if group.key == ref.key:
                return group
        return None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "startDate": self.period.start_date.isoformat() if self.period.start_date else None,
            "endDate": self.period.end_date.isoformat() if self.period.end_date else None,
            "totalIncome": float(self.total_income),
            "totalExpenses": float(self.total_expenses),
            "net": float(self.net),
            "paymentGroups": [g.to_payload() for g in self.payment_groups],
            "expenseGroups": [g.to_payload() for g in self.expense_groups],
            "truncated": self.truncated,
        }


@dataclass
class GroupPageState:
    """
    Per-group "load more" bookkeeping.

    page 0 is the slice shipped with the aggregate; every successful load
    advances page by one. loaded_count never decreases.
    """
    group_key: str
    loaded_count: int
    total_count: int
    page: int = 0
    status: str = GROUP_STATUS_IDLE
    error: Optional[str] = None
    loading_since: Optional[float] = None
    request_token: int = 0

    @property
    def is_exhausted(self) -> bool:
        return self.loaded_count >= self.total_count

    @property
    def is_loading(self) -> bool:
        return self.status == GROUP_STATUS_LOADING


@dataclass
class RecordPage:
    """One page from a list endpoint: items plus the authoritative total"""
    items: List[FinancialRecord]
    total: int
    # Rows dropped because their timestamp did not parse
    skipped: int = 0


# === Monthly overview ===

@dataclass
class MonthlyBucket:
    year: int
    month: Optional[int]
    month_label: str
    income: Decimal = _ZERO
    expenses: Decimal = _ZERO

    @property
    def net(self) -> Decimal:
        return self.income - self.expenses

    def to_payload(self) -> Dict[str, Any]:
        return {
            "year": self.year,
            "month": self.month,
            "monthLabel": self.month_label,
            "income": float(self.income),
            "expenses": float(self.expenses),
            "net": float(self.net),
        }


@dataclass
class MonthlyOverview:
    months: List[MonthlyBucket] = field(default_factory=list)
    has_more: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return {"months": [m.to_payload() for m in self.months], "hasMore": self.has_more}

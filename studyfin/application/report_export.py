"""
Balance-sheet exporters: CSV text and a print-ready HTML document.

Both are pure functions of an Aggregate. They export exactly the items that
are currently loaded in each group, never the server-side remainder.
Missing values render as "N/A", "0.00" or an empty string.
"""
import csv
import io
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from studyfin.domain.finance import Aggregate, Group, ReportPeriod, SECTION_PAYMENTS, SECTION_EXPENSES
from studyfin.utils.dates import format_local_date, make_timestamp_formatter
from studyfin.utils.money import format_money, format_money2, to_cents_str

CSV_HEADER = ["Section", "Category/Type", "Amount", "Details"]
CSV_CONTENT_TYPE = "text/csv"

DEFAULT_TITLE = "Balance Sheet"
PLACEHOLDER = "N/A"

TimestampFormatter = Callable[[Any], str]

_SECTION_LABELS = {
    SECTION_PAYMENTS: ("Income", "Income Item"),
    SECTION_EXPENSES: ("Expense", "Expense Item"),
}

templates_dir = Path(__file__).parent.parent / "templates"
_env = Environment(
    loader=FileSystemLoader(str(templates_dir)),
    autoescape=select_autoescape(["html"]),
)


def csv_filename(period: Optional[ReportPeriod]) -> str:
    start = period.start_date.isoformat() if period and period.start_date else "from"
    end = period.end_date.isoformat() if period and period.end_date else "to"
    return f"balance_sheet_{start}_{end}.csv"


def format_period(period: Optional[ReportPeriod]) -> str:
    start = period.start_date if period else None
    end = period.end_date if period else None
    if start and end:
        return f"{format_local_date(start)} to {format_local_date(end)}"
    if start:
        return f"From {format_local_date(start)}"
    if end:
        return f"Until {format_local_date(end)}"
    return "All time"


def _text(value) -> str:
    return "" if value is None else str(value)


def _item_details(section: str, item, fmt: TimestampFormatter) -> str:
    if section == SECTION_PAYMENTS:
        parts = [getattr(item, "student_name", None), fmt(item.occurred_at), getattr(item, "payment_mode", None)]
    else:
        parts = [getattr(item, "description", None), fmt(item.occurred_at)]
    return " | ".join(_text(p) for p in parts)


def csv_rows(aggregate: Optional[Aggregate], format_timestamp: Optional[TimestampFormatter] = None) -> List[List[str]]:
    """Header, then per group a summary row followed by its loaded items."""
    fmt = format_timestamp or make_timestamp_formatter()
    rows = [list(CSV_HEADER)]
    if aggregate is None:
        return rows
    for section in (SECTION_PAYMENTS, SECTION_EXPENSES):
        group_label, item_label = _SECTION_LABELS[section]
        for group in aggregate.groups(section):
            label = _text(group.label or group.key)
            rows.append([
                group_label,
                label,
                to_cents_str(group.amount),
                f"{len(group.items)} of {group.item_count} items",
            ])
            for item in group.items:
                rows.append([item_label, label, to_cents_str(item.amount), _item_details(section, item, fmt)])
    return rows


def to_csv(aggregate: Optional[Aggregate], format_timestamp: Optional[TimestampFormatter] = None) -> str:
    """Every cell quoted, embedded quotes doubled, rows separated by \\n."""
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerows(csv_rows(aggregate, format_timestamp))
    return buf.getvalue().rstrip("\n")


def _payment_row(item, fmt: TimestampFormatter, currency: str) -> Dict[str, str]:
    student = item.student_name or (str(item.student_id) if item.student_id is not None else PLACEHOLDER)
    return {
        "student": student,
        "amount": format_money2(item.amount, currency),
        "type": item.payment_type or PLACEHOLDER,
        "date": fmt(item.occurred_at) or PLACEHOLDER,
        "mode": item.payment_mode or PLACEHOLDER,
    }


def _expense_row(item, fmt: TimestampFormatter, currency: str) -> Dict[str, str]:
    return {
        "description": item.description or "",
        "amount": format_money2(item.amount, currency),
        "date": fmt(item.occurred_at) or PLACEHOLDER,
    }


def _group_view(section: str, group: Group, fmt: TimestampFormatter, currency: str) -> Dict[str, Any]:
    build_row = _payment_row if section == SECTION_PAYMENTS else _expense_row
    return {
        "label": group.label or group.key or PLACEHOLDER,
        "amount": format_money(group.amount, currency),
        "item_count": group.item_count,
        "loaded": len(group.items),
        "rows": [build_row(item, fmt, currency) for item in group.items],
    }


def to_printable_html(
    aggregate: Optional[Aggregate],
    period: Optional[ReportPeriod] = None,
    title: Optional[str] = None,
    currency: str = "INR",
    format_timestamp: Optional[TimestampFormatter] = None,
) -> str:
    """
    Render the print view: summary totals, one table per section listing
    every group, and an item table nested in the row right under each
    group that has loaded items.
    """
    fmt = format_timestamp or make_timestamp_formatter()
    if period is None and aggregate is not None:
        period = aggregate.period

    income_groups = []
    expense_groups = []
    if aggregate is not None:
        income_groups = [_group_view(SECTION_PAYMENTS, g, fmt, currency) for g in aggregate.payment_groups]
        expense_groups = [_group_view(SECTION_EXPENSES, g, fmt, currency) for g in aggregate.expense_groups]

    template = _env.get_template("balance_sheet_print.html")
    return template.render(
        title=title or DEFAULT_TITLE,
        period_label=format_period(period),
        total_income=format_money(aggregate.total_income if aggregate else 0, currency),
        total_expenses=format_money(aggregate.total_expenses if aggregate else 0, currency),
        net=format_money(aggregate.net if aggregate else 0, currency),
        truncated=bool(aggregate and aggregate.truncated),
        income_groups=income_groups,
        expense_groups=expense_groups,
    )

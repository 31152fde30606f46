"""
Group aggregation: partition payments/expenses by category key and total them.

Used by the fallback path of the report client (raw list responses) and by
the complete CSV export. Groups keep first-seen order so repeated runs over
the same input produce the same layout.
"""
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from studyfin.domain.finance import (
    Aggregate, FinancialRecord, Group, MalformedRecord, ReportPeriod,
    RECORD_KIND_PAYMENT, RECORD_KIND_EXPENSE,
    PAYMENT_FALLBACK_KEY, EXPENSE_FALLBACK_KEY,
    group_key, record_from_payload,
)
from studyfin.utils.dates import DEFAULT_TIMEZONE, period_bounds_utc
from studyfin.utils.money import to_decimal

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")

_SENTINEL_KEYS = {
    RECORD_KIND_PAYMENT: PAYMENT_FALLBACK_KEY,
    RECORD_KIND_EXPENSE: EXPENSE_FALLBACK_KEY,
}


def aggregate(
    records: Iterable[FinancialRecord],
    key_fn: Callable[[FinancialRecord], Optional[str]] = group_key,
) -> List[Group]:
    """
    Partition records into groups by `key_fn`.

    Each record adds its signed amount to the group sum, increments
    item_count and is appended to items. A record with an unusable amount
    still counts as an item but adds nothing to the sum. Records with an
    empty key land in the "other" / "Uncategorized" sentinel group.
    """
    groups: Dict[str, Group] = {}
    bad_amounts = 0
    for record in records:
        key = key_fn(record) or _SENTINEL_KEYS.get(getattr(record, "kind", None), PAYMENT_FALLBACK_KEY)
        group = groups.get(key)
        if group is None:
            group = Group(key=key, label=key)
            groups[key] = group

        amount = to_decimal(record.amount)
        if amount is None or not getattr(record, "amount_valid", True):
            bad_amounts += 1
            amount = _ZERO
        group.amount += amount
        group.item_count += 1
        group.items.append(record)

    if bad_amounts:
        logger.warning("Aggregated %d record(s) with a non-numeric amount as 0", bad_amounts)
    return list(groups.values())


def build_aggregate(
    period: ReportPeriod,
    payments: Sequence[FinancialRecord],
    expenses: Sequence[FinancialRecord],
    truncated: bool = False,
) -> Aggregate:
    """Aggregate both sections; totals are derived from the groups."""
    payment_groups = aggregate(payments)
    expense_groups = aggregate(expenses)
    return Aggregate(
        period=period,
        total_income=sum((g.amount for g in payment_groups), _ZERO),
        total_expenses=sum((g.amount for g in expense_groups), _ZERO),
        payment_groups=payment_groups,
        expense_groups=expense_groups,
        truncated=truncated,
    )


def decode_records(section: str, rows: Iterable[Dict[str, Any]]) -> Tuple[List[FinancialRecord], int]:
    """
    Decode raw JSON rows, dropping those whose timestamp does not parse.

    Returns:
        (records, skipped_count)
    """
    records: List[FinancialRecord] = []
    skipped = 0
    for row in rows:
        if not isinstance(row, dict):
            skipped += 1
            logger.warning("Skipping %s row that is not an object: %r", section, row)
            continue
        try:
            records.append(record_from_payload(section, row))
        except MalformedRecord as e:
            skipped += 1
            logger.warning("Skipping record: %s", e)
    return records, skipped


def filter_period(
    records: Iterable[FinancialRecord],
    period: ReportPeriod,
    tz_name: str = DEFAULT_TIMEZONE,
) -> List[FinancialRecord]:
    """Keep records whose timestamp falls inside the period (local calendar days)."""
    start, end = period_bounds_utc(period.start_date, period.end_date, tz_name)
    result = []
    for record in records:
        if start is not None and record.occurred_at < start:
            continue
        if end is not None and record.occurred_at >= end:
            continue
        result.append(record)
    return result

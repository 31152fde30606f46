"""
Unified money formatting for reports and exports.

Usage:
    from studyfin.utils.money import format_money, to_cents_str

    format_money(15000, "INR")      -> "₹15,000"
    format_money(-250.5, "INR", 2)  -> "-₹250.50"
    format_money(1200, "USD")       -> "1,200 USD"
    to_cents_str(Decimal("400"))    -> "400.00"
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

_CENT = Decimal("0.01")

# Prefix symbol for known currencies, ISO code suffix for the rest
_CURRENCY_SYMBOL = {
    "INR": "₹",
}


def to_decimal(value) -> Decimal | None:
    """
    Parse an amount coming from JSON or the database.

    Returns None for missing, non-numeric or non-finite values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return None
    if not result.is_finite():
        return None
    return result


def to_cents_str(amount) -> str:
    """Fixed two-decimal rendering; unparseable input renders as 0.00."""
    value = to_decimal(amount)
    if value is None:
        value = Decimal("0")
    return str(value.quantize(_CENT, rounding=ROUND_HALF_UP))


def format_money(amount, currency: str = "INR", decimals: int = 0) -> str:
    """
    Format an amount with thousands separators and the currency marker.

    Args:
        amount: int / float / Decimal / str (unparseable values show as 0)
        currency: ISO currency code
        decimals: digits after the decimal point

    Returns:
        "₹15,000" / "1,200 USD"
    """
    value = to_decimal(amount)
    if value is None:
        value = Decimal("0")
    fmt = f"{{:,.{decimals}f}}"
    formatted = fmt.format(abs(value))
    sign = "-" if value < 0 else ""
    symbol = _CURRENCY_SYMBOL.get(currency)
    if symbol:
        return f"{sign}{symbol}{formatted}"
    return f"{sign}{formatted} {currency}"


def format_money2(amount, currency: str = "INR") -> str:
    """Two decimals, used in item-level tables."""
    return format_money(amount, currency, decimals=2)

from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from billsync.utils.dates import month_label


_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y")


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


def to_float(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def quantize_cents(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def format_currency(value: Any, currency: str = "USD") -> str:
    amount = quantize_cents(to_decimal(value))
    sign = "-" if amount < 0 else ""
    symbol = "€" if currency.upper() == "EUR" else "$"
    return f"{sign}{symbol}{abs(amount):,.2f}"


def format_hours(value: Any) -> str:
    return f"{to_float(value):.2f} hrs"


def format_quantity(value: Any) -> str:
    quantity = to_decimal(value)
    if quantity == quantity.to_integral_value():
        return str(quantity.quantize(Decimal("1")))
    return f"{quantize_cents(quantity):f}"


def parse_date(value: Any) -> Optional[date]:
    """Parse ISO `YYYY-MM-DD` (optionally with a time part) or FileMaker `MM/DD/YYYY`."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    if "T" in text:
        text = text.split("T", 1)[0]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def format_date(value: Any) -> str:
    parsed = parse_date(value)
    if parsed is None:
        return "N/A" if not value else "Invalid Date"
    return f"{parsed:%b} {parsed.day}, {parsed.year}"


def format_month_year(month: int, year: int) -> str:
    return month_label(month, year)

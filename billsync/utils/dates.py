from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo

from billsync.core.config import Settings, get_settings
from billsync.core.errors import ValidationError


TIMEFRAMES = (
    "today",
    "thisweek",
    "thismonth",
    "lastmonth",
    "unpaid",
    "thisquarter",
    "thisyear",
)


def business_today(settings: Settings | None = None) -> date:
    settings = settings or get_settings()
    return datetime.now(ZoneInfo(settings.business_timezone)).date()


def normalize_timeframe(timeframe: str) -> str:
    normalized = (timeframe or "").strip().lower()
    if normalized not in TIMEFRAMES:
        raise ValidationError(f"Invalid timeframe: {timeframe}")
    return normalized


def month_label(month: int, year: int) -> str:
    return f"{calendar.month_abbr[month]} {year}"


def shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def last_completed_months(today: date, count: int = 3) -> list[tuple[int, int]]:
    """(year, month) pairs for the `count` months before today's, oldest first."""
    months = [shift_month(today.year, today.month, -offset) for offset in range(1, count + 1)]
    return sorted(months)


def invoice_due_date(created: date) -> date:
    year, month = shift_month(created.year, created.month, 1)
    return date(year, month, calendar.monthrange(year, month)[1])


def invoice_doc_number(qbo_customer_id: str, created: date) -> str:
    return f"{qbo_customer_id}{created:%y}{created:%m}01"


def filemaker_date(value: date) -> str:
    return value.strftime("%m/%d/%Y")


def build_timeframe_query(
    timeframe: str,
    *,
    today: date,
    customer_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> list[dict[str, Any]]:
    """Build the OR'ed FileMaker find requests for a timeframe.

    Every request carries the customer/project filters so they AND with the
    date criteria inside each request.
    """
    normalized = normalize_timeframe(timeframe)
    filters: dict[str, Any] = {}
    if customer_id:
        filters["customers_Projects::_custID"] = customer_id
    if project_id:
        filters["_projectID"] = project_id

    def _month_request(year: int, month: int) -> dict[str, Any]:
        return {"month": str(month), "year": str(year), **filters}

    if normalized == "today":
        return [{"DateStart": filemaker_date(today), **filters}]
    if normalized == "thisweek":
        return [{"weekNo": str(today.isocalendar()[1]), "year": str(today.year), **filters}]
    if normalized == "thismonth":
        return [_month_request(today.year, today.month)]
    if normalized == "lastmonth":
        return [_month_request(*shift_month(today.year, today.month, -1))]
    if normalized == "unpaid":
        return [{"f_billed": "0", **filters}]
    if normalized == "thisquarter":
        recent = [shift_month(today.year, today.month, -offset) for offset in range(1, 4)]
        previous = [(year - 1, month) for year, month in recent]
        return [_month_request(year, month) for year, month in recent + previous]
    current = [(today.year, month) for month in range(1, 13)]
    previous = [(today.year - 1, month) for month in range(1, 13)]
    return [_month_request(year, month) for year, month in current + previous]


def week_bounds(today: date) -> tuple[date, date]:
    """Sunday through Saturday containing `today`."""
    start = today - timedelta(days=(today.weekday() + 1) % 7)
    return start, start + timedelta(days=6)

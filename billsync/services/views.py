"""Stateful views over time entries and sales.

Each view keeps the selection, sort and timeframe a dashboard screen works
with and exposes the derived groups, totals and chart series as properties.
"""

from __future__ import annotations

import calendar
import logging
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from billsync.core.errors import ValidationError, VendorApiError
from billsync.schemas.records import (
    ChartData,
    ChartDataset,
    CustomerGroup,
    MonthlyTotal,
    ProjectGroup,
    RecordTotals,
    SaleLine,
    SalesCustomerGroup,
    SalesMonthlyTotal,
    SalesProductGroup,
    SalesTotals,
    TimeEntry,
)
from billsync.services import financial_service
from billsync.services.filemaker_client import FileMakerClient
from billsync.services.state import AppState
from billsync.utils.dates import business_today, month_label, normalize_timeframe, week_bounds
from billsync.utils.formatting import parse_date


logger = logging.getLogger("billsync.views")

SALES_TIMEFRAMES = {
    "today": "today",
    "thisweek": "thisWeek",
    "thismonth": "thisMonth",
    "thisquarter": "thisQuarter",
    "thisyear": "thisYear",
}
SALES_COLOR = ("rgba(54, 162, 235, 1)", "rgba(54, 162, 235, 0.5)")


def chart_type_for_timeframe(timeframe: str) -> str:
    if timeframe == "thisquarter":
        return "quarterlyline"
    if timeframe == "thisyear":
        return "yearlyline"
    return "stacked"


class FinancialRecordsView:
    def __init__(
        self,
        client: FileMakerClient,
        timeframe: str = "thismonth",
        customer_id: Optional[str] = None,
        project_id: Optional[str] = None,
        *,
        today: Optional[date] = None,
    ):
        self.client = client
        self.timeframe = normalize_timeframe(timeframe)
        self.selected_customer_id = customer_id
        self.selected_project_id = project_id
        self.selected_month: Optional[tuple[int, int]] = None
        self.sort_field = "date"
        self.sort_direction = "desc"
        self.today = today
        self.error: Optional[str] = None
        self._records: list[TimeEntry] = []

    async def load(self) -> list[TimeEntry]:
        """Fetch the whole timeframe; customer/project selection filters in memory."""
        result = await self.client.fetch_financial_records(self.timeframe, today=self._today())
        if not result.success:
            self.error = result.error or "Failed to fetch financial records"
            raise VendorApiError(self.error, status_code=result.status_code, body=result.data)
        self.error = None
        self._records = self._sorted(financial_service.process_financial_data(result.data))
        logger.info(
            "financial_view_loaded",
            extra={"timeframe": self.timeframe, "record_count": len(self._records)},
        )
        return self._records

    async def change_timeframe(self, timeframe: str) -> list[TimeEntry]:
        self.timeframe = normalize_timeframe(timeframe)
        self.selected_month = None
        return await self.load()

    def select_customer(self, customer_id: Optional[str]) -> None:
        self.selected_customer_id = customer_id
        self.selected_project_id = None

    def select_project(self, project_id: Optional[str]) -> None:
        self.selected_project_id = project_id

    def select_month(self, year: Optional[int], month: Optional[int]) -> None:
        self.selected_month = (year, month) if year and month else None

    def update_sort(self, field: str) -> None:
        if field == self.sort_field:
            self.sort_direction = "asc" if self.sort_direction == "desc" else "desc"
        else:
            self.sort_field = field
            self.sort_direction = "desc" if field in ("date", "amount") else "asc"
        self._records = self._sorted(self._records)

    def update_billed_status(self, customer_id: Optional[str], record_ids: list[str]) -> bool:
        """Mark records billed locally after an invoice went out."""
        if not customer_id or not record_ids:
            return False
        ids = set(record_ids)
        self._records = [
            record.model_copy(update={"billed": True})
            if record.customer_id == customer_id and record.id in ids
            else record
            for record in self._records
        ]
        return True

    @property
    def all_records(self) -> list[TimeEntry]:
        return list(self._records)

    @property
    def records(self) -> list[TimeEntry]:
        filtered = self._records
        if self.selected_customer_id:
            filtered = [record for record in filtered if record.customer_id == self.selected_customer_id]
        if self.selected_project_id:
            filtered = [record for record in filtered if record.project_id == self.selected_project_id]
        return list(filtered)

    @property
    def records_by_customer(self) -> dict[Optional[str], CustomerGroup]:
        return financial_service.group_records_by_customer(self._records)

    @property
    def records_by_project(self) -> dict[str, ProjectGroup]:
        if not self.selected_customer_id:
            return {}
        return financial_service.group_records_by_project(self._records, self.selected_customer_id)

    @property
    def selected_customer(self) -> Optional[CustomerGroup]:
        if not self.selected_customer_id:
            return None
        return self.records_by_customer.get(self.selected_customer_id)

    @property
    def selected_project(self) -> Optional[ProjectGroup]:
        if not self.selected_project_id:
            return None
        return self.records_by_project.get(self.selected_project_id)

    @property
    def totals(self) -> RecordTotals:
        return financial_service.calculate_totals(self.records)

    @property
    def monthly_totals(self) -> list[MonthlyTotal]:
        return financial_service.calculate_monthly_totals(self.records)

    @property
    def chart_data(self) -> ChartData:
        return financial_service.prepare_chart_data(
            self.records,
            chart_type_for_timeframe(self.timeframe),
            today=self._today(),
        )

    @property
    def selected_month_records(self) -> list[TimeEntry]:
        if self.selected_month is None:
            return []
        year, month = self.selected_month
        return [record for record in self.records if record.year == year and record.month == month]

    def _today(self) -> date:
        return self.today or business_today(self.client.settings)

    def _sorted(self, records: list[TimeEntry]) -> list[TimeEntry]:
        if self.sort_field == "amount":
            return financial_service.sort_records_by_amount(records, self.sort_direction)
        if self.sort_field == "date":
            return financial_service.sort_records_by_date(records, self.sort_direction)
        return list(records)


def normalize_sales_timeframe(timeframe: str) -> str:
    key = (timeframe or "").strip().lower()
    if key not in SALES_TIMEFRAMES:
        raise ValidationError(f"Invalid timeframe: {timeframe}")
    return SALES_TIMEFRAMES[key]


class SalesActivityView:
    """Sales recorded in `AppState.sales`, narrowed to a calendar timeframe."""

    def __init__(self, state: AppState, timeframe: str = "today", *, now: Optional[datetime] = None):
        self.state = state
        self.timeframe = normalize_sales_timeframe(timeframe)
        self.now = now
        self.selected_customer_id: Optional[str] = None
        self.selected_month: Optional[tuple[int, int]] = None

    def change_timeframe(self, timeframe: str) -> None:
        self.timeframe = normalize_sales_timeframe(timeframe)
        self.selected_customer_id = None
        self.selected_month = None

    def select_customer(self, customer_id: Optional[str]) -> None:
        self.selected_customer_id = customer_id

    def select_month(self, year: Optional[int], month: Optional[int]) -> None:
        self.selected_month = (year, month) if year and month else None

    @property
    def records(self) -> list[SaleLine]:
        return [sale for sale in self.state.sales if self._in_timeframe(parse_date(sale.date))]

    @property
    def totals(self) -> SalesTotals:
        totals = SalesTotals()
        for sale in self.records:
            totals.total_amount += sale.total_price
            totals.total_quantity += sale.quantity
        return totals

    @property
    def records_by_customer(self) -> list[SalesCustomerGroup]:
        groups: dict[str, SalesCustomerGroup] = {}
        for sale in self.records:
            if not sale.customer_id:
                continue
            group = groups.get(sale.customer_id)
            if group is None:
                group = SalesCustomerGroup(
                    customer_id=sale.customer_id,
                    customer_name=sale.customer_name or "Unknown Customer",
                )
                groups[sale.customer_id] = group
            group.records.append(sale)
            group.total_amount += sale.total_price
            group.total_quantity += sale.quantity
        return sorted(groups.values(), key=lambda group: group.total_amount, reverse=True)

    @property
    def records_by_product(self) -> list[SalesProductGroup]:
        groups: dict[str, SalesProductGroup] = {}
        for sale in self.records:
            if self.selected_customer_id and sale.customer_id != self.selected_customer_id:
                continue
            name = sale.product_name or "Unknown Product"
            group = groups.setdefault(name, SalesProductGroup(product_name=name))
            group.records.append(sale)
            group.total_amount += sale.total_price
            group.total_quantity += sale.quantity
        return sorted(groups.values(), key=lambda group: group.total_amount, reverse=True)

    @property
    def selected_customer(self) -> Optional[SalesCustomerGroup]:
        if not self.selected_customer_id:
            return None
        return next(
            (group for group in self.records_by_customer if group.customer_id == self.selected_customer_id),
            None,
        )

    @property
    def monthly_totals(self) -> list[SalesMonthlyTotal]:
        if self.timeframe not in ("thisQuarter", "thisYear"):
            return []
        year = self._now().year
        months = self._month_window()
        buckets = [SalesMonthlyTotal(year=year, month=month, label=month_label(month, year)) for month in months]
        by_month = {bucket.month: bucket for bucket in buckets}
        for sale in self.records:
            parsed = parse_date(sale.date)
            bucket = by_month.get(parsed.month) if parsed and parsed.year == year else None
            if bucket is None:
                continue
            bucket.total_amount += sale.total_price
            bucket.total_quantity += sale.quantity
            bucket.records.append(sale)
        return buckets

    @property
    def selected_month_records(self) -> list[SaleLine]:
        if self.selected_month is None:
            return []
        year, month = self.selected_month
        selected = []
        for sale in self.records:
            parsed = parse_date(sale.date)
            if parsed and parsed.year == year and parsed.month == month:
                selected.append(sale)
        return selected

    @property
    def chart_data(self) -> ChartData:
        records = self.records
        if not records:
            return ChartData(datasets=[self._dataset([])])

        now = self._now()
        if self.timeframe == "today":
            # sales carry no time of day; they are charted at the current hour
            data = [0.0] * 24
            data[now.hour] = sum(sale.total_price for sale in records)
            labels = [f"{hour}:00" for hour in range(24)]
        elif self.timeframe == "thisWeek":
            data = [0.0] * 7
            for sale in records:
                parsed = parse_date(sale.date)
                data[(parsed.weekday() + 1) % 7] += sale.total_price
            labels = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
        elif self.timeframe == "thisMonth":
            days = calendar.monthrange(now.year, now.month)[1]
            data = [0.0] * days
            for sale in records:
                data[parse_date(sale.date).day - 1] += sale.total_price
            labels = [str(day) for day in range(1, days + 1)]
        else:
            months = self._month_window()
            data = [0.0] * len(months)
            for sale in records:
                data[months.index(parse_date(sale.date).month)] += sale.total_price
            labels = [calendar.month_abbr[month] for month in months]
        return ChartData(labels=labels, datasets=[self._dataset(data)])

    def _now(self) -> datetime:
        if self.now is not None:
            return self.now
        return datetime.now(ZoneInfo(self.state.settings.business_timezone))

    def _month_window(self) -> list[int]:
        if self.timeframe == "thisQuarter":
            start = (self._now().month - 1) // 3 * 3 + 1
            return [start, start + 1, start + 2]
        return list(range(1, 13))

    def _in_timeframe(self, value: Optional[date]) -> bool:
        if value is None:
            return False
        today = self._now().date()
        if self.timeframe == "today":
            return value == today
        if self.timeframe == "thisWeek":
            start, end = week_bounds(today)
            return start <= value <= end
        if self.timeframe == "thisMonth":
            return (value.year, value.month) == (today.year, today.month)
        if self.timeframe == "thisQuarter":
            return value.year == today.year and value.month in self._month_window()
        return value.year == today.year

    @staticmethod
    def _dataset(data: list[float]) -> ChartDataset:
        border, background = SALES_COLOR
        return ChartDataset(label="Sales", data=data, border_color=border, background_color=background)

"""Shaping of FileMaker time entries into groups, totals and chart series."""

from __future__ import annotations

import calendar
import logging
from datetime import date
from typing import Any, Iterable, Optional

from billsync.schemas.records import (
    ChartData,
    ChartDataset,
    CustomerGroup,
    MonthlyTotal,
    ProjectGroup,
    RecordTotals,
    TimeEntry,
)
from billsync.utils.dates import last_completed_months, month_label
from billsync.utils.formatting import (
    format_currency,
    format_date,
    format_hours,
    parse_date,
    to_float,
)


logger = logging.getLogger("billsync.services.financial")

TOTAL_COLOR = ("rgba(54, 162, 235, 0.8)", "rgba(54, 162, 235, 0.1)")
BILLED_COLOR = ("rgba(75, 192, 192, 0.8)", "rgba(75, 192, 192, 0.1)")
UNBILLED_COLOR = ("rgba(255, 159, 64, 0.8)", "rgba(255, 159, 64, 0.1)")
LAST_YEAR_COLOR = ("rgba(153, 102, 255, 0.8)", "rgba(153, 102, 255, 0.1)")
BAR_COLOR = "rgba(54, 162, 235, 0.6)"
CHART_TYPES = ("bar", "stacked", "line", "quarterlyline", "yearlyline")

_REQUIRED_FIELDS = ("customer_id", "project_id", "hours", "rate", "date")


def _to_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _is_billed(value: Any) -> bool:
    return value == "1" or value == 1


def process_financial_data(payload: Any) -> list[TimeEntry]:
    """Turn a FileMaker find/list response into `TimeEntry` records."""
    response = payload.get("response") if isinstance(payload, dict) else None
    rows = response.get("data") if isinstance(response, dict) else None
    if not isinstance(rows, list):
        logger.warning("financial_payload_missing_data")
        return []

    records: list[TimeEntry] = []
    for row in rows:
        fields = row.get("fieldData") or {}
        hours = to_float(fields.get("Billable_Time_Rounded"))
        rate = to_float(fields.get("Hourly_Rate") or fields.get("Customers::chargeRate"))
        records.append(
            TimeEntry(
                id=fields.get("__ID"),
                record_id=row.get("recordId"),
                customer_id=fields.get("customers_Projects::_custID"),
                customer_name=fields.get("Customers::Name") or "Unknown Customer",
                project_id=fields.get("_projectID"),
                project_name=(
                    fields.get("customers_Projects::projectName")
                    or fields.get("customers_Projects::Name")
                    or "Unknown Project"
                ),
                hours=hours,
                rate=rate,
                amount=hours * rate,
                date=fields.get("DateStart"),
                month=_to_int(fields.get("month")),
                year=_to_int(fields.get("year")),
                billed=_is_billed(fields.get("f_billed")),
                description=fields.get("Work Performed") or "",
                created_at=fields.get("~creationTimestamp"),
                modified_at=fields.get("~ModificationTimestamp") or fields.get("~modificationTimestamp"),
            )
        )
    logger.info("financial_records_processed", extra={"record_count": len(records)})
    return records


def group_records_by_customer(records: Iterable[TimeEntry]) -> dict[Optional[str], CustomerGroup]:
    grouped: dict[Optional[str], CustomerGroup] = {}
    for record in records:
        group = grouped.get(record.customer_id)
        if group is None:
            group = CustomerGroup(customer_id=record.customer_id, customer_name=record.customer_name)
            grouped[record.customer_id] = group
        group.records.append(record)
        group.total_amount += record.amount
        group.total_hours += record.hours

        project = group.projects.get(record.project_id)
        if project is None:
            project = ProjectGroup(project_id=record.project_id, project_name=record.project_name)
            group.projects[record.project_id] = project
        project.records.append(record)
        project.total_amount += record.amount
        project.total_hours += record.hours
    return grouped


def group_records_by_project(
    records: Iterable[TimeEntry],
    customer_id: Optional[str] = None,
) -> dict[str, ProjectGroup]:
    """Group by project, optionally for one customer. Entries without a project are left out."""
    grouped: dict[str, ProjectGroup] = {}
    for record in records:
        if customer_id and record.customer_id != customer_id:
            continue
        if record.project_id is None:
            continue
        group = grouped.get(record.project_id)
        if group is None:
            group = ProjectGroup(
                project_id=record.project_id,
                project_name=record.project_name,
                customer_id=record.customer_id,
                customer_name=record.customer_name,
            )
            grouped[record.project_id] = group
        group.records.append(record)
        group.total_amount += record.amount
        group.total_hours += record.hours
    return grouped


def calculate_totals(records: Iterable[TimeEntry]) -> RecordTotals:
    totals = RecordTotals()
    for record in records:
        totals.total_amount += record.amount
        totals.total_hours += record.hours
        if record.billed:
            totals.billed_amount += record.amount
            totals.billed_hours += record.hours
        else:
            totals.unbilled_amount += record.amount
            totals.unbilled_hours += record.hours
    return totals


def calculate_monthly_totals(records: Iterable[TimeEntry]) -> list[MonthlyTotal]:
    """Monthly buckets, all twelve months for every year present."""
    records = list(records)
    buckets: dict[tuple[int, int], MonthlyTotal] = {}
    for year in sorted({record.year for record in records if record.year}):
        for month in range(1, 13):
            buckets[(year, month)] = MonthlyTotal(year=year, month=month, label=month_label(month, year))

    for record in records:
        if not (record.month and record.year):
            continue
        key = (record.year, record.month)
        bucket = buckets.get(key)
        if bucket is None:
            bucket = MonthlyTotal(year=record.year, month=record.month, label=month_label(record.month, record.year))
            buckets[key] = bucket
        bucket.total_amount += record.amount
        bucket.total_hours += record.hours
        bucket.record_count += 1
        if record.billed:
            bucket.billed_amount += record.amount
        else:
            bucket.unbilled_amount += record.amount
    return [buckets[key] for key in sorted(buckets)]


def _line_dataset(label: str, data: list[float], colors: tuple[str, str]) -> ChartDataset:
    border, background = colors
    return ChartDataset(
        label=label,
        data=data,
        border_color=border,
        background_color=background,
        fill=True,
        tension=0.4,
    )


def _amount_by_month(records: Iterable[TimeEntry], *, billed_only: bool = False) -> dict[tuple[int, int], float]:
    sums: dict[tuple[int, int], float] = {}
    for record in records:
        if billed_only and not record.billed:
            continue
        key = (record.year, record.month)
        sums[key] = sums.get(key, 0.0) + record.amount
    return sums


def prepare_chart_data(
    records: Iterable[TimeEntry],
    chart_type: str,
    today: Optional[date] = None,
) -> ChartData:
    records = list(records)
    kind = (chart_type or "").lower()
    today = today or date.today()

    if kind == "bar":
        customers = list(group_records_by_customer(records).values())
        return ChartData(
            labels=[group.customer_name for group in customers],
            datasets=[
                ChartDataset(
                    label="Total Amount",
                    data=[group.total_amount for group in customers],
                    background_color=BAR_COLOR,
                )
            ],
        )

    if kind == "stacked":
        customers = list(group_records_by_customer(records).values())
        project_ids: list[Optional[str]] = []
        for group in customers:
            for project_id in group.projects:
                if project_id not in project_ids:
                    project_ids.append(project_id)
        datasets = []
        for index, project_id in enumerate(project_ids):
            name = next(
                group.projects[project_id].project_name
                for group in customers
                if project_id in group.projects
            )
            hue = (index * 137) % 360
            datasets.append(
                ChartDataset(
                    label=name or f"Project {project_id}",
                    data=[
                        group.projects[project_id].total_amount if project_id in group.projects else 0.0
                        for group in customers
                    ],
                    background_color=f"hsla({hue}, 70%, 60%, 0.7)",
                )
            )
        return ChartData(labels=[group.customer_name for group in customers], datasets=datasets)

    if kind == "line":
        monthly = calculate_monthly_totals(records)
        return ChartData(
            labels=[bucket.label for bucket in monthly],
            datasets=[
                _line_dataset("Total Amount", [bucket.total_amount for bucket in monthly], TOTAL_COLOR),
                _line_dataset("Billed Amount", [bucket.billed_amount for bucket in monthly], BILLED_COLOR),
                _line_dataset("Unbilled Amount", [bucket.unbilled_amount for bucket in monthly], UNBILLED_COLOR),
            ],
        )

    if kind == "quarterlyline":
        months = last_completed_months(today, 3)
        sums = _amount_by_month(records)
        return ChartData(
            labels=[calendar.month_abbr[month] for _, month in months],
            datasets=[
                _line_dataset("This Year", [sums.get((year, month), 0.0) for year, month in months], TOTAL_COLOR),
                _line_dataset(
                    "Last Year",
                    [sums.get((year - 1, month), 0.0) for year, month in months],
                    LAST_YEAR_COLOR,
                ),
            ],
        )

    if kind == "yearlyline":
        totals = _amount_by_month(records)
        billed = _amount_by_month(records, billed_only=True)
        months = range(1, 13)
        return ChartData(
            labels=[calendar.month_abbr[month] for month in months],
            datasets=[
                _line_dataset("Total Amount", [totals.get((today.year, month), 0.0) for month in months], TOTAL_COLOR),
                _line_dataset("Billed Amount", [billed.get((today.year, month), 0.0) for month in months], BILLED_COLOR),
            ],
        )

    logger.warning("unsupported_chart_type", extra={"chart_type": chart_type})
    return ChartData()


def validate_financial_record_data(data: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    missing = [field for field in _REQUIRED_FIELDS if not data.get(field)]
    if missing:
        errors.append(f"Missing required fields: {', '.join(missing)}")
    for field, label in (("hours", "Hours"), ("rate", "Rate")):
        value = data.get(field)
        if value in (None, ""):
            continue
        try:
            if float(value) < 0:
                raise ValueError(value)
        except (TypeError, ValueError):
            errors.append(f"{label} must be a positive number")
    if data.get("date") and parse_date(data["date"]) is None:
        errors.append("Invalid date format")
    return errors


def format_financial_record_for_display(record: TimeEntry) -> dict[str, Any]:
    return {
        "id": record.id,
        "record_id": record.record_id,
        "customer_id": record.customer_id,
        "customer_name": record.customer_name,
        "project_id": record.project_id,
        "project_name": record.project_name,
        "amount": format_currency(record.amount),
        "raw_amount": record.amount,
        "hours": format_hours(record.hours),
        "raw_hours": record.hours,
        "rate": format_currency(record.rate),
        "date": format_date(record.date),
        "raw_date": record.date,
        "month": record.month,
        "year": record.year,
        "status": "Billed" if record.billed else "Unbilled",
        "billed": record.billed,
        "description": record.description,
        "created": record.created_at,
        "modified": record.modified_at,
    }


def format_financial_record_for_filemaker(data: dict[str, Any]) -> dict[str, str]:
    """Map an edited record back to FileMaker `fieldData` names."""
    parsed = parse_date(data.get("date"))
    return {
        "_projectID": data.get("project_id") or "",
        "Billable_Time_Rounded": str(data.get("hours", 0)),
        "Hourly_Rate": str(data.get("rate", 0)),
        "DateStart": parsed.strftime("%m/%d/%Y") if parsed else str(data.get("date") or ""),
        "month": str(parsed.month) if parsed else "",
        "year": str(parsed.year) if parsed else "",
        "f_billed": "1" if data.get("billed") else "0",
        "Work Performed": data.get("description") or "",
    }


def _date_key(record: TimeEntry) -> date:
    return parse_date(record.date) or date.min


def sort_records_by_date(records: Iterable[TimeEntry], direction: str = "desc") -> list[TimeEntry]:
    return sorted(records, key=_date_key, reverse=direction != "asc")


def sort_records_by_amount(records: Iterable[TimeEntry], direction: str = "desc") -> list[TimeEntry]:
    return sorted(records, key=lambda record: record.amount, reverse=direction != "asc")


def filter_records_by_date_range(records: Iterable[TimeEntry], start: date, end: date) -> list[TimeEntry]:
    filtered = []
    for record in records:
        parsed = parse_date(record.date)
        if parsed is not None and start <= parsed <= end:
            filtered.append(record)
    return filtered


def filter_records_by_billed_status(records: Iterable[TimeEntry], billed: bool) -> list[TimeEntry]:
    return [record for record in records if record.billed == billed]

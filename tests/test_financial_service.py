from __future__ import annotations

from datetime import date

import pytest

from billsync.services import financial_service


def fm_row(record_id, **fields):
    base = {
        "__ID": f"uuid-{record_id}",
        "customers_Projects::_custID": "c1",
        "Customers::Name": "AL3 Inc.",
        "_projectID": "p1",
        "customers_Projects::projectName": "NAEMT Review",
        "Billable_Time_Rounded": "2.5",
        "Hourly_Rate": "100",
        "DateStart": "05/10/2024",
        "month": "5",
        "year": "2024",
        "f_billed": "0",
    }
    base.update(fields)
    return {"recordId": str(record_id), "fieldData": base}


def payload(*rows):
    return {"response": {"data": list(rows)}, "messages": [{"code": "0"}]}


@pytest.fixture
def records():
    return financial_service.process_financial_data(
        payload(
            fm_row(1),
            fm_row(2, Billable_Time_Rounded="1.25", Hourly_Rate="80", f_billed="1"),
            fm_row(
                3,
                **{
                    "customers_Projects::_custID": "c2",
                    "Customers::Name": "Beta Corp",
                    "_projectID": None,
                    "Billable_Time_Rounded": 3,
                    "Hourly_Rate": None,
                    "Customers::chargeRate": "50",
                    "f_billed": 1,
                    "month": "4",
                },
            ),
        )
    )


def test_amount_is_hours_times_rate_and_billed_is_coerced(records):
    for record in records:
        assert record.amount == pytest.approx(record.hours * record.rate)
    assert [record.billed for record in records] == [False, True, True]
    assert records[2].rate == 50.0
    assert records[0].record_id == "1"
    assert records[0].project_name == "NAEMT Review"


def test_process_financial_data_without_rows():
    assert financial_service.process_financial_data({"messages": []}) == []
    assert financial_service.process_financial_data(None) == []


def test_customer_groups_keep_every_amount(records):
    groups = financial_service.group_records_by_customer(records)

    assert set(groups) == {"c1", "c2"}
    assert sum(group.total_amount for group in groups.values()) == pytest.approx(
        sum(record.amount for record in records)
    )
    assert groups["c1"].projects["p1"].total_hours == pytest.approx(3.75)


def test_project_groups_drop_records_without_project(records):
    groups = financial_service.group_records_by_project(records)

    assert list(groups) == ["p1"]
    assert groups["p1"].total_amount == pytest.approx(350.0)
    assert financial_service.group_records_by_project(records, "c2") == {}


def test_totals_split_billed_and_unbilled(records):
    totals = financial_service.calculate_totals(records)

    assert totals.total_amount == pytest.approx(500.0)
    assert totals.billed_amount == pytest.approx(250.0)
    assert totals.unbilled_amount == pytest.approx(250.0)


def test_monthly_totals_cover_the_whole_year(records):
    monthly = financial_service.calculate_monthly_totals(records)

    assert len(monthly) == 12
    may = monthly[4]
    assert (may.year, may.month, may.label) == (2024, 5, "May 2024")
    assert may.record_count == 2
    assert may.unbilled_amount == pytest.approx(250.0)


def test_stacked_chart_has_a_dataset_per_project(records):
    chart = financial_service.prepare_chart_data(records, "stacked")

    assert chart.labels == ["AL3 Inc.", "Beta Corp"]
    assert [dataset.data for dataset in chart.datasets] == [[350.0, 0.0], [0.0, 150.0]]


def test_quarterly_chart_compares_with_last_year(records):
    chart = financial_service.prepare_chart_data(records, "quarterlyline", today=date(2024, 6, 15))

    assert chart.labels == ["Mar", "Apr", "May"]
    assert [dataset.label for dataset in chart.datasets] == ["This Year", "Last Year"]
    assert chart.datasets[0].data == [0.0, 150.0, 350.0]
    assert chart.datasets[1].data == [0.0, 0.0, 0.0]


def test_yearly_chart_plots_total_and_billed(records):
    chart = financial_service.prepare_chart_data(records, "yearlyline", today=date(2024, 6, 15))

    assert len(chart.labels) == 12
    assert chart.datasets[0].data[4] == pytest.approx(350.0)
    assert chart.datasets[1].data[4] == pytest.approx(100.0)
    assert chart.datasets[1].data[3] == pytest.approx(150.0)


def test_unknown_chart_type_is_empty(records):
    assert financial_service.prepare_chart_data(records, "pie").datasets == []


def test_validate_financial_record_data():
    errors = financial_service.validate_financial_record_data({"hours": "-1", "rate": "x", "date": "2024-13-45"})

    assert errors[0] == "Missing required fields: customer_id, project_id"
    assert "Hours must be a positive number" in errors
    assert "Rate must be a positive number" in errors
    assert "Invalid date format" in errors


def test_filemaker_format_round_trips_fields():
    fields = financial_service.format_financial_record_for_filemaker(
        {"project_id": "p1", "hours": 1.5, "rate": 90, "date": "2024-05-10", "billed": True}
    )

    assert fields["DateStart"] == "05/10/2024"
    assert fields["month"] == "5"
    assert fields["f_billed"] == "1"


def test_sorting_and_filtering(records):
    by_amount = financial_service.sort_records_by_amount(records, "asc")
    assert [record.amount for record in by_amount] == [100.0, 150.0, 250.0]

    unbilled = financial_service.filter_records_by_billed_status(records, False)
    assert [record.id for record in unbilled] == ["uuid-1"]

    in_range = financial_service.filter_records_by_date_range(records, date(2024, 5, 1), date(2024, 5, 31))
    assert len(in_range) == 3


def test_display_format(records):
    shown = financial_service.format_financial_record_for_display(records[0])

    assert shown["amount"] == "$250.00"
    assert shown["hours"] == "2.50 hrs"
    assert shown["date"] == "May 10, 2024"
    assert shown["status"] == "Unbilled"

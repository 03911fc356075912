from __future__ import annotations

import json
from datetime import date
from decimal import Decimal

import httpx
import pytest

from billsync.core.errors import (
    ConfigurationError,
    InvoiceCreationError,
    ReconciliationAborted,
    UnsupportedCurrencyError,
)
from billsync.db import repo
from billsync.schemas.qbo import CustomerCreate, QBOCustomer, QBOInvoice
from billsync.schemas.records import SaleLine
from billsync.services.reconciliation import (
    CustomerChoiceRequired,
    ReconciliationWorkflow,
    build_invoice_payload,
    currency_refs,
    group_invoice_lines,
    invoice_references,
    product_code,
)
from tests.conftest import api_error, request_json


TODAY = date(2024, 5, 20)
RECORDS = "/filemaker/records/dapiRecords"
RECORD_IDS = {"fm-1": "11", "fm-2": "12"}
SCRIPT_PATH = "/filemaker/scripts/dapiRecords/bill obsi customer"


def qbo_customer(customer_id="58", name="AL3 Inc.", currency="CAD", email="ap@al3inc.com"):
    row = {"Id": customer_id, "DisplayName": name, "CompanyName": name}
    if currency:
        row["CurrencyRef"] = {"value": currency}
    if email:
        row["PrimaryEmailAddr"] = {"Address": email}
    return row


def sale_row(sale_id, product, quantity, unit_price, day, financial_id=None, inv_id=None):
    return {
        "id": sale_id,
        "customer_id": "c1",
        "organization_id": "org-1",
        "product_name": product,
        "quantity": quantity,
        "unit_price": unit_price,
        "total_price": round(quantity * unit_price, 2),
        "date": day,
        "inv_id": inv_id,
        "financial_id": financial_id,
        "customers": {"business_name": "AL3 Inc."},
    }


def find_by_uuid(request: httpx.Request) -> httpx.Response:
    uuid = request_json(request)["query"][0]["__ID"]
    if uuid not in RECORD_IDS:
        return httpx.Response(404, json={"messages": [{"code": "401", "message": "No records match the request"}]})
    row = {"recordId": RECORD_IDS[uuid], "fieldData": {"__ID": uuid, "_custID": "fm-cust-9"}}
    return httpx.Response(200, json={"response": {"data": [row]}})


@pytest.fixture
def ledger(app_state, supabase, backend):
    """Three unbilled sales for AL3 Inc. plus one already invoiced, and a happy QuickBooks."""
    supabase.tables["customer_sales"] = [
        sale_row("s1", "AL3:NAEMT", 6.97, 100, "2024-05-03", financial_id="fm-1"),
        sale_row("s2", "AL3:NAEMT", 0.34, 100, "2024-05-02", financial_id="fm-2"),
        sale_row("s3", "Development", 2, 90, "2024-05-01"),
        sale_row("s0", "AL3:NAEMT", 1, 100, "2024-04-01", inv_id="700:1"),
    ]
    app_state.sales = [SaleLine(id="s1"), SaleLine(id="s3"), SaleLine(id="s0", inv_id="700:1")]
    backend.add("GET", "/quickbooks/query", {"QueryResponse": {"Customer": [qbo_customer()]}})
    backend.add(
        "POST",
        "/quickbooks/invoices",
        {
            "Invoice": {
                "Id": "901",
                "DocNumber": "58240501",
                "Line": [
                    {"Id": "1", "Description": "NAEMT", "DetailType": "SalesItemLineDetail", "Amount": 731.0},
                    {"Id": "2", "Description": "Development", "DetailType": "SalesItemLineDetail", "Amount": 180.0},
                    {"DetailType": "SubTotalLineDetail", "Amount": 911.0},
                ],
            }
        },
    )
    backend.add("GET", "/quickbooks/customers/58", {"Customer": qbo_customer()})
    backend.add("POST", "/quickbooks/send-invoice/901", {"Invoice": {"Id": "901", "EmailStatus": "EmailSent"}})
    backend.add("POST", RECORDS, find_by_uuid)
    for record_id in RECORD_IDS.values():
        backend.add("PATCH", f"{RECORDS}/{record_id}", {"response": {"modId": "2"}})
    return app_state


def reconcile(with_session, state, *, customer_name=None, send_email=True, **hooks):
    async def go(session):
        workflow = ReconciliationWorkflow(state, session, today=TODAY, **hooks)
        return await workflow.run("c1", customer_name, send_email=send_email)

    return with_session(go)


def aborted(with_session, state, expected=ReconciliationAborted, **hooks):
    """Run a reconciliation that must stop; return the error and the stored run statuses."""

    async def go(session):
        workflow = ReconciliationWorkflow(state, session, today=TODAY, **hooks)
        with pytest.raises(expected) as info:
            await workflow.run("c1", send_email=False)
        runs = await repo.list_runs(session, customer_id="c1")
        return info.value, [run.status for run in runs]

    return with_session(go)


def invoice_posts(backend):
    return backend.calls("POST", "/quickbooks/invoices")


def test_product_code_uses_text_after_colon():
    assert product_code("AL3:NAEMT") == "NAEMT"
    assert product_code("Development") == "Development"
    assert product_code(None) == "Development"


@pytest.mark.parametrize(
    ("currency", "refs"),
    [("CAD", ("3", "4")), ("usd", ("7", "3")), ("EUR", ("8", "3")), (None, ("3", "4"))],
)
def test_currency_refs(currency, refs):
    assert currency_refs(currency) == refs


def test_group_lines_sums_decimals_and_keeps_first_price():
    sales = [
        SaleLine(id="a", product_name="AL3:NAEMT", quantity=6.97, unit_price=100, total_price=697),
        SaleLine(id="b", product_name="Other:NAEMT", quantity=0.34, unit_price=120, total_price=40.8),
        SaleLine(id="c", product_name=None, quantity=0, unit_price=90, total_price=0),
    ]

    groups = group_invoice_lines(sales)

    assert [group.product_code for group in groups] == ["NAEMT", "Development"]
    assert groups[0].quantity == Decimal("7.31")
    assert groups[0].unit_price == Decimal("100")
    assert groups[0].amount == Decimal("731.00")
    assert groups[1].quantity == Decimal("0")
    assert groups[1].preview().sale_ids == ["c"]


def test_missing_quantity_counts_as_zero():
    sales = [
        SaleLine.from_row({"id": "a", "product_name": "AL3:NAEMT", "quantity": None, "unit_price": 100, "total_price": None}),
        SaleLine.from_row({"id": "b", "product_name": "AL3:NAEMT", "quantity": 2, "unit_price": 100, "total_price": 200}),
    ]

    (group,) = group_invoice_lines(sales)

    assert group.quantity == Decimal("2")
    assert group.amount == Decimal("200.00")
    assert group.preview().sale_ids == ["a", "b"]


def test_invoice_payload_shape():
    sales = [
        SaleLine(id="a", product_name="AL3:NAEMT", quantity=6.97, unit_price=100),
        SaleLine(id="b", product_name="AL3:NAEMT", quantity=0.34, unit_price=100),
    ]
    customer = QBOCustomer.model_validate(qbo_customer(currency="USD"))

    payload = build_invoice_payload(customer, group_invoice_lines(sales), created=date(2024, 6, 26))

    assert payload["CustomerRef"] == {"name": "AL3 Inc.", "value": "58"}
    assert payload["DueDate"] == "2024-07-31"
    assert payload["DocNumber"] == "58240601"
    assert payload["GlobalTaxCalculation"] == "TaxExcluded"
    assert payload["DeliveryInfo"] == {"DeliveryType": "Email"}
    assert payload["Line"] == [
        {
            "Amount": 731.0,
            "Description": "NAEMT",
            "DetailType": "SalesItemLineDetail",
            "LineNum": 1,
            "SalesItemLineDetail": {
                "ItemRef": {"value": "7"},
                "Qty": 7.31,
                "TaxCodeRef": {"value": "3"},
                "UnitPrice": 100.0,
            },
        }
    ]


def test_unsupported_currency_stops_payload(backend):
    customer = QBOCustomer.model_validate(qbo_customer(currency="GBP"))

    with pytest.raises(UnsupportedCurrencyError):
        build_invoice_payload(customer, [], created=TODAY)
    assert backend.requests == []


def test_invoice_references_fall_back_to_bare_invoice_id():
    groups = group_invoice_lines(
        [
            SaleLine(id="a", product_name="AL3:NAEMT", quantity=1, unit_price=1),
            SaleLine(id="b", product_name="Support", quantity=1, unit_price=1),
        ]
    )
    invoice = QBOInvoice.model_validate(
        {"Id": "901", "Line": [{"Id": "4", "Description": "NAEMT", "DetailType": "SalesItemLineDetail"}]}
    )

    assert invoice_references(invoice, groups) == {"a": "901:4", "b": "901"}


def test_full_reconciliation(with_session, ledger, backend, supabase):
    result = reconcile(with_session, ledger)

    assert result.status == "completed"
    assert (result.sale_count, result.updated_count, result.failed_count) == (3, 3, 0)
    assert result.invoice_id == "901"
    assert result.doc_number == "58240501"
    assert result.email_status == "sent"
    assert result.message == "Invoice 58240501 created. Updated 3 of 3 records. Invoice email sent."
    assert [(line.product_code, line.quantity, line.amount) for line in result.lines] == [
        ("NAEMT", 7.31, 731.0),
        ("Development", 2.0, 180.0),
    ]

    sent = request_json(invoice_posts(backend)[0])
    assert sent["DueDate"] == "2024-06-30"
    assert sent["Line"][0]["SalesItemLineDetail"]["ItemRef"] == {"value": "3"}
    assert sent["Line"][0]["SalesItemLineDetail"]["TaxCodeRef"] == {"value": "4"}
    assert backend.requests[0].url.params["query"] == "select * from Customer where DisplayName = 'AL3 Inc.'"

    inv_ids = {row["id"]: row["inv_id"] for row in supabase.tables["customer_sales"]}
    assert inv_ids == {"s1": "901:1", "s2": "901:1", "s3": "901:2", "s0": "700:1"}
    patches = backend.calls("PATCH")
    assert sorted(request.url.path for request in patches) == [f"{RECORDS}/11", f"{RECORDS}/12"]
    assert all(request_json(request) == {"fieldData": {"f_billed": "1"}} for request in patches)
    assert backend.calls("POST", "/quickbooks/send-invoice/901")[0].url.params["sendTo"] == "ap@al3inc.com"

    assert [(sale.id, sale.inv_id) for sale in ledger.sales] == [("s1", "901:1"), ("s3", "901:2"), ("s0", "700:1")]


def test_run_is_recorded_in_ledger(with_session, ledger):
    async def go(session):
        result = await ReconciliationWorkflow(ledger, session, today=TODAY).run("c1", send_email=False)
        run = await repo.get_run(session, result.run_id)
        return run.status, run.currency, [(line.sale_id, line.filemaker_status) for line in run.lines]

    status, currency, lines = with_session(go)

    assert status == "completed"
    assert currency == "CAD"
    assert lines == [("s1", "done"), ("s2", "done"), ("s3", "skipped")]


def test_nothing_to_invoice(with_session, app_state, supabase, backend):
    supabase.tables["customer_sales"] = [sale_row("s0", "AL3:NAEMT", 1, 100, "2024-04-01", inv_id="700:1")]

    error, statuses = aborted(with_session, app_state)

    assert str(error) == "All records are already invoiced"
    assert error.reason == "nothing_to_invoice"
    assert statuses == ["aborted"]
    assert backend.requests == []


def test_unsupported_customer_currency_writes_nothing(with_session, ledger, backend, supabase):
    backend.routes.insert(0, ("GET", "/quickbooks/query", [{"QueryResponse": {"Customer": [qbo_customer(currency="GBP")]}}]))

    error, statuses = aborted(with_session, ledger, UnsupportedCurrencyError)

    assert error.reason == "unsupported_currency"
    assert statuses == ["aborted"]
    assert invoice_posts(backend) == []
    assert supabase.writes("customer_sales") == []


def test_customer_without_currency_defaults_to_cad(with_session, ledger, backend):
    backend.routes.insert(0, ("GET", "/quickbooks/query", [{"QueryResponse": {"Customer": [qbo_customer(currency=None)]}}]))

    reconcile(with_session, ledger, send_email=False)

    line = request_json(invoice_posts(backend)[0])["Line"][0]
    assert line["SalesItemLineDetail"]["ItemRef"] == {"value": "3"}


def test_invoice_fault_fails_run_without_write_back(with_session, ledger, backend, supabase):
    backend.routes.insert(0, ("POST", "/quickbooks/invoices", [{"Fault": {"Error": [{"Detail": "Duplicate Name"}]}}]))

    error, statuses = aborted(with_session, ledger, InvoiceCreationError)

    assert "Duplicate Name" in str(error)
    assert statuses == ["failed"]
    assert supabase.writes("customer_sales") == []
    assert backend.calls("PATCH") == []


def test_unexpected_error_closes_run_as_failed(with_session, ledger, backend, settings):
    settings.backend_secret_key = None

    error, statuses = aborted(with_session, ledger, ConfigurationError)

    assert str(error) == "BACKEND_SECRET_KEY is not configured"
    assert statuses == ["failed"]
    assert backend.requests == []


def test_several_matches_without_chooser_need_a_choice(with_session, ledger, backend):
    matches = [qbo_customer("58"), qbo_customer("59", currency="USD")]
    backend.routes.insert(0, ("GET", "/quickbooks/query", [{"QueryResponse": {"Customer": matches}}]))

    error, statuses = aborted(with_session, ledger, CustomerChoiceRequired)

    assert error.reason == "needs_customer_choice"
    assert [customer.id for customer in error.candidates] == ["58", "59"]
    assert statuses == ["aborted"]
    assert invoice_posts(backend) == []


def test_chooser_picks_one_based_index(with_session, ledger, backend):
    matches = [qbo_customer("58"), qbo_customer("59", currency="USD")]
    backend.routes.insert(0, ("GET", "/quickbooks/query", [{"QueryResponse": {"Customer": matches}}]))
    seen = []

    async def choose(name, candidates):
        seen.append((name, len(candidates)))
        return 2

    reconcile(with_session, ledger, send_email=False, choose_customer=choose)

    assert seen == [("AL3 Inc.", 2)]
    sent = request_json(invoice_posts(backend)[0])
    assert sent["CustomerRef"]["value"] == "59"
    assert sent["Line"][0]["SalesItemLineDetail"]["ItemRef"] == {"value": "7"}


def test_single_match_never_asks(with_session, ledger):
    async def choose(name, candidates):
        raise AssertionError("chooser should not be called")

    result = reconcile(with_session, ledger, send_email=False, choose_customer=choose)

    assert result.status == "completed"


@pytest.mark.parametrize("choice", [None, 0, 3])
def test_invalid_choice_cancels(with_session, ledger, backend, choice):
    matches = [qbo_customer("58"), qbo_customer("59")]
    backend.routes.insert(0, ("GET", "/quickbooks/query", [{"QueryResponse": {"Customer": matches}}]))

    async def choose(name, candidates):
        return choice

    error, _ = aborted(with_session, ledger, choose_customer=choose)

    assert str(error) == "Invalid selection. Invoice creation cancelled."
    assert invoice_posts(backend) == []


def test_missing_customer_without_hook(with_session, ledger, backend):
    backend.routes.insert(0, ("GET", "/quickbooks/query", [{"QueryResponse": {}}]))

    error, _ = aborted(with_session, ledger)

    assert error.reason == "customer_not_found"
    assert backend.calls("POST", "/quickbooks/customers") == []


def test_missing_customer_is_created_through_hook(with_session, ledger, backend):
    backend.routes.insert(0, ("GET", "/quickbooks/query", [{"QueryResponse": {}}]))
    backend.add("POST", "/quickbooks/customers", {"Customer": qbo_customer("77", currency="USD")})

    async def create(name):
        return CustomerCreate(display_name=name, email="ap@al3inc.com", currency="USD")

    result = reconcile(with_session, ledger, send_email=False, create_customer=create)

    assert result.qbo_customer_id == "77"
    created = request_json(backend.calls("POST", "/quickbooks/customers")[0])
    assert created["CurrencyRef"] == {"value": "USD"}
    assert created["PrimaryEmailAddr"] == {"Address": "ap@al3inc.com"}
    assert request_json(invoice_posts(backend)[0])["CustomerRef"]["value"] == "77"


def test_new_customer_with_unsupported_currency_is_not_created(with_session, ledger, backend):
    backend.routes.insert(0, ("GET", "/quickbooks/query", [{"QueryResponse": {}}]))

    async def create(name):
        return CustomerCreate(display_name=name, currency="GBP")

    aborted(with_session, ledger, UnsupportedCurrencyError, create_customer=create)

    assert backend.calls("POST", "/quickbooks/customers") == []
    assert invoice_posts(backend) == []


def test_failed_write_back_is_partial_and_resumable(with_session, ledger, backend, supabase):
    supabase.fail("customer_sales", "update", api_error("permission denied", code="403"))

    async def go(session):
        workflow = ReconciliationWorkflow(ledger, session, today=TODAY)
        first = await workflow.run("c1")
        patches_before = len(backend.calls("PATCH"))
        run = await repo.get_run(session, first.run_id)
        second = await workflow.resume(run)
        return first, second, patches_before

    first, second, patches_before = with_session(go)

    assert first.status == "partial"
    assert (first.updated_count, first.failed_count) == (2, 1)
    assert first.failed_sale_ids == ["s1"]
    assert first.message.startswith("Invoice 58240501 created. Updated 2 of 3 records.")

    assert second.status == "completed"
    assert second.failed_sale_ids == []
    assert second.email_status == "sent"
    assert second.message == "Invoice 58240501 created. Updated 3 of 3 records. Invoice email sent."
    assert len(backend.calls("PATCH")) == patches_before
    assert len(invoice_posts(backend)) == 1
    assert {row["id"]: row["inv_id"] for row in supabase.tables["customer_sales"]}["s1"] == "901:1"


def test_server_errors_on_write_back_are_retried(with_session, ledger, supabase):
    supabase.fail("customer_sales", "update", api_error("unavailable", code="503"))

    result = reconcile(with_session, ledger, send_email=False)

    assert result.status == "completed"
    assert len(supabase.writes("customer_sales")) == 4


def test_resume_needs_an_invoice(with_session, app_state, supabase):
    supabase.tables["customer_sales"] = []

    async def go(session):
        workflow = ReconciliationWorkflow(app_state, session, today=TODAY)
        with pytest.raises(ReconciliationAborted):
            await workflow.run("c1")
        run = (await repo.list_runs(session))[0]
        with pytest.raises(ReconciliationAborted) as info:
            await workflow.resume(run)
        return info.value.reason

    assert with_session(go) == "not_invoiced"


def test_script_billing_email_runs_filemaker_script(with_session, ledger, backend):
    backend.routes.insert(0, ("GET", "/quickbooks/customers/58", [{"Customer": qbo_customer(email="Billing@OBSI.test")}]))
    backend.add("GET", SCRIPT_PATH, {"response": {"scriptError": "0"}})

    result = reconcile(with_session, ledger)

    assert result.email_status == "script"
    assert result.message.endswith("Customer billing script started.")
    assert backend.calls("POST", "/quickbooks/send-invoice/901") == []
    param = json.loads(backend.calls("GET", SCRIPT_PATH)[0].url.params["script.param"])
    assert param == {"ids": ["fm-1", "fm-2"], "custID": "fm-cust-9", "invNo": "58240501"}


def test_customer_without_email_skips_sending(with_session, ledger, backend):
    backend.routes.insert(0, ("GET", "/quickbooks/customers/58", [{"Customer": qbo_customer(email=None)}]))

    result = reconcile(with_session, ledger)

    assert result.status == "completed"
    assert result.email_status == "skipped"
    assert result.message.endswith("Invoice email not sent: Customer has no email address.")


def test_email_failure_only_changes_message(with_session, ledger, backend):
    backend.routes.insert(0, ("POST", "/quickbooks/send-invoice/901", [(400, {"detail": "bad address"})]))

    result = reconcile(with_session, ledger)

    assert result.status == "completed"
    assert result.email_status == "failed"
    assert result.message.endswith("Invoice email not sent: bad address.")

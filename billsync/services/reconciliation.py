"""Billing reconciliation: unbilled sales -> QuickBooks invoice -> billed everywhere.

The run is recorded in the local ledger before any write-back so a partially
applied invoice can be resumed line by line instead of re-invoiced.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_exponential

from billsync.core.config import Settings
from billsync.core.errors import (
    InvoiceCreationError,
    ReconciliationAborted,
    UnsupportedCurrencyError,
)
from billsync.core.logging import log_reconciliation_step, set_request_context
from billsync.db import repo
from billsync.db.models import LineStatus, ReconciliationLine, ReconciliationRun, RunStatus
from billsync.schemas.billing import CustomerCandidate, InvoiceLinePreview, ReconciliationResult
from billsync.schemas.common import ApiResult
from billsync.schemas.qbo import CustomerCreate, QBOCustomer, QBOInvoice
from billsync.schemas.records import SaleLine
from billsync.services.sales_service import SALES_TABLE
from billsync.services.state import AppState
from billsync.utils.dates import business_today, invoice_doc_number, invoice_due_date
from billsync.utils.formatting import quantize_cents, to_decimal


logger = logging.getLogger("billsync.reconciliation")

DEFAULT_PRODUCT_NAME = "Development"
DEFAULT_CURRENCY = "CAD"

# currency -> (ItemRef, TaxCodeRef) in the QuickBooks company file
CURRENCY_REFS: dict[str, tuple[str, str]] = {
    "CAD": ("3", "4"),
    "USD": ("7", "3"),
    "EUR": ("8", "3"),
}

ChooseCustomer = Callable[[str, list[QBOCustomer]], Awaitable[Optional[int]]]
CreateCustomer = Callable[[str], Awaitable[Optional[CustomerCreate]]]


class CustomerChoiceRequired(ReconciliationAborted):
    """Several QuickBooks customers match and nobody is around to pick one."""

    def __init__(self, customer_name: str, candidates: list[QBOCustomer]):
        super().__init__(
            f"Multiple QuickBooks customers match '{customer_name}'",
            reason="needs_customer_choice",
            details=candidates,
        )
        self.customer_name = customer_name
        self.candidates = candidates


def product_code(product_name: Optional[str]) -> str:
    """`"AL3:NAEMT"` -> `"NAEMT"`; names without a colon are used whole."""
    name = product_name or DEFAULT_PRODUCT_NAME
    if ":" in name:
        return name.split(":", 1)[1].strip()
    return name.strip()


def currency_refs(currency: Optional[str]) -> tuple[str, str]:
    code = (currency or DEFAULT_CURRENCY).strip().upper()
    if code not in CURRENCY_REFS:
        raise UnsupportedCurrencyError(code)
    return CURRENCY_REFS[code]


@dataclass
class InvoiceLineGroup:
    product_code: str
    unit_price: Decimal
    quantity: Decimal = Decimal("0")
    total_price: Decimal = Decimal("0")
    sales: list[SaleLine] = field(default_factory=list)

    @property
    def amount(self) -> Decimal:
        return quantize_cents(self.quantity * self.unit_price)

    def preview(self) -> InvoiceLinePreview:
        return InvoiceLinePreview(
            product_code=self.product_code,
            quantity=float(self.quantity),
            unit_price=float(self.unit_price),
            amount=float(self.amount),
            sale_ids=[str(sale.id) for sale in self.sales if sale.id],
        )


def group_invoice_lines(sales: Iterable[SaleLine]) -> list[InvoiceLineGroup]:
    """One group per product code, in first-seen order.

    The unit price of a group is the first sale's; quantities and totals are
    summed as decimals.
    """
    groups: dict[str, InvoiceLineGroup] = {}
    for sale in sales:
        code = product_code(sale.product_name)
        group = groups.get(code)
        if group is None:
            group = InvoiceLineGroup(product_code=code, unit_price=to_decimal(sale.unit_price))
            groups[code] = group
        group.quantity += to_decimal(sale.quantity)
        group.total_price += to_decimal(sale.total_price)
        group.sales.append(sale)
    return list(groups.values())


def build_invoice_payload(
    customer: QBOCustomer,
    groups: list[InvoiceLineGroup],
    *,
    created: date,
) -> dict[str, Any]:
    item_ref, tax_code = currency_refs(customer.currency)
    lines = []
    for position, group in enumerate(groups, start=1):
        lines.append(
            {
                "Amount": float(group.amount),
                "Description": group.product_code,
                "DetailType": "SalesItemLineDetail",
                "LineNum": position,
                "SalesItemLineDetail": {
                    "ItemRef": {"value": item_ref},
                    "Qty": float(group.quantity),
                    "TaxCodeRef": {"value": tax_code},
                    "UnitPrice": float(group.unit_price),
                },
            }
        )
    return {
        "CustomerRef": {"name": customer.display_name, "value": customer.id},
        "DeliveryInfo": {"DeliveryType": "Email"},
        "DueDate": invoice_due_date(created).isoformat(),
        "GlobalTaxCalculation": "TaxExcluded",
        "Line": lines,
        "DocNumber": invoice_doc_number(customer.id, created),
    }


def invoice_references(invoice: QBOInvoice, groups: list[InvoiceLineGroup]) -> dict[str, str]:
    """Map each sale id to the `inv_id` written back to Supabase.

    `"<invoiceId>:<lineId>"` when the created invoice has a line whose
    description is the group's product code, the bare invoice id otherwise.
    """
    line_ids = {
        line.description: line.id
        for line in invoice.sales_lines
        if line.description is not None and line.id
    }
    references: dict[str, str] = {}
    for group in groups:
        line_id = line_ids.get(group.product_code)
        inv_id = f"{invoice.id}:{line_id}" if line_id else str(invoice.id)
        for sale in group.sales:
            if sale.id:
                references[str(sale.id)] = inv_id
    return references


def candidates_for(customers: list[QBOCustomer]) -> list[CustomerCandidate]:
    return [
        CustomerCandidate(
            index=position,
            id=customer.id,
            display_name=customer.display_name,
            company_name=customer.company_name,
            currency=customer.currency,
            email=customer.email,
        )
        for position, customer in enumerate(customers, start=1)
    ]


def _retryable_failure(result: ApiResult) -> bool:
    if result.success:
        return False
    status_code = result.status_code
    return status_code is None or status_code == 429 or status_code >= 500


@dataclass
class _LineOutcome:
    line: ReconciliationLine
    supabase_status: Optional[str] = None
    filemaker_status: Optional[str] = None
    errors: list[str] = field(default_factory=list)


class ReconciliationWorkflow:
    def __init__(
        self,
        state: AppState,
        session: AsyncSession,
        *,
        choose_customer: Optional[ChooseCustomer] = None,
        create_customer: Optional[CreateCustomer] = None,
        today: Optional[date] = None,
    ):
        self.state = state
        self.session = session
        self.choose_customer = choose_customer
        self.create_customer = create_customer
        self.today = today
        self.current_run: Optional[ReconciliationRun] = None

    @property
    def settings(self) -> Settings:
        return self.state.settings

    async def run(
        self,
        customer_id: str,
        customer_name: Optional[str] = None,
        *,
        send_email: bool = True,
    ) -> ReconciliationResult:
        """Invoice every unbilled sale of `customer_id`.

        Raises `ReconciliationAborted` (including `CustomerChoiceRequired` and
        `UnsupportedCurrencyError`) when the run stops before an invoice exists,
        and `InvoiceCreationError` when QuickBooks rejects the invoice.
        Any other error raised before the invoice exists closes the run as
        failed and propagates.
        """
        set_request_context(customer_id=customer_id)
        run = await repo.create_run(
            self.session,
            customer_id=customer_id,
            customer_name=customer_name or "",
        )
        self.current_run = run
        await self.session.commit()
        set_request_context(run_id=str(run.id))
        log_reconciliation_step("started", customer_name=customer_name)

        try:
            sales = await self._unbilled_sales(customer_id)
            customer_name = customer_name or sales[0].customer_name
            if not customer_name:
                raise ReconciliationAborted(
                    "Customer name is missing from the sales records",
                    reason="no_customer_name",
                )
            run.customer_name = customer_name

            customer = await self._resolve_customer(customer_name)
            groups = group_invoice_lines(sales)
            payload = build_invoice_payload(customer, groups, created=self._today())
            log_reconciliation_step("invoice_built", payload=payload, line_count=len(groups))

            created = await self.state.quickbooks.create_invoice(payload)
            if not created.success:
                raise InvoiceCreationError(created.error or "QuickBooks rejected the invoice")
        except ReconciliationAborted as exc:
            await self._close(run, RunStatus.ABORTED, str(exc))
            log_reconciliation_step("aborted", reason=exc.reason, error=str(exc))
            raise
        except InvoiceCreationError as exc:
            await self._close(run, RunStatus.FAILED, str(exc))
            log_reconciliation_step("invoice_failed", error=str(exc))
            raise
        except Exception as exc:
            await self._close(run, RunStatus.FAILED, str(exc) or type(exc).__name__)
            log_reconciliation_step("failed", error=str(exc), error_type=type(exc).__name__)
            raise

        invoice: QBOInvoice = created.data
        references = invoice_references(invoice, groups)
        by_sale = {str(sale.id): sale for sale in sales if sale.id}
        await repo.record_invoice(
            self.session,
            run,
            qbo_customer_id=customer.id,
            currency=(customer.currency or DEFAULT_CURRENCY).upper(),
            invoice_id=str(invoice.id),
            doc_number=invoice.doc_number or payload["DocNumber"],
            lines=[
                {
                    "sale_id": sale_id,
                    "financial_id": by_sale[sale_id].financial_id,
                    "product_code": product_code(by_sale[sale_id].product_name),
                    "inv_id": inv_id,
                }
                for sale_id, inv_id in references.items()
            ],
        )
        await self.session.commit()
        log_reconciliation_step("invoice_created", invoice_id=invoice.id, doc_number=run.doc_number)

        await self._write_back(run.lines)

        email_status: Optional[str] = None
        email_error: Optional[str] = None
        if send_email:
            email_status, email_error = await self._dispatch_email(customer, run, sales)

        result = await self._finish(run, email_status=email_status, email_error=email_error)
        result.lines = [group.preview() for group in groups]
        return result

    async def resume(self, run: ReconciliationRun) -> ReconciliationResult:
        """Retry the write-backs of `run` that are still pending or failed."""
        set_request_context(customer_id=run.customer_id, run_id=str(run.id))
        if not run.invoice_id:
            raise ReconciliationAborted("Run has no invoice to write back", reason="not_invoiced")
        open_lines = [line for line in run.lines if line.needs_write_back]
        log_reconciliation_step("resume", open_lines=len(open_lines))
        await self._write_back(open_lines)
        return await self._finish(run, email_status=run.email_status)

    async def _unbilled_sales(self, customer_id: str) -> list[SaleLine]:
        result = await self.state.sales_service.fetch_unbilled_sales_by_customer(customer_id)
        if not result.success:
            raise ReconciliationAborted(
                result.error or "Failed to fetch sales records",
                reason="sales_unavailable",
            )
        sales = [sale for sale in result.data if sale.inv_id is None]
        if not sales:
            raise ReconciliationAborted("All records are already invoiced", reason="nothing_to_invoice")
        return sales

    async def _resolve_customer(self, customer_name: str) -> QBOCustomer:
        found = await self.state.quickbooks.search_customers(customer_name)
        if not found.success:
            raise ReconciliationAborted(
                found.error or "QuickBooks customer search failed",
                reason="customer_search_failed",
            )
        matches: list[QBOCustomer] = found.data
        log_reconciliation_step("customer_search", match_count=len(matches))

        if len(matches) == 1:
            return matches[0]
        if not matches:
            return await self._create_missing_customer(customer_name)

        if self.choose_customer is None:
            raise CustomerChoiceRequired(customer_name, matches)
        index = await self.choose_customer(customer_name, matches)
        if index is None or not 1 <= index <= len(matches):
            raise ReconciliationAborted(
                "Invalid selection. Invoice creation cancelled.",
                reason="invalid_customer_choice",
            )
        return matches[index - 1]

    async def _create_missing_customer(self, customer_name: str) -> QBOCustomer:
        details = await self.create_customer(customer_name) if self.create_customer else None
        if details is None:
            raise ReconciliationAborted(
                f"No QuickBooks customer named '{customer_name}'",
                reason="customer_not_found",
            )
        # an unsupported currency must not leave a stray customer behind
        currency_refs(details.currency)
        created = await self.state.quickbooks.create_customer(details.to_qbo_payload())
        if not created.success:
            raise ReconciliationAborted(
                created.error or "Failed to create QuickBooks customer",
                reason="customer_create_failed",
            )
        log_reconciliation_step("customer_created", qbo_customer_id=created.data.id)
        return created.data

    async def _write_back(self, lines: list[ReconciliationLine]) -> None:
        """Run every line's writes concurrently, then record the outcomes in order."""
        outcomes = await asyncio.gather(
            *(self._write_back_line(line) for line in lines),
            return_exceptions=True,
        )
        references: dict[str, str] = {}
        for line, outcome in zip(lines, outcomes):
            if isinstance(outcome, Exception):
                logger.warning(
                    "write_back_crashed",
                    extra={"sale_id": line.sale_id, "error": str(outcome)},
                )
                outcome = _LineOutcome(line, errors=[str(outcome)])
                if line.supabase_status != LineStatus.DONE:
                    outcome.supabase_status = LineStatus.FAILED
                if line.filemaker_status == LineStatus.PENDING:
                    outcome.filemaker_status = LineStatus.FAILED
            await repo.update_line(
                self.session,
                line,
                supabase_status=outcome.supabase_status,
                filemaker_status=outcome.filemaker_status,
                error="; ".join(outcome.errors) or None,
            )
            if line.supabase_status == LineStatus.DONE and line.inv_id:
                references[line.sale_id] = line.inv_id
        await self.session.commit()
        self.state.apply_invoice_references(references)

    async def _write_back_line(self, line: ReconciliationLine) -> _LineOutcome:
        outcome = _LineOutcome(line)
        if line.supabase_status != LineStatus.DONE:
            written = await self._retry(lambda: self._write_invoice_reference(line))
            outcome.supabase_status = LineStatus.DONE if written.success else LineStatus.FAILED
            if not written.success:
                outcome.errors.append(f"supabase: {written.error}")

        if line.financial_id and line.filemaker_status != LineStatus.DONE:
            billed = await self.state.filemaker.update_record_by_uuid(line.financial_id, {"f_billed": "1"})
            outcome.filemaker_status = LineStatus.DONE if billed.success else LineStatus.FAILED
            if not billed.success:
                outcome.errors.append(f"filemaker: {billed.error}")
        return outcome

    async def _write_invoice_reference(self, line: ReconciliationLine) -> ApiResult:
        supabase = self.state.supabase
        values = {"inv_id": line.inv_id}
        if supabase.has_admin:
            return await supabase.admin_update(SALES_TABLE, values, filters={"id": line.sale_id})
        return await supabase.update(SALES_TABLE, values, filters={"id": line.sale_id})

    async def _retry(self, call: Callable[[], Awaitable[ApiResult]]) -> ApiResult:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(self.settings.retry_max_attempts, 1)),
            wait=wait_exponential(multiplier=1, max=self.settings.retry_max_wait_seconds),
            retry=retry_if_result(_retryable_failure),
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
        ):
            with attempt:
                result = await call()
            if not attempt.retry_state.outcome.failed:
                attempt.retry_state.set_result(result)
        return result

    async def _dispatch_email(
        self,
        customer: QBOCustomer,
        run: ReconciliationRun,
        sales: list[SaleLine],
    ) -> tuple[str, Optional[str]]:
        lookup = await self.state.quickbooks.get_customer(customer.id)
        email = lookup.data.email if lookup.success else customer.email
        if not email:
            log_reconciliation_step("email_skipped")
            return "skipped", "Customer has no email address"

        if email.strip().lower() in self.settings.script_billing_emails:
            return await self._run_billing_script(run, sales)

        sent = await self.state.quickbooks.send_invoice(str(run.invoice_id), email)
        log_reconciliation_step("email_sent" if sent.success else "email_failed", error=sent.error)
        if not sent.success:
            return "failed", sent.error
        return "sent", None

    async def _run_billing_script(
        self,
        run: ReconciliationRun,
        sales: list[SaleLine],
    ) -> tuple[str, Optional[str]]:
        filemaker = self.state.filemaker
        ids = [sale.financial_id for sale in sales if sale.financial_id]
        if not ids:
            return "failed", "No FileMaker records are linked to this invoice"
        record = await filemaker.get_record_by_uuid(ids[0])
        if not record.success:
            return "failed", record.error
        field_data = record.data.get("fieldData") or {}
        executed = await filemaker.execute_script(
            filemaker.records_layout,
            self.settings.script_billing_script,
            {"ids": ids, "custID": field_data.get("_custID"), "invNo": run.doc_number},
        )
        log_reconciliation_step("billing_script", success=executed.success, error=executed.error)
        if not executed.success:
            return "failed", executed.error
        return "script", None

    async def _finish(
        self,
        run: ReconciliationRun,
        *,
        email_status: Optional[str],
        email_error: Optional[str] = None,
    ) -> ReconciliationResult:
        lines = list(run.lines)
        failed = [line.sale_id for line in lines if line.needs_write_back]
        updated = sum(1 for line in lines if line.supabase_status == LineStatus.DONE)
        status_value = RunStatus.PARTIAL if failed else RunStatus.COMPLETED

        message = f"Invoice {run.doc_number or run.invoice_id} created. Updated {updated} of {len(lines)} records."
        if email_status == "sent":
            message += " Invoice email sent."
        elif email_status == "script":
            message += " Customer billing script started."
        elif email_status in ("failed", "skipped"):
            message += f" Invoice email not sent: {email_error}." if email_error else " Invoice email not sent."

        await self._close(run, status_value, message, email_status=email_status)
        log_reconciliation_step(
            "finished",
            status=status_value,
            updated_count=updated,
            failed_count=len(failed),
            email_status=email_status,
        )
        return ReconciliationResult(
            status=status_value,
            run_id=run.id,
            qbo_customer_id=run.qbo_customer_id,
            invoice_id=run.invoice_id,
            doc_number=run.doc_number,
            sale_count=len(lines),
            updated_count=updated,
            failed_count=len(failed),
            failed_sale_ids=failed,
            email_status=email_status,
            message=message,
        )

    async def _close(
        self,
        run: ReconciliationRun,
        status_value: str,
        message: str,
        *,
        email_status: Optional[str] = None,
    ) -> None:
        await repo.finish_run(
            self.session,
            run,
            status_value=status_value,
            message=message,
            email_status=email_status,
        )
        await self.session.commit()

    def _today(self) -> date:
        return self.today or business_today(self.settings)

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from billsync.core.security import HmacSignatureAuth
from billsync.schemas.common import ApiResult
from billsync.schemas.qbo import QBOCustomer, QBOInvoice
from billsync.services.vendor import VendorClient, path_segment


DEFAULT_INVOICE_LOOKBACK_DAYS = 25


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _unwrap(payload: Any, entity: str) -> Any:
    """Return the entity object from `{Entity: ...}`, `{entity: ...}` or a bare body."""
    if not isinstance(payload, dict):
        return None
    for key in (entity, entity.lower()):
        if isinstance(payload.get(key), dict):
            return payload[key]
    if "Id" in payload:
        return payload
    return None


def _query_rows(payload: Any, entity: str) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return [row for row in payload if isinstance(row, dict)]
    if not isinstance(payload, dict):
        return []
    container = payload.get("QueryResponse", payload)
    if not isinstance(container, dict):
        return []
    for key in (entity, entity.lower(), f"{entity.lower()}s"):
        rows = container.get(key)
        if isinstance(rows, list):
            return [row for row in rows if isinstance(row, dict)]
    return []


class QuickBooksClient(VendorClient):
    """QuickBooks Online through the HMAC-signed backend proxy.

    Every response is normalized here into `QBOCustomer` / `QBOInvoice`
    models so callers never look at the raw proxy shapes.
    """

    vendor = "qbo"

    @property
    def base_url(self) -> str:
        return self.settings.quickbooks_base_url

    def build_auth(self) -> httpx.Auth:
        return HmacSignatureAuth(
            self.settings.backend_secret_key or "",
            organization_id=self.settings.organization_id,
        )

    async def request(
        self,
        operation: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> ApiResult:
        result = await self.send(operation, method, path, **kwargs)
        if result.success and isinstance(result.data, dict) and result.data.get("Fault"):
            # the proxy can forward a QBO fault with a 200 status
            message = self.error_message(result.data, result.status_code)
            self.logger.warning(
                "qbo_fault_response",
                extra={"operation": operation, "error_message": message},
            )
            return ApiResult.fail(message, result.status_code, data=result.data)
        return result

    async def query(self, statement: str) -> ApiResult:
        return await self.request("query", "GET", "/query", params={"query": statement.strip()})

    async def search_customers(self, name: str) -> ApiResult:
        statement = f"select * from Customer where DisplayName = '{self._escape(name)}'"
        result = await self.query(statement)
        if not result.success:
            return result
        return ApiResult.ok(self._customers(result.data), result.status_code)

    async def list_customers(self) -> ApiResult:
        result = await self.request("list_customers", "GET", "/customers")
        if not result.success:
            return result
        return ApiResult.ok(self._customers(result.data), result.status_code)

    async def get_customer(self, customer_id: str) -> ApiResult:
        result = await self.request(
            "get_customer",
            "GET",
            f"/customers/{path_segment(customer_id)}",
        )
        if not result.success:
            return result
        customer = _unwrap(result.data, "Customer")
        if customer is None:
            return ApiResult.fail(f"QuickBooks customer {customer_id} not found", 404)
        return ApiResult.ok(QBOCustomer.model_validate(customer), result.status_code)

    async def create_customer(self, payload: dict[str, Any]) -> ApiResult:
        result = await self.request(
            "create_customer",
            "POST",
            "/customers",
            json_body=payload,
            retry=False,
        )
        if not result.success:
            return result
        customer = _unwrap(result.data, "Customer")
        if customer is None or not customer.get("Id"):
            return ApiResult.fail("QuickBooks did not return the created customer", result.status_code)
        return ApiResult.ok(QBOCustomer.model_validate(customer), result.status_code)

    async def create_invoice(self, payload: dict[str, Any]) -> ApiResult:
        result = await self.request(
            "create_invoice",
            "POST",
            "/invoices",
            json_body=payload,
            retry=False,
        )
        if not result.success:
            return result
        invoice = _unwrap(result.data, "Invoice")
        if invoice is None or not invoice.get("Id"):
            return ApiResult.fail(
                "QuickBooks did not return an invoice id",
                result.status_code,
                data=result.data,
            )
        return ApiResult.ok(QBOInvoice.model_validate(invoice), result.status_code)

    async def get_invoice(self, invoice_id: str) -> ApiResult:
        result = await self.request(
            "get_invoice",
            "GET",
            f"/invoices/{path_segment(invoice_id)}",
        )
        if not result.success:
            return result
        invoice = _unwrap(result.data, "Invoice")
        if invoice is None:
            return ApiResult.fail(f"QuickBooks invoice {invoice_id} not found", 404)
        return ApiResult.ok(QBOInvoice.model_validate(invoice), result.status_code)

    async def query_invoices_since(
        self,
        days: int = DEFAULT_INVOICE_LOOKBACK_DAYS,
        customer_id: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> ApiResult:
        now = now or _now()
        start = (now - timedelta(days=days)).strftime("%Y-%m-%dT00:00:00Z")
        end = now.strftime("%Y-%m-%dT%H:%M:%SZ")
        statement = (
            "Select * From Invoice WHERE "
            f"MetaData.CreateTime >= '{start}' AND MetaData.CreateTime < '{end}'"
        )
        if customer_id:
            statement = f"{statement} AND CustomerRef IN ('{self._escape(customer_id)}')"
        result = await self.query(statement)
        if not result.success:
            return result
        invoices = [QBOInvoice.model_validate(row) for row in _query_rows(result.data, "Invoice")]
        return ApiResult.ok(invoices, result.status_code)

    async def send_invoice(self, invoice_id: str, send_to: str) -> ApiResult:
        return await self.request(
            "send_invoice",
            "POST",
            f"/send-invoice/{path_segment(invoice_id)}",
            params={"sendTo": send_to},
            retry=False,
        )

    async def get_company_info(self) -> ApiResult:
        return await self.request("get_company_info", "GET", "/company-info")

    @staticmethod
    def _customers(payload: Any) -> list[QBOCustomer]:
        return [QBOCustomer.model_validate(row) for row in _query_rows(payload, "Customer")]

    @staticmethod
    def _escape(value: str) -> str:
        return value.replace("'", "''")

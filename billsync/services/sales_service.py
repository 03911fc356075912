from __future__ import annotations

import json
import logging
import re
import uuid
from typing import Any, Iterable, Optional, Union

from billsync.core.errors import ValidationError
from billsync.schemas.common import ApiResult
from billsync.schemas.records import (
    SaleCreationError,
    SaleLine,
    SalesBatchResult,
    SalesStats,
    TimeEntry,
)
from billsync.services.filemaker_client import FileMakerClient
from billsync.services.financial_service import process_financial_data
from billsync.services.supabase_client import SupabaseService
from billsync.utils.formatting import to_float


logger = logging.getLogger("billsync.services.sales")

SALES_TABLE = "customer_sales"
SALE_COLUMNS = (
    "id, date, customer_id, product_id, product_name, quantity, unit_price, total_price, "
    "inv_id, organization_id, created_at, updated_at, financial_id, customers(business_name)"
)
UPDATABLE_FIELDS = (
    "customer_id",
    "product_id",
    "product_name",
    "quantity",
    "unit_price",
    "total_price",
    "date",
    "inv_id",
    "financial_id",
    "organization_id",
)
TARGETED_FIELDS = ("product_name", "quantity", "unit_price", "total_price", "date", "inv_id")

_PRODUCT_CODE_CHARS = re.compile(r"[^A-Z0-9]")


def parse_stringified_json(value: Any) -> Any:
    """Decode strings that look like JSON objects or arrays; leave anything else alone."""
    if not isinstance(value, str):
        return value
    trimmed = value.strip()
    if (trimmed.startswith("{") and trimmed.endswith("}")) or (
        trimmed.startswith("[") and trimmed.endswith("]")
    ):
        try:
            return json.loads(trimmed)
        except ValueError:
            return value
    return value


def process_json_data(data: Any) -> Any:
    if isinstance(data, str):
        return parse_stringified_json(data)
    if isinstance(data, list):
        return [process_json_data(item) for item in data if item is not None]
    if isinstance(data, dict):
        return {key: process_json_data(value) for key, value in data.items()}
    return data


def build_product_service_name(customer_name: Optional[str], project_name: Optional[str]) -> str:
    """`"AL3 Inc."` + `"NAEMT Review"` gives `"AL3I:NAEMT"`."""
    customer_part = _PRODUCT_CODE_CHARS.sub("", customer_name or "")
    project_part = (project_name or "").split(" ")[0] if project_name else ""
    return f"{customer_part}:{project_part}"


def _is_non_negative(value: Any) -> bool:
    if value is None or value == "":
        return False
    try:
        return float(value) >= 0
    except (TypeError, ValueError):
        return False


def validate_sale_data(data: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    if not any(data.get(key) for key in ("id", "financial_id", "product_id", "project_id")):
        errors.append("Either Product ID or Project ID is required")
    if not data.get("customer_id"):
        errors.append("Customer ID is required")
    if not _is_non_negative(data.get("unit_price")):
        errors.append("Unit price must be a non-negative number")
    if not _is_non_negative(data.get("quantity")):
        errors.append("Quantity must be a non-negative number (0 or greater)")
    if not data.get("date"):
        errors.append("Sale date is required")
    if not data.get("organization_id"):
        errors.append("Organization ID is required")
    return errors


def _sale_amount(sale: Union[SaleLine, dict[str, Any]]) -> tuple[float, str]:
    if isinstance(sale, SaleLine):
        extra = sale.model_extra or {}
        return sale.total_price, extra.get("type") or "sales"
    amount = sale.get("total_price")
    if amount is None:
        amount = sale.get("amount")
    return to_float(amount), sale.get("type") or "sales"


def calculate_sales_stats(sales: Iterable[Union[SaleLine, dict[str, Any]]]) -> SalesStats:
    rows = [process_json_data(sale) if isinstance(sale, dict) else sale for sale in sales]
    if not rows:
        return SalesStats()
    amounts: list[float] = []
    by_type: dict[str, float] = {"sales": 0.0, "sellable": 0.0}
    for sale in rows:
        amount, sale_type = _sale_amount(sale)
        amounts.append(amount)
        by_type[sale_type] = by_type.get(sale_type, 0.0) + amount
    total_amount = sum(amounts)
    return SalesStats(
        total=len(rows),
        total_amount=round(total_amount, 2),
        average_amount=round(total_amount / len(amounts), 2),
        min_amount=round(min(amounts), 2),
        max_amount=round(max(amounts), 2),
        by_type={"sales": round(by_type["sales"], 2), "sellable": round(by_type["sellable"], 2)},
    )


class SalesService:
    """`customer_sales` access plus the unbilled-hours batch job."""

    def __init__(self, supabase: SupabaseService, filemaker: Optional[FileMakerClient] = None):
        self.supabase = supabase
        self.filemaker = filemaker

    async def fetch_sales_by_organization(self, organization_id: Optional[str]) -> ApiResult:
        if not organization_id:
            return ApiResult.fail("Organization ID is required", 400, data=[])
        return await self._fetch([("organization_id", "eq", organization_id)])

    async def fetch_unbilled_sales_by_organization(self, organization_id: Optional[str]) -> ApiResult:
        if not organization_id:
            return ApiResult.fail("Organization ID is required", 400, data=[])
        return await self._fetch([("organization_id", "eq", organization_id), ("inv_id", "is", None)])

    async def fetch_sales_by_customer(self, customer_id: Optional[str]) -> ApiResult:
        if not customer_id:
            return ApiResult.fail("Customer ID is required", 400, data=[])
        return await self._fetch([("customer_id", "eq", customer_id)])

    async def fetch_unbilled_sales_by_customer(self, customer_id: Optional[str]) -> ApiResult:
        if not customer_id:
            return ApiResult.fail("Customer ID is required", 400, data=[])
        return await self._fetch([("customer_id", "eq", customer_id), ("inv_id", "is", None)])

    async def create_sale(self, sale_data: dict[str, Any]) -> ApiResult:
        errors = validate_sale_data(sale_data)
        if errors:
            raise ValidationError(errors)
        result = await self.supabase.insert(SALES_TABLE, {"id": str(uuid.uuid4()), **sale_data})
        return self._first_row(result)

    async def update_sale(
        self,
        sale_id: str,
        sale_data: dict[str, Any],
        patch: Optional[dict[str, Any]] = None,
    ) -> ApiResult:
        """Validate the full record, then write only the allowed columns of `patch` (or the record)."""
        if not sale_id:
            raise ValidationError("Sale ID is required")
        errors = validate_sale_data(sale_data)
        if errors:
            raise ValidationError(errors)
        source = patch if patch is not None else sale_data
        values = {key: value for key, value in source.items() if key in UPDATABLE_FIELDS}
        result = await self.supabase.update(SALES_TABLE, values, filters={"id": sale_id})
        return self._first_row(result)

    async def update_sale_targeted(self, sale_id: str, patch: dict[str, Any]) -> ApiResult:
        if not sale_id:
            raise ValidationError("Sale ID is required")
        values = {key: value for key, value in (patch or {}).items() if key in TARGETED_FIELDS}
        if not values:
            raise ValidationError("No valid fields to update")
        result = await self.supabase.update(SALES_TABLE, values, filters={"id": sale_id})
        return self._first_row(result)

    async def delete_sale(self, sale_id: str) -> ApiResult:
        if not sale_id:
            raise ValidationError("Sale ID is required")
        return await self.supabase.remove(SALES_TABLE, filters={"id": sale_id})

    async def create_sales_from_unbilled_financials(self, organization_id: str) -> ApiResult:
        if self.filemaker is None:
            raise ValueError("a FileMaker client is required to read unbilled hours")
        if not organization_id:
            return ApiResult.fail("Organization ID is required", 400)

        fetched = await self.filemaker.fetch_unpaid_records()
        if not fetched.success:
            return ApiResult.fail(
                fetched.error or "Failed to fetch unbilled financial records",
                fetched.status_code,
            )
        records = process_financial_data(fetched.data)
        batch = SalesBatchResult()
        if not records:
            batch.message = "No unbilled financial records found"
            return ApiResult.ok(batch)

        for record in records:
            if record.billed:
                continue
            try:
                sale = await self._create_sale_for_entry(record, organization_id)
            except RuntimeError as exc:
                logger.warning(
                    "sale_from_financial_failed",
                    extra={"financial_id": record.id, "error": str(exc)},
                )
                batch.errors.append(SaleCreationError(financial_id=record.id, error=str(exc)))
                continue
            if sale is not None:
                batch.created.append(sale)

        batch.message = f"Created {len(batch.created)} sales records from unbilled financials"
        logger.info(
            "sales_from_unbilled_financials",
            extra={
                "organization_id": organization_id,
                "created": len(batch.created),
                "errors": len(batch.errors),
            },
        )
        return ApiResult.ok(batch)

    async def _create_sale_for_entry(self, record: TimeEntry, organization_id: str) -> Optional[SaleLine]:
        existing = await self.supabase.query(SALES_TABLE, filters={"financial_id": record.id})
        if not existing.success:
            raise RuntimeError(existing.error or "Failed to check existing sales")
        if existing.data:
            return None

        customer_id = await self._ensure_customer(record.customer_name, organization_id)
        inserted = await self.supabase.insert(
            SALES_TABLE,
            {
                "financial_id": record.id,
                "customer_id": customer_id,
                "organization_id": organization_id,
                "product_name": build_product_service_name(record.customer_name, record.project_name),
                "quantity": record.hours,
                "unit_price": record.rate,
                "total_price": record.amount,
                "date": record.date,
            },
        )
        if not inserted.success or not inserted.data:
            raise RuntimeError(inserted.error or "Failed to create sale record")
        return SaleLine.from_row(process_json_data(inserted.data[0]))

    async def _ensure_customer(self, business_name: str, organization_id: str) -> str:
        found = await self.supabase.query("customers", filters={"business_name": business_name})
        if found.success and found.data:
            customer_id = str(found.data[0]["id"])
            links = await self.supabase.query("customer_organization", filters={"customer_id": customer_id})
            linked = links.success and any(
                str(link.get("organization_id")) == organization_id for link in links.data or []
            )
            if not linked:
                await self._link_customer(customer_id, organization_id)
            return customer_id

        created = await self.supabase.insert(
            "customers",
            {"id": str(uuid.uuid4()), "business_name": business_name},
        )
        if not created.success or not created.data:
            raise RuntimeError(f"Failed to create customer: {created.error}")
        customer_id = str(created.data[0]["id"])
        await self._link_customer(customer_id, organization_id)
        return customer_id

    async def _link_customer(self, customer_id: str, organization_id: str) -> None:
        await self.supabase.insert(
            "customer_organization",
            {"id": str(uuid.uuid4()), "customer_id": customer_id, "organization_id": organization_id},
        )

    async def _fetch(self, filters: list) -> ApiResult:
        result = await self.supabase.query(
            SALES_TABLE,
            columns=SALE_COLUMNS,
            filters=filters,
            order="date",
            ascending=False,
        )
        if not result.success:
            return ApiResult.fail(result.error or "Failed to fetch sales", result.status_code, data=[])
        rows = process_json_data(result.data or [])
        return ApiResult.ok([SaleLine.from_row(row) for row in rows], result.status_code)

    @staticmethod
    def _first_row(result: ApiResult) -> ApiResult:
        if not result.success:
            return result
        rows = process_json_data(result.data or [])
        if isinstance(rows, list) and rows:
            return ApiResult.ok(SaleLine.from_row(rows[0]), result.status_code)
        return ApiResult.ok(None, result.status_code)

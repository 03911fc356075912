from __future__ import annotations

from typing import Any, Iterable, Optional

from billsync.core.errors import ValidationError
from billsync.schemas.common import ApiResult
from billsync.schemas.records import Product, ProductPriceGroups, ProductStats
from billsync.services.sales_service import process_json_data
from billsync.services.supabase_client import SupabaseService


PRODUCTS_TABLE = "products"
LOW_PRICE_LIMIT = 50
MEDIUM_PRICE_LIMIT = 200


def validate_product_data(data: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    if not str(data.get("name") or "").strip():
        errors.append("Product name is required")
    price = data.get("price")
    try:
        valid_price = price not in (None, "") and float(price) > 0
    except (TypeError, ValueError):
        valid_price = False
    if not valid_price:
        errors.append("Product price must be a positive number")
    return errors


def group_products_by_price_range(products: Iterable[Product]) -> ProductPriceGroups:
    groups = ProductPriceGroups()
    for product in products:
        if product.price < LOW_PRICE_LIMIT:
            groups.low.append(product)
        elif product.price < MEDIUM_PRICE_LIMIT:
            groups.medium.append(product)
        else:
            groups.high.append(product)
    return groups


def calculate_product_stats(products: Iterable[Product]) -> ProductStats:
    prices = [product.price for product in products]
    if not prices:
        return ProductStats()
    return ProductStats(
        total=len(prices),
        average_price=round(sum(prices) / len(prices), 2),
        min_price=round(min(prices), 2),
        max_price=round(max(prices), 2),
    )


class ProductService:
    def __init__(self, supabase: SupabaseService):
        self.supabase = supabase

    async def fetch_products_by_organization(self, organization_id: Optional[str]) -> ApiResult:
        if not organization_id:
            return ApiResult.fail("Organization ID is required", 400, data=[])
        result = await self.supabase.query(
            PRODUCTS_TABLE,
            filters={"organization_id": organization_id},
            order="name",
        )
        if not result.success:
            return ApiResult.fail(result.error or "Failed to fetch products", result.status_code, data=[])
        rows = process_json_data(result.data or [])
        return ApiResult.ok([Product.model_validate(row) for row in rows], result.status_code)

    async def create_product(self, product_data: dict[str, Any]) -> ApiResult:
        errors = validate_product_data(product_data)
        if errors:
            raise ValidationError(errors)
        return self._first_row(await self.supabase.insert(PRODUCTS_TABLE, product_data))

    async def update_product(self, product_id: str, product_data: dict[str, Any]) -> ApiResult:
        if not product_id:
            raise ValidationError("Product ID is required")
        errors = validate_product_data(product_data)
        if errors:
            raise ValidationError(errors)
        result = await self.supabase.update(PRODUCTS_TABLE, product_data, filters={"id": product_id})
        return self._first_row(result)

    async def delete_product(self, product_id: str) -> ApiResult:
        if not product_id:
            raise ValidationError("Product ID is required")
        return await self.supabase.remove(PRODUCTS_TABLE, filters={"id": product_id})

    @staticmethod
    def _first_row(result: ApiResult) -> ApiResult:
        if not result.success:
            return result
        rows = process_json_data(result.data or [])
        if isinstance(rows, list) and rows:
            return ApiResult.ok(Product.model_validate(rows[0]), result.status_code)
        return ApiResult.ok(None, result.status_code)

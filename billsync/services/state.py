from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx
from supabase import AsyncClient

from billsync.core.config import Settings, get_settings
from billsync.core.errors import VendorApiError
from billsync.schemas.records import Product, SaleLine
from billsync.services.filemaker_client import FileMakerClient
from billsync.services.product_service import ProductService
from billsync.services.qbo_client import QuickBooksClient
from billsync.services.sales_service import SalesService
from billsync.services.supabase_client import SupabaseService


logger = logging.getLogger("billsync.state")


@dataclass
class AppState:
    """Vendor clients plus the organization's cached sales and products."""

    settings: Settings
    filemaker: FileMakerClient
    quickbooks: QuickBooksClient
    supabase: SupabaseService
    sales: list[SaleLine] = field(default_factory=list)
    products: list[Product] = field(default_factory=list)

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        supabase_client: Optional[AsyncClient] = None,
        supabase_admin_client: Optional[AsyncClient] = None,
    ) -> "AppState":
        settings = settings or get_settings()
        return cls(
            settings=settings,
            filemaker=FileMakerClient(settings, transport=transport),
            quickbooks=QuickBooksClient(settings, transport=transport),
            supabase=SupabaseService(
                settings,
                client=supabase_client,
                admin_client=supabase_admin_client,
            ),
        )

    @property
    def sales_service(self) -> SalesService:
        return SalesService(self.supabase, self.filemaker)

    @property
    def product_service(self) -> ProductService:
        return ProductService(self.supabase)

    async def load_sales(self, organization_id: Optional[str]) -> list[SaleLine]:
        result = await self.sales_service.fetch_sales_by_organization(organization_id)
        if not result.success:
            raise VendorApiError(result.error or "Failed to fetch sales", status_code=result.status_code)
        self.sales = list(result.data)
        logger.info(
            "sales_loaded",
            extra={"organization_id": organization_id, "sale_count": len(self.sales)},
        )
        return self.sales

    async def load_products(self, organization_id: Optional[str]) -> list[Product]:
        result = await self.product_service.fetch_products_by_organization(organization_id)
        if not result.success:
            raise VendorApiError(result.error or "Failed to fetch products", status_code=result.status_code)
        self.products = list(result.data)
        return self.products

    def apply_invoice_references(self, references: dict[str, str]) -> None:
        """Reflect written `inv_id` values in the cached sales."""
        self.sales = [
            sale.model_copy(update={"inv_id": references[sale.id]}) if sale.id in references else sale
            for sale in self.sales
        ]


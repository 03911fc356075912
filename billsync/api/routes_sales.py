from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from billsync.api.deps import get_app_state, require_success
from billsync.core.errors import ValidationError
from billsync.schemas.records import (
    ProductCatalog,
    SalesActivityResponse,
    SalesBatchResult,
    SalesStats,
    SalesTotals,
)
from billsync.services.product_service import calculate_product_stats, group_products_by_price_range
from billsync.services.sales_service import calculate_sales_stats
from billsync.services.state import AppState
from billsync.services.views import SalesActivityView, normalize_sales_timeframe
from billsync.utils.validators import require_organization


router = APIRouter(tags=["sales"])
logger = logging.getLogger("billsync.api.sales")


@router.get("/sales", response_model=SalesActivityResponse)
async def list_sales(
    organization_id: Optional[str] = Query(default=None),
    timeframe: Optional[str] = Query(default=None),
    state: AppState = Depends(get_app_state),
) -> SalesActivityResponse:
    org_id = require_organization(organization_id, state.settings.organization_id)
    if timeframe is not None:
        try:
            timeframe = normalize_sales_timeframe(timeframe)
        except ValidationError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    sales = await state.load_sales(org_id)
    if timeframe is None:
        totals = SalesTotals(
            total_amount=sum(sale.total_price for sale in sales),
            total_quantity=sum(sale.quantity for sale in sales),
        )
        return SalesActivityResponse(records=sales, totals=totals)

    view = SalesActivityView(state, timeframe)
    return SalesActivityResponse(
        timeframe=view.timeframe,
        records=view.records,
        totals=view.totals,
        by_customer=view.records_by_customer,
        chart=view.chart_data,
    )


@router.get("/sales/stats", response_model=SalesStats)
async def get_sales_stats(
    organization_id: Optional[str] = Query(default=None),
    state: AppState = Depends(get_app_state),
) -> SalesStats:
    org_id = require_organization(organization_id, state.settings.organization_id)
    return calculate_sales_stats(await state.load_sales(org_id))


@router.post("/sales/from-unbilled", response_model=SalesBatchResult, status_code=status.HTTP_201_CREATED)
async def create_sales_from_unbilled(
    organization_id: Optional[str] = Query(default=None),
    state: AppState = Depends(get_app_state),
) -> SalesBatchResult:
    org_id = require_organization(organization_id, state.settings.organization_id)
    result = require_success(
        await state.sales_service.create_sales_from_unbilled_financials(org_id),
        "Failed to create sales from unbilled financials",
    )
    batch: SalesBatchResult = result.data
    logger.info(
        "sales_batch_created",
        extra={"organization_id": org_id, "created": len(batch.created), "errors": len(batch.errors)},
    )
    return batch


@router.get("/products", response_model=ProductCatalog)
async def list_products(
    organization_id: Optional[str] = Query(default=None),
    state: AppState = Depends(get_app_state),
) -> ProductCatalog:
    org_id = require_organization(organization_id, state.settings.organization_id)
    products = await state.load_products(org_id)
    return ProductCatalog(
        products=products,
        stats=calculate_product_stats(products),
        price_groups=group_products_by_price_range(products),
    )

"""QuickBooks / FileMaker diagnostics behind the `QBO_TEST_PANEL_ENABLED` flag."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from billsync.api.deps import get_app_state, require_success
from billsync.core.config import Settings, get_settings
from billsync.schemas.qbo import QBOCustomer, QBOInvoice
from billsync.services.qbo_client import DEFAULT_INVOICE_LOOKBACK_DAYS
from billsync.services.state import AppState


async def require_test_panel(settings: Settings = Depends(get_settings)) -> None:
    if not settings.qbo_test_panel_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")


router = APIRouter(
    prefix="/diagnostics",
    tags=["diagnostics"],
    dependencies=[Depends(require_test_panel)],
)


@router.get("/qbo/customers", response_model=list[QBOCustomer])
async def search_qbo_customers(
    name: Optional[str] = Query(default=None),
    state: AppState = Depends(get_app_state),
) -> list[QBOCustomer]:
    qbo = state.quickbooks
    if name:
        result = await qbo.search_customers(name)
    else:
        result = await qbo.list_customers()
    return require_success(result, "QuickBooks customer lookup failed").data


@router.get("/qbo/invoices", response_model=list[QBOInvoice])
async def recent_qbo_invoices(
    days: int = Query(default=DEFAULT_INVOICE_LOOKBACK_DAYS, ge=1, le=366),
    customer_id: Optional[str] = Query(default=None),
    state: AppState = Depends(get_app_state),
) -> list[QBOInvoice]:
    result = await state.quickbooks.query_invoices_since(days, customer_id)
    return require_success(result, "QuickBooks invoice query failed").data


@router.get("/qbo/company-info")
async def qbo_company_info(state: AppState = Depends(get_app_state)) -> Any:
    result = await state.quickbooks.get_company_info()
    return require_success(result, "QuickBooks company info failed").data


@router.post("/filemaker/health")
async def filemaker_health(state: AppState = Depends(get_app_state)) -> dict[str, Any]:
    result = await state.filemaker.health_check()
    return {
        "status": "ok" if result.success else "error",
        "status_code": result.status_code,
        "error": result.error,
    }

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from billsync.api.deps import get_app_state
from billsync.schemas.records import ChartData, CustomerSummary, FinancialRecordsResponse
from billsync.services import financial_service
from billsync.services.financial_service import CHART_TYPES
from billsync.services.state import AppState
from billsync.services.views import FinancialRecordsView
from billsync.utils.dates import business_today
from billsync.utils.validators import resolve_sort, resolve_timeframe


router = APIRouter(prefix="/financial", tags=["financial"])


@router.get("/records", response_model=FinancialRecordsResponse)
async def list_financial_records(
    timeframe: Optional[str] = Query(default=None),
    customer_id: Optional[str] = Query(default=None),
    project_id: Optional[str] = Query(default=None),
    sort: Optional[str] = Query(default=None),
    direction: Optional[str] = Query(default=None),
    state: AppState = Depends(get_app_state),
) -> FinancialRecordsResponse:
    view = FinancialRecordsView(state.filemaker, resolve_timeframe(timeframe), customer_id, project_id)
    view.sort_field, view.sort_direction = resolve_sort(sort, direction)
    await view.load()
    return FinancialRecordsResponse(
        timeframe=view.timeframe,
        records=view.records,
        totals=view.totals,
        monthly_totals=view.monthly_totals,
    )


@router.get("/chart", response_model=ChartData)
async def get_financial_chart(
    timeframe: Optional[str] = Query(default=None),
    chart_type: Optional[str] = Query(default=None),
    customer_id: Optional[str] = Query(default=None),
    state: AppState = Depends(get_app_state),
) -> ChartData:
    if chart_type is not None and chart_type not in CHART_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"chart_type must be one of: {', '.join(CHART_TYPES)}",
        )
    view = FinancialRecordsView(state.filemaker, resolve_timeframe(timeframe), customer_id)
    await view.load()
    if chart_type is None:
        return view.chart_data
    return financial_service.prepare_chart_data(
        view.records,
        chart_type,
        today=business_today(state.settings),
    )


@router.get("/customers", response_model=list[CustomerSummary])
async def list_financial_customers(
    timeframe: Optional[str] = Query(default=None),
    state: AppState = Depends(get_app_state),
) -> list[CustomerSummary]:
    view = FinancialRecordsView(state.filemaker, resolve_timeframe(timeframe))
    await view.load()
    summaries = [
        CustomerSummary(
            customer_id=group.customer_id,
            customer_name=group.customer_name,
            total_amount=round(group.total_amount, 2),
            total_hours=round(group.total_hours, 2),
            record_count=len(group.records),
            project_count=len(group.projects),
        )
        for group in view.records_by_customer.values()
    ]
    summaries.sort(key=lambda summary: summary.total_amount, reverse=True)
    return summaries

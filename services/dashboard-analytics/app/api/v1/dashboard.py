"""
Dashboard read endpoints
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from libs.shared_auth.jwt_fastapi import Principal

from ...core.dependencies import get_current_principal, get_dashboard_service
from ...schemas import (
    ChartDataResponse,
    DashboardMetricsResponse,
    FinancialSummaryResponse,
    InventoryOverviewResponse,
    SalesOverviewResponse,
)
from ...services.dashboard_service import DashboardService, UnknownChartError

router = APIRouter()


@router.get("/metrics", response_model=DashboardMetricsResponse)
async def get_dashboard_metrics(
    refresh: bool = Query(False),
    _: Principal = Depends(get_current_principal),
    service: DashboardService = Depends(get_dashboard_service),
) -> DashboardMetricsResponse:
    return await service.get_dashboard_metrics(refresh=refresh)


@router.get("/sales", response_model=SalesOverviewResponse)
async def get_sales_overview(
    _: Principal = Depends(get_current_principal),
    service: DashboardService = Depends(get_dashboard_service),
) -> SalesOverviewResponse:
    return await service.get_sales_overview()


@router.get("/inventory", response_model=InventoryOverviewResponse)
async def get_inventory_overview(
    _: Principal = Depends(get_current_principal),
    service: DashboardService = Depends(get_dashboard_service),
) -> InventoryOverviewResponse:
    return await service.get_inventory_overview()


@router.get("/financial", response_model=FinancialSummaryResponse)
async def get_financial_summary(
    _: Principal = Depends(get_current_principal),
    service: DashboardService = Depends(get_dashboard_service),
) -> FinancialSummaryResponse:
    return await service.get_financial_summary()


@router.get("/charts", response_model=List[ChartDataResponse])
async def list_charts(
    _: Principal = Depends(get_current_principal),
    service: DashboardService = Depends(get_dashboard_service),
) -> List[ChartDataResponse]:
    return await service.list_charts()


@router.get("/charts/{chart_id}", response_model=ChartDataResponse)
async def get_chart(
    chart_id: str,
    _: Principal = Depends(get_current_principal),
    service: DashboardService = Depends(get_dashboard_service),
) -> ChartDataResponse:
    try:
        return await service.get_chart(chart_id)
    except UnknownChartError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Chart {chart_id} not found")

"""
Database management endpoints: overview of downstream storage, ad-hoc queries
and capacity alerts
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from libs.shared_auth.jwt_fastapi import Principal

from ...core.dependencies import get_database_service, require_admin, require_manager
from ...schemas import (
    DatabaseAlertResponse,
    DatabaseOverviewResponse,
    DatabaseSearchResult,
    DatabaseUpdateEvent,
    ExecuteQueryRequest,
    QueryExecutionHistoryResponse,
    QueryExecutionResponse,
    SearchDatabaseRequest,
    ServiceDatabaseResponse,
)
from ...services.database_service import DatabaseService, QueryRejectedError, UnknownServiceError

router = APIRouter()


@router.get("/overview", response_model=DatabaseOverviewResponse)
async def get_overview(
    force_refresh: bool = Query(False, alias="forceRefresh"),
    _: Principal = Depends(require_admin),
    service: DatabaseService = Depends(get_database_service),
) -> DatabaseOverviewResponse:
    return await service.get_overview(force_refresh=force_refresh)


@router.get("/services/{service_name}", response_model=ServiceDatabaseResponse)
async def get_service_database(
    service_name: str,
    force_refresh: bool = Query(False, alias="forceRefresh"),
    _: Principal = Depends(require_manager),
    service: DatabaseService = Depends(get_database_service),
) -> ServiceDatabaseResponse:
    try:
        return await service.get_service(service_name, force_refresh=force_refresh)
    except UnknownServiceError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Service {service_name} not found")


@router.post("/search", response_model=List[DatabaseSearchResult])
async def search_databases(
    request: SearchDatabaseRequest,
    _: Principal = Depends(require_manager),
    service: DatabaseService = Depends(get_database_service),
) -> List[DatabaseSearchResult]:
    return await service.search(request)


@router.post("/query", response_model=QueryExecutionResponse)
async def execute_query(
    request: ExecuteQueryRequest,
    principal: Principal = Depends(require_admin),
    service: DatabaseService = Depends(get_database_service),
) -> QueryExecutionResponse:
    try:
        return await service.execute_query(request, principal)
    except QueryRejectedError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/query/history", response_model=List[QueryExecutionHistoryResponse])
async def get_query_history(
    limit: int = Query(50, ge=1, le=500),
    mine: bool = Query(False),
    principal: Principal = Depends(require_admin),
    service: DatabaseService = Depends(get_database_service),
) -> List[QueryExecutionHistoryResponse]:
    return await service.query_history(user_id=principal.user_id if mine else None, limit=limit)


@router.get("/alerts", response_model=List[DatabaseAlertResponse])
async def list_database_alerts(
    include_resolved: bool = Query(False, alias="includeResolved"),
    _: Principal = Depends(require_manager),
    service: DatabaseService = Depends(get_database_service),
) -> List[DatabaseAlertResponse]:
    return await service.list_alerts(include_resolved=include_resolved)


@router.put("/alerts/{alert_id}/resolve", status_code=status.HTTP_204_NO_CONTENT)
async def resolve_database_alert(
    alert_id: str,
    _: Principal = Depends(require_admin),
    service: DatabaseService = Depends(get_database_service),
) -> None:
    if not await service.resolve_alert(alert_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Open alert not found")


@router.post("/refresh", response_model=DatabaseOverviewResponse)
async def refresh_overview(
    _: Principal = Depends(require_admin),
    service: DatabaseService = Depends(get_database_service),
) -> DatabaseOverviewResponse:
    return await service.refresh()


@router.delete("/cache", status_code=status.HTTP_204_NO_CONTENT)
async def clear_cache(
    _: Principal = Depends(require_admin),
    service: DatabaseService = Depends(get_database_service),
) -> None:
    await service.clear_cache()


@router.post("/events", status_code=status.HTTP_202_ACCEPTED)
async def report_database_update(
    event: DatabaseUpdateEvent,
    _: Principal = Depends(require_manager),
    service: DatabaseService = Depends(get_database_service),
) -> dict:
    await service.record_database_update(event)
    return {"message": "Database update accepted"}

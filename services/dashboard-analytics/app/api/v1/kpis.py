from typing import List

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from libs.shared_auth.jwt_fastapi import Principal

from ...core.dependencies import get_current_principal, get_kpi_service, require_manager
from ...database import get_db
from ...schemas import KPICreate, KPIResponse, KPIUpdate
from ...services.kpi_service import DuplicateKPIError, KPIService

router = APIRouter()


@router.get("", response_model=List[KPIResponse])
async def list_kpis(
    _: Principal = Depends(get_current_principal),
    service: KPIService = Depends(get_kpi_service),
    db: AsyncSession = Depends(get_db),
) -> List[KPIResponse]:
    return await service.list_all(db)


@router.get("/{kpi_id}", response_model=KPIResponse)
async def get_kpi(
    kpi_id: str,
    _: Principal = Depends(get_current_principal),
    service: KPIService = Depends(get_kpi_service),
    db: AsyncSession = Depends(get_db),
) -> KPIResponse:
    kpi = await service.get(db, kpi_id)
    if kpi is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="KPI not found")
    return kpi


@router.post("", response_model=KPIResponse, status_code=status.HTTP_201_CREATED)
async def create_kpi(
    request: KPICreate,
    _: Principal = Depends(require_manager),
    service: KPIService = Depends(get_kpi_service),
    db: AsyncSession = Depends(get_db),
) -> KPIResponse:
    try:
        return await service.create(db, request)
    except DuplicateKPIError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"KPI '{request.name}' already exists")


@router.put("/{kpi_id}", response_model=KPIResponse)
async def update_kpi(
    kpi_id: str,
    request: KPIUpdate,
    _: Principal = Depends(require_manager),
    service: KPIService = Depends(get_kpi_service),
    db: AsyncSession = Depends(get_db),
) -> KPIResponse:
    kpi = await service.update(db, kpi_id, request)
    if kpi is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="KPI not found")
    return kpi


@router.delete("/{kpi_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_kpi(
    kpi_id: str,
    _: Principal = Depends(require_manager),
    service: KPIService = Depends(get_kpi_service),
    db: AsyncSession = Depends(get_db),
) -> Response:
    if not await service.delete(db, kpi_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="KPI not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)

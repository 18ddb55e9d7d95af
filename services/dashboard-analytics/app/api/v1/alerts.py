from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from libs.shared_auth.jwt_fastapi import Principal

from ... import crud
from ...core.dependencies import get_current_principal
from ...database import get_db
from ...schemas import AlertPage, AlertResponse

router = APIRouter()


@router.get("", response_model=AlertPage)
async def list_alerts(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    _: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> AlertPage:
    alerts, total = await crud.list_alerts(db, page=page, page_size=page_size)
    return AlertPage(
        items=[AlertResponse.model_validate(alert) for alert in alerts],
        page=page,
        page_size=page_size,
        total=total,
    )


@router.get("/unread", response_model=List[AlertResponse])
async def list_unread_alerts(
    _: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> List[AlertResponse]:
    return [AlertResponse.model_validate(alert) for alert in await crud.list_unread_alerts(db)]


@router.get("/{alert_id}", response_model=AlertResponse)
async def get_alert(
    alert_id: str,
    _: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> AlertResponse:
    alert = await crud.get_alert(db, alert_id)
    if alert is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return AlertResponse.model_validate(alert)


@router.put("/{alert_id}/read", status_code=status.HTTP_204_NO_CONTENT)
async def mark_alert_read(
    alert_id: str,
    _: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> None:
    if not await crud.mark_alert_read(db, alert_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")

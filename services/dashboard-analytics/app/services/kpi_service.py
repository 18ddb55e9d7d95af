from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import crud
from ..core.logging import get_logger
from ..notifications import NotificationHub, NotificationKind
from ..schemas import KPICreate, KPIResponse, KPIUpdate

logger = get_logger("kpi_service")


class DuplicateKPIError(ValueError):
    pass


class KPIService:
    """Manual KPI maintenance.

    New KPIs and value changes are pushed as ``kpiUpdated`` like ingested
    ones. Deletions are only logged; clients drop the KPI on their next list.
    """

    def __init__(self, hub: NotificationHub):
        self._hub = hub

    async def create(self, db: AsyncSession, request: KPICreate) -> KPIResponse:
        if await crud.get_kpi_by_name(db, request.name) is not None:
            raise DuplicateKPIError(request.name)
        try:
            kpi = await crud.create_kpi(
                db,
                name=request.name,
                description=request.description,
                target_value=request.target_value,
                metric_type=request.metric_type,
                unit=request.unit,
            )
        except IntegrityError as exc:
            await db.rollback()
            raise DuplicateKPIError(request.name) from exc
        logger.info(f"Created KPI {kpi.name} ({kpi.id})")
        response = KPIResponse.model_validate(kpi)
        self._hub.publish_model(NotificationKind.KPI_UPDATED, response)
        return response

    async def get(self, db: AsyncSession, kpi_id: str) -> Optional[KPIResponse]:
        kpi = await crud.get_kpi(db, kpi_id)
        return KPIResponse.model_validate(kpi) if kpi else None

    async def list_all(self, db: AsyncSession) -> List[KPIResponse]:
        return [KPIResponse.model_validate(kpi) for kpi in await crud.list_kpis(db)]

    async def update(self, db: AsyncSession, kpi_id: str, request: KPIUpdate) -> Optional[KPIResponse]:
        kpi = await crud.update_kpi_value(db, kpi_id, request.current_value, request.target_value)
        if kpi is None:
            return None
        response = KPIResponse.model_validate(kpi)
        self._hub.publish_model(NotificationKind.KPI_UPDATED, response)
        return response

    async def delete(self, db: AsyncSession, kpi_id: str) -> bool:
        deleted = await crud.delete_kpi(db, kpi_id)
        if deleted:
            logger.info(f"Deleted KPI {kpi_id}")
        return deleted

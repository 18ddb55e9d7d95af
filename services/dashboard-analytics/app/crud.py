import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import case, func, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import models
from .database import dialect_insert
from .models import KPIStatus, MetricType, utcnow

METRIC_LABELS = {
    MetricType.USER_COUNT: "Total Users",
    MetricType.PRODUCT_COUNT: "Total Products",
    MetricType.ORDER_COUNT: "Total Orders",
    MetricType.REVENUE: "Total Revenue",
    MetricType.EXPENSES: "Total Expenses",
    MetricType.NET_INCOME: "Net Income",
    MetricType.INVENTORY_VALUE: "Inventory Value",
    MetricType.LOW_STOCK_PRODUCTS: "Low Stock Products",
    MetricType.ORDERS_TODAY: "Orders Today",
    MetricType.CUSTOMER_COUNT: "Total Customers",
}


# --- Idempotency ledger ------------------------------------------------------

async def claim_event(db: AsyncSession, event_type: str, event_key: str, occurred_at: datetime.datetime) -> bool:
    """Record the event in the ledger. False means it was applied before."""
    table = models.ProcessedEvent.__table__
    stmt = (
        dialect_insert(db, table)
        .values(event_type=event_type, event_key=event_key, occurred_at=occurred_at, processed_at=utcnow())
        .on_conflict_do_nothing(index_elements=[table.c.event_type, table.c.event_key])
        .returning(table.c.event_key)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none() is not None


async def count_events_since(db: AsyncSession, event_type: str, since: datetime.datetime) -> int:
    stmt = select(func.count()).select_from(models.ProcessedEvent).where(
        models.ProcessedEvent.event_type == event_type,
        models.ProcessedEvent.occurred_at >= since,
    )
    return int((await db.execute(stmt)).scalar_one())


# --- Counters ----------------------------------------------------------------

async def increment_counter(db: AsyncSession, name: str, delta: float) -> float:
    """Atomically add ``delta`` to a counter and return the new total."""
    table = models.AggregateCounter.__table__
    insert_stmt = dialect_insert(db, table).values(name=name, value=delta)
    stmt = insert_stmt.on_conflict_do_update(
        index_elements=[table.c.name],
        set_={"value": table.c.value + insert_stmt.excluded.value},
    ).returning(table.c.value)
    return float((await db.execute(stmt)).scalar_one())


async def get_counter(db: AsyncSession, name: str) -> float:
    value = await db.scalar(select(models.AggregateCounter.value).where(models.AggregateCounter.name == name))
    return float(value or 0.0)


# --- Metrics -----------------------------------------------------------------

async def record_metric(db: AsyncSession,
                        metric_type: MetricType,
                        value: float,
                        details: Optional[Dict[str, Any]] = None) -> models.Metric:
    metric = models.Metric(
        type=metric_type.value,
        label=METRIC_LABELS[metric_type],
        value=value,
        details=details or {},
        timestamp=utcnow(),
    )
    db.add(metric)
    await db.flush()
    return metric


async def latest_metrics(db: AsyncSession) -> Dict[MetricType, models.Metric]:
    """Most recent snapshot per metric type."""
    latest = (
        select(models.Metric.type, func.max(models.Metric.timestamp).label("ts"))
        .group_by(models.Metric.type)
        .subquery()
    )
    stmt = select(models.Metric).join(
        latest,
        (models.Metric.type == latest.c.type) & (models.Metric.timestamp == latest.c.ts),
    )
    metrics: Dict[MetricType, models.Metric] = {}
    for metric in (await db.scalars(stmt)).all():
        metrics[MetricType(metric.type)] = metric
    return metrics


async def metric_history(db: AsyncSession,
                         metric_type: MetricType,
                         since: Optional[datetime.datetime] = None,
                         limit: int = 500) -> List[models.Metric]:
    stmt = select(models.Metric).where(models.Metric.type == metric_type.value)
    if since is not None:
        stmt = stmt.where(models.Metric.timestamp >= since)
    stmt = stmt.order_by(models.Metric.timestamp.asc()).limit(limit)
    return list((await db.scalars(stmt)).all())


# --- KPIs --------------------------------------------------------------------

def _kpi_status_expression(value: float) -> Any:
    progress = case(
        (models.KPI.target_value > 0, literal(value) / models.KPI.target_value * 100),
        else_=literal(0.0),
    )
    return case(
        (progress >= models.ON_TRACK_PROGRESS, KPIStatus.ON_TRACK.value),
        (progress >= models.NEEDS_ATTENTION_PROGRESS, KPIStatus.NEEDS_ATTENTION.value),
        else_=KPIStatus.CRITICAL.value,
    )


async def apply_metric_to_kpis(db: AsyncSession, metric_type: MetricType, value: float) -> List[models.KPI]:
    """Move every KPI linked to ``metric_type`` to ``value`` in one statement.

    The previous value is taken from the row itself, so concurrent writers on
    the same KPI serialize on the row instead of overwriting each other.
    """
    stmt = (
        update(models.KPI)
        .where(models.KPI.metric_type == metric_type.value)
        .values(
            previous_value=models.KPI.current_value,
            current_value=value,
            status=_kpi_status_expression(value),
            last_updated=utcnow(),
        )
        .returning(models.KPI)
        .execution_options(synchronize_session="fetch")
    )
    return list((await db.scalars(stmt)).all())


async def seed_kpis(db: AsyncSession, definitions: Iterable[Dict[str, Any]]) -> int:
    """Insert the given KPIs unless a KPI with the same name exists."""
    table = models.KPI.__table__
    created = 0
    for definition in definitions:
        stmt = (
            dialect_insert(db, table)
            .values(
                id=models.new_id(),
                status=KPIStatus.ON_TRACK.value,
                current_value=0.0,
                previous_value=0.0,
                last_updated=utcnow(),
                **definition,
            )
            .on_conflict_do_nothing(index_elements=[table.c.name])
            .returning(table.c.id)
        )
        if (await db.execute(stmt)).scalar_one_or_none() is not None:
            created += 1
    await db.commit()
    return created


async def create_kpi(db: AsyncSession,
                     name: str,
                     description: str,
                     target_value: float,
                     metric_type: Optional[MetricType] = None,
                     unit: str = "") -> models.KPI:
    kpi = models.KPI(
        name=name,
        description=description,
        target_value=target_value,
        metric_type=metric_type.value if metric_type else None,
        unit=unit,
        current_value=0.0,
        previous_value=0.0,
        status=KPIStatus.ON_TRACK.value,
        last_updated=utcnow(),
    )
    db.add(kpi)
    await db.commit()
    await db.refresh(kpi)
    return kpi


async def get_kpi(db: AsyncSession, kpi_id: str) -> Optional[models.KPI]:
    return await db.get(models.KPI, kpi_id)


async def get_kpi_by_name(db: AsyncSession, name: str) -> Optional[models.KPI]:
    return await db.scalar(select(models.KPI).where(models.KPI.name == name))


async def list_kpis(db: AsyncSession) -> List[models.KPI]:
    return list((await db.scalars(select(models.KPI).order_by(models.KPI.name))).all())


async def update_kpi_value(db: AsyncSession,
                           kpi_id: str,
                           current_value: float,
                           target_value: Optional[float] = None) -> Optional[models.KPI]:
    kpi = await db.get(models.KPI, kpi_id, with_for_update=True)
    if kpi is None:
        return None
    kpi.previous_value = kpi.current_value
    kpi.current_value = current_value
    if target_value is not None:
        kpi.target_value = target_value
    kpi.status = models.derive_kpi_status(kpi.current_value, kpi.target_value).value
    kpi.last_updated = utcnow()
    await db.commit()
    await db.refresh(kpi)
    return kpi


async def delete_kpi(db: AsyncSession, kpi_id: str) -> bool:
    kpi = await db.get(models.KPI, kpi_id)
    if kpi is None:
        return False
    await db.delete(kpi)
    await db.commit()
    return True


# --- Alerts ------------------------------------------------------------------

async def create_alert(db: AsyncSession,
                       title: str,
                       message: str,
                       severity: models.AlertSeverity,
                       source: str,
                       data: Optional[Dict[str, Any]] = None) -> models.Alert:
    alert = models.Alert(
        title=title,
        message=message,
        severity=severity.value,
        source=source,
        data=data or {},
        is_read=False,
        created_at=utcnow(),
    )
    db.add(alert)
    await db.flush()
    return alert


async def list_alerts(db: AsyncSession, page: int = 1, page_size: int = 20) -> tuple[List[models.Alert], int]:
    total = int((await db.execute(select(func.count()).select_from(models.Alert))).scalar_one())
    stmt = (
        select(models.Alert)
        .order_by(models.Alert.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list((await db.scalars(stmt)).all()), total


async def list_unread_alerts(db: AsyncSession) -> List[models.Alert]:
    stmt = select(models.Alert).where(models.Alert.is_read.is_(False)).order_by(models.Alert.created_at.desc())
    return list((await db.scalars(stmt)).all())


async def count_alerts_by_severity(db: AsyncSession) -> Dict[str, int]:
    stmt = select(models.Alert.severity, func.count()).group_by(models.Alert.severity)
    return {severity: int(count) for severity, count in (await db.execute(stmt)).all()}


async def get_alert(db: AsyncSession, alert_id: str) -> Optional[models.Alert]:
    return await db.get(models.Alert, alert_id)


async def mark_alert_read(db: AsyncSession, alert_id: str) -> bool:
    result = await db.execute(
        update(models.Alert).where(models.Alert.id == alert_id).values(is_read=True)
    )
    await db.commit()
    return result.rowcount > 0


# --- Products ----------------------------------------------------------------

async def upsert_product_snapshot(db: AsyncSession, product_id: str, **fields: Any) -> None:
    """Replace the given absolute fields of a product's snapshot."""
    values = {key: value for key, value in fields.items() if value is not None}
    values["updated_at"] = utcnow()
    table = models.ProductSnapshot.__table__
    stmt = dialect_insert(db, table).values(product_id=product_id, **values)
    stmt = stmt.on_conflict_do_update(index_elements=[table.c.product_id], set_=values)
    await db.execute(stmt)


async def inventory_value(db: AsyncSession) -> float:
    stmt = select(
        func.coalesce(
            func.sum(
                func.coalesce(models.ProductSnapshot.stock_level, 0)
                * func.coalesce(models.ProductSnapshot.price, 0.0)
            ),
            0.0,
        )
    )
    return float((await db.execute(stmt)).scalar_one())


async def list_low_stock_products(db: AsyncSession, threshold: int) -> List[models.ProductSnapshot]:
    stmt = (
        select(models.ProductSnapshot)
        .where(models.ProductSnapshot.stock_level.is_not(None))
        .where(models.ProductSnapshot.stock_level <= threshold)
        .order_by(models.ProductSnapshot.stock_level.asc())
    )
    return list((await db.scalars(stmt)).all())


# --- Charts ------------------------------------------------------------------

async def replace_chart(db: AsyncSession,
                        chart_id: str,
                        title: str,
                        chart_type: models.ChartType,
                        data_points: Sequence[Dict[str, Any]]) -> models.ChartData:
    now = utcnow()
    values = {"title": title, "type": chart_type.value, "data_points": list(data_points), "generated_at": now}
    table = models.ChartData.__table__
    stmt = dialect_insert(db, table).values(id=models.new_id(), chart_id=chart_id, **values)
    stmt = stmt.on_conflict_do_update(index_elements=[table.c.chart_id], set_=values)
    await db.execute(stmt)
    await db.commit()
    return await db.scalar(
        select(models.ChartData)
        .where(models.ChartData.chart_id == chart_id)
        .execution_options(populate_existing=True)
    )


# --- Query executions --------------------------------------------------------

async def record_query_execution(db: AsyncSession, **fields: Any) -> models.QueryExecution:
    execution = models.QueryExecution(executed_at=utcnow(), **fields)
    db.add(execution)
    await db.commit()
    await db.refresh(execution)
    return execution


async def list_query_executions(db: AsyncSession,
                                user_id: Optional[str] = None,
                                limit: int = 50) -> List[models.QueryExecution]:
    stmt = select(models.QueryExecution)
    if user_id:
        stmt = stmt.where(models.QueryExecution.user_id == user_id)
    stmt = stmt.order_by(models.QueryExecution.executed_at.desc()).limit(limit)
    return list((await db.scalars(stmt)).all())


# --- Database alerts ---------------------------------------------------------

async def create_database_alert_if_absent(db: AsyncSession,
                                          *,
                                          service_name: str,
                                          database_name: str,
                                          collection_name: str,
                                          alert_type: str,
                                          message: str,
                                          severity: models.AlertSeverity,
                                          details: Optional[Dict[str, Any]] = None) -> Optional[models.DatabaseAlert]:
    existing = await db.scalar(
        select(models.DatabaseAlert.id).where(
            models.DatabaseAlert.service_name == service_name,
            models.DatabaseAlert.collection_name == collection_name,
            models.DatabaseAlert.alert_type == alert_type,
            models.DatabaseAlert.is_resolved.is_(False),
        )
    )
    if existing is not None:
        return None
    alert = models.DatabaseAlert(
        service_name=service_name,
        database_name=database_name,
        collection_name=collection_name,
        alert_type=alert_type,
        message=message,
        severity=severity.value,
        details=details or {},
        is_resolved=False,
        created_at=utcnow(),
    )
    db.add(alert)
    await db.flush()
    return alert


async def list_database_alerts(db: AsyncSession, include_resolved: bool = False) -> List[models.DatabaseAlert]:
    stmt = select(models.DatabaseAlert)
    if not include_resolved:
        stmt = stmt.where(models.DatabaseAlert.is_resolved.is_(False))
    stmt = stmt.order_by(models.DatabaseAlert.created_at.desc())
    return list((await db.scalars(stmt)).all())


async def resolve_database_alert(db: AsyncSession, alert_id: str) -> bool:
    """Resolve an open alert. Returns False if it is unknown or already resolved."""
    result = await db.execute(
        update(models.DatabaseAlert)
        .where(models.DatabaseAlert.id == alert_id, models.DatabaseAlert.is_resolved.is_(False))
        .values(is_resolved=True, resolved_at=utcnow())
    )
    await db.commit()
    return result.rowcount > 0

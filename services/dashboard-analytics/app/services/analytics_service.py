"""
Aggregation handlers: apply ingested business events to the aggregation store

Every event is claimed in the processed-events ledger inside the same
transaction as its counter increments, metric snapshots, KPI updates and
alerts. A redelivered event finds its claim taken and changes nothing.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import crud
from ..core.logging import get_logger
from ..events import (
    BudgetEventData,
    EventTopic,
    IngestedEvent,
    OrderEventData,
    ProductEventData,
    TransactionEventData,
)
from ..models import AlertSeverity, MetricType, utcnow
from ..notifications import NotificationHub, NotificationKind
from ..schemas import AlertResponse, KPIResponse, MetricResponse
from .dashboard_service import ORDER_REVENUE_COUNTER, DashboardService, start_of_day

logger = get_logger("analytics_service")

CUSTOMER_SEEN_LEDGER = "sales.customer.first-seen"


@dataclass
class HandlerResult:
    applied: bool
    metrics: List[MetricResponse] = field(default_factory=list)
    kpis: List[KPIResponse] = field(default_factory=list)
    alerts: List[AlertResponse] = field(default_factory=list)


class _Mutation:
    """Collects what one event changed while its transaction is open."""

    def __init__(self, db: AsyncSession, event: IngestedEvent):
        self.db = db
        self.event = event
        self.result = HandlerResult(applied=True)

    async def increment(self, metric_type: MetricType, delta: float) -> float:
        total = await crud.increment_counter(self.db, metric_type.value, delta)
        await self.snapshot(metric_type, total)
        return total

    async def snapshot(self, metric_type: MetricType, value: float) -> None:
        metric = await crud.record_metric(
            self.db,
            metric_type,
            value,
            {"source": self.event.topic.value, "eventKey": self.event.idempotency_key},
        )
        self.result.metrics.append(MetricResponse.model_validate(metric))
        for kpi in await crud.apply_metric_to_kpis(self.db, metric_type, value):
            self.result.kpis.append(KPIResponse.model_validate(kpi))

    async def alert(self, title: str, message: str, severity: AlertSeverity, source: str, data: Dict[str, Any]) -> None:
        alert = await crud.create_alert(self.db, title, message, severity, source, data)
        self.result.alerts.append(AlertResponse.model_validate(alert))


class AnalyticsService:
    def __init__(self,
                 session_factory: async_sessionmaker[AsyncSession],
                 hub: NotificationHub,
                 dashboard: DashboardService):
        self._session_factory = session_factory
        self._hub = hub
        self._dashboard = dashboard

    async def _apply(self,
                     event: IngestedEvent,
                     mutate: Optional[Callable[[_Mutation], Awaitable[None]]] = None) -> HandlerResult:
        async with self._session_factory() as db:
            async with db.begin():
                claimed = await crud.claim_event(db, event.topic.value, event.idempotency_key, event.timestamp)
                if not claimed:
                    logger.info(f"Skipping already applied {event.topic.value} event {event.idempotency_key}")
                    return HandlerResult(applied=False)
                mutation = _Mutation(db, event)
                if mutate is not None:
                    await mutate(mutation)
        await self._notify(mutation.result)
        return mutation.result

    async def _notify(self, result: HandlerResult) -> None:
        """Publish the committed changes; the store stays authoritative if this fails."""
        try:
            await self._dashboard.invalidate()
            snapshot = await self._dashboard.get_dashboard_metrics(refresh=True)
        except Exception as e:
            logger.error(f"Could not build dashboard snapshot after mutation: {e}", exc_info=True)
        else:
            self._hub.publish_model(NotificationKind.DASHBOARD_UPDATE, snapshot)
        for kpi in result.kpis:
            self._hub.publish_model(NotificationKind.KPI_UPDATED, kpi)
        for alert in result.alerts:
            self._hub.publish_model(NotificationKind.ALERT_RECEIVED, alert)

    @staticmethod
    async def _net_income(mutation: _Mutation) -> None:
        revenue = await crud.get_counter(mutation.db, MetricType.REVENUE.value)
        expenses = await crud.get_counter(mutation.db, MetricType.EXPENSES.value)
        await mutation.snapshot(MetricType.NET_INCOME, revenue - expenses)

    # --- Handlers, one per event family -------------------------------------

    async def handle_user_event(self, event: IngestedEvent) -> HandlerResult:
        async def mutate(m: _Mutation) -> None:
            if event.is_creation:
                await m.increment(MetricType.USER_COUNT, 1)

        return await self._apply(event, mutate)

    async def handle_product_event(self, event: IngestedEvent) -> HandlerResult:
        data: ProductEventData = event.data

        async def mutate(m: _Mutation) -> None:
            if event.is_creation:
                await m.increment(MetricType.PRODUCT_COUNT, 1)
            await crud.upsert_product_snapshot(
                m.db,
                data.product_id,
                name=data.name,
                category=data.category,
                stock_level=data.stock_level,
                price=data.price,
            )
            await m.snapshot(MetricType.INVENTORY_VALUE, await crud.inventory_value(m.db))

        return await self._apply(event, mutate)

    async def handle_stock_low_event(self, event: IngestedEvent) -> HandlerResult:
        data: ProductEventData = event.data

        async def mutate(m: _Mutation) -> None:
            if data.stock_level is not None:
                await crud.upsert_product_snapshot(m.db, data.product_id, name=data.name, stock_level=data.stock_level)
                await m.snapshot(MetricType.INVENTORY_VALUE, await crud.inventory_value(m.db))
            await m.increment(MetricType.LOW_STOCK_PRODUCTS, 1)
            product = data.name or data.product_id
            level = data.stock_level if data.stock_level is not None else "unknown"
            await m.alert(
                "Low Stock Alert",
                f"Product '{product}' is running low on stock. Current level: {level}",
                AlertSeverity.WARNING,
                "Inventory",
                {"productId": data.product_id, "productName": data.name, "stockLevel": data.stock_level},
            )

        return await self._apply(event, mutate)

    async def handle_order_event(self, event: IngestedEvent) -> HandlerResult:
        data: OrderEventData = event.data

        async def mutate(m: _Mutation) -> None:
            if not event.is_creation:
                return
            await m.increment(MetricType.ORDER_COUNT, 1)
            await m.increment(MetricType.REVENUE, data.total_amount)
            await crud.increment_counter(m.db, ORDER_REVENUE_COUNTER, data.total_amount)
            if data.customer_id:
                first_seen = await crud.claim_event(m.db, CUSTOMER_SEEN_LEDGER, data.customer_id, event.timestamp)
                if first_seen:
                    await m.increment(MetricType.CUSTOMER_COUNT, 1)
            await self._net_income(m)
            today = start_of_day(utcnow())
            orders_today = await crud.count_events_since(m.db, EventTopic.ORDER_CREATED.value, today)
            await m.snapshot(MetricType.ORDERS_TODAY, orders_today)

        return await self._apply(event, mutate)

    async def handle_transaction_event(self, event: IngestedEvent) -> HandlerResult:
        data: TransactionEventData = event.data

        async def mutate(m: _Mutation) -> None:
            if data.is_income:
                await m.increment(MetricType.REVENUE, data.total_amount)
            elif data.is_expense:
                await m.increment(MetricType.EXPENSES, abs(data.total_amount))
            else:
                logger.info(f"Transaction type {data.type!r} does not affect revenue or expenses")
                return
            await self._net_income(m)

        return await self._apply(event, mutate)

    async def handle_budget_event(self, event: IngestedEvent) -> HandlerResult:
        data: BudgetEventData = event.data

        async def mutate(m: _Mutation) -> None:
            await m.alert(
                "Budget Exceeded",
                f"Budget '{data.budget_name}' has been exceeded by {data.exceeded_amount:,.2f}. "
                f"Current usage: {data.percentage_used:.1f}%",
                AlertSeverity.CRITICAL,
                "Financial",
                {
                    "budgetId": data.budget_id,
                    "budgetName": data.budget_name,
                    "accountName": data.account_name,
                    "budgetAmount": data.budget_amount,
                    "spentAmount": data.spent_amount,
                    "exceededAmount": data.exceeded_amount,
                    "percentageUsed": data.percentage_used,
                },
            )

        return await self._apply(event, mutate)

    async def handle_notification_only(self, event: IngestedEvent) -> HandlerResult:
        """Events that change no aggregate but still refresh connected dashboards."""
        return await self._apply(event)


def default_kpis(targets: Dict[str, float]) -> List[Dict[str, Any]]:
    return [
        {
            "name": "Total Revenue",
            "description": "Revenue from orders and sales transactions",
            "metric_type": MetricType.REVENUE.value,
            "target_value": targets["revenue"],
            "unit": "USD",
        },
        {
            "name": "Net Income",
            "description": "Revenue minus expenses",
            "metric_type": MetricType.NET_INCOME.value,
            "target_value": targets["net_income"],
            "unit": "USD",
        },
        {
            "name": "Total Orders",
            "description": "Orders placed",
            "metric_type": MetricType.ORDER_COUNT.value,
            "target_value": targets["orders"],
            "unit": "orders",
        },
        {
            "name": "Total Customers",
            "description": "Distinct customers with at least one order",
            "metric_type": MetricType.CUSTOMER_COUNT.value,
            "target_value": targets["customers"],
            "unit": "customers",
        },
    ]

import pytest

from app import crud
from app.events import EventTopic, parse_event
from app.models import KPIStatus, MetricType
from support import envelope


def _event(topic: EventTopic, event_type: str, data: dict, timestamp: str = None):
    return parse_event(topic, envelope(event_type, data, timestamp))


async def _counter(session_factory, name: MetricType) -> float:
    async with session_factory() as db:
        return await crud.get_counter(db, name.value)


@pytest.mark.asyncio
async def test_redelivered_order_is_applied_once(analytics_service, session_factory, recording_sink):
    event = _event(EventTopic.ORDER_CREATED, "OrderCreated", {"orderId": "o-1", "customerId": "c-1", "totalAmount": 250})

    first = await analytics_service.handle_order_event(event)
    second = await analytics_service.handle_order_event(event)

    assert first.applied
    assert not second.applied
    assert await _counter(session_factory, MetricType.ORDER_COUNT) == 1
    assert await _counter(session_factory, MetricType.REVENUE) == 250
    assert await _counter(session_factory, MetricType.CUSTOMER_COUNT) == 1
    assert recording_sink.kinds().count("dashboardUpdate") == 1


@pytest.mark.asyncio
async def test_customer_counted_on_first_order_only(analytics_service, session_factory):
    for order_id in ("o-1", "o-2"):
        await analytics_service.handle_order_event(
            _event(EventTopic.ORDER_CREATED, "OrderCreated", {"orderId": order_id, "customerId": "c-1", "totalAmount": 10})
        )

    assert await _counter(session_factory, MetricType.ORDER_COUNT) == 2
    assert await _counter(session_factory, MetricType.CUSTOMER_COUNT) == 1


@pytest.mark.asyncio
async def test_order_update_changes_no_counter(analytics_service, session_factory, recording_sink):
    result = await analytics_service.handle_order_event(
        _event(EventTopic.ORDER_UPDATED, "OrderUpdated", {"orderId": "o-1", "totalAmount": 99, "status": "Shipped"})
    )

    assert result.applied
    assert result.metrics == []
    assert await _counter(session_factory, MetricType.ORDER_COUNT) == 0
    assert "dashboardUpdate" in recording_sink.kinds()


@pytest.mark.asyncio
async def test_low_stock_raises_warning_alert(analytics_service, session_factory, recording_sink):
    result = await analytics_service.handle_stock_low_event(
        _event(EventTopic.STOCK_LOW, "StockLow", {"productId": "p-1", "name": "Widget", "stockLevel": 3})
    )

    assert [alert.severity.value for alert in result.alerts] == ["Warning"]
    assert "Widget" in result.alerts[0].message
    assert result.alerts[0].data["productId"] == "p-1"
    assert "alertReceived" in recording_sink.kinds()
    async with session_factory() as db:
        unread = await crud.list_unread_alerts(db)
        low_stock = await crud.list_low_stock_products(db, threshold=10)
    assert len(unread) == 1
    assert [p.product_id for p in low_stock] == ["p-1"]


@pytest.mark.asyncio
async def test_low_stock_leaves_product_count_alone(analytics_service, session_factory):
    await analytics_service.handle_product_event(
        _event(EventTopic.PRODUCT_CREATED, "ProductCreated", {"productId": "P1", "stockLevel": 20, "price": 2})
    )

    result = await analytics_service.handle_stock_low_event(
        _event(EventTopic.STOCK_LOW, "inventory.stock.low", {"productId": "P1", "stockLevel": 3})
    )

    assert MetricType.PRODUCT_COUNT not in {metric.type for metric in result.metrics}
    assert await _counter(session_factory, MetricType.PRODUCT_COUNT) == 1
    assert result.alerts[0].data["productId"] == "P1"


@pytest.mark.asyncio
@pytest.mark.parametrize("topic, event_type, data, handler_name", [
    (EventTopic.STOCK_LOW, "StockLow", {"productId": "p-9", "stockLevel": 1}, "handle_stock_low_event"),
    (EventTopic.BUDGET_EXCEEDED, "BudgetExceeded", {"budgetId": "b-9", "budgetName": "Travel"}, "handle_budget_event"),
])
async def test_redelivered_alerting_message_raises_one_alert(
        analytics_service, session_factory, topic, event_type, data, handler_name):
    handler = getattr(analytics_service, handler_name)
    raw = envelope(event_type, data, "2024-05-01T10:00:00Z")

    first = await handler(parse_event(topic, raw))
    second = await handler(parse_event(topic, raw))

    assert first.applied
    assert not second.applied
    assert second.alerts == []
    async with session_factory() as db:
        _, total = await crud.list_alerts(db)
    assert total == 1
    if topic is EventTopic.STOCK_LOW:
        assert await _counter(session_factory, MetricType.LOW_STOCK_PRODUCTS) == 1


@pytest.mark.asyncio
async def test_budget_exceeded_is_critical(analytics_service):
    result = await analytics_service.handle_budget_event(
        _event(
            EventTopic.BUDGET_EXCEEDED,
            "BudgetExceeded",
            {"budgetId": "b-1", "budgetName": "Marketing", "exceededAmount": 1200, "percentageUsed": 112.5},
        )
    )

    assert result.alerts[0].severity.value == "Critical"
    assert "1,200.00" in result.alerts[0].message


@pytest.mark.asyncio
async def test_transactions_move_revenue_kpi(analytics_service, session_factory, recording_sink):
    async with session_factory() as db:
        await crud.create_kpi(db, "Revenue", "", 1000, metric_type=MetricType.REVENUE)

    await analytics_service.handle_transaction_event(
        _event(EventTopic.TRANSACTION_CREATED, "TransactionCreated", {"transactionId": "t-1", "type": "Sale", "totalAmount": 500})
    )
    result = await analytics_service.handle_transaction_event(
        _event(EventTopic.TRANSACTION_CREATED, "TransactionCreated", {"transactionId": "t-2", "type": "Sale", "totalAmount": 300})
    )

    kpi = next(k for k in result.kpis if k.name == "Revenue")
    assert kpi.current_value == 800
    assert kpi.previous_value == 500
    assert kpi.percentage_change == pytest.approx(60.0)
    assert kpi.status is KPIStatus.NEEDS_ATTENTION
    assert "kpiUpdated" in recording_sink.kinds()


@pytest.mark.asyncio
async def test_first_kpi_move_reports_zero_change(analytics_service, session_factory):
    async with session_factory() as db:
        await crud.create_kpi(db, "Spend", "", 100, metric_type=MetricType.EXPENSES)

    result = await analytics_service.handle_transaction_event(
        _event(EventTopic.TRANSACTION_CREATED, "TransactionCreated", {"transactionId": "t-9", "type": "Expense", "amount": 40})
    )

    kpi = next(k for k in result.kpis if k.name == "Spend")
    assert kpi.previous_value == 0
    assert kpi.percentage_change == 0
    assert kpi.status is KPIStatus.CRITICAL
    async with session_factory() as db:
        latest = await crud.latest_metrics(db)
    assert latest[MetricType.NET_INCOME].value == -40


@pytest.mark.asyncio
async def test_product_snapshot_is_replaced_not_added(analytics_service, session_factory):
    await analytics_service.handle_product_event(
        _event(EventTopic.PRODUCT_CREATED, "ProductCreated", {"productId": "p-1", "stockLevel": 10, "price": 2.5})
    )
    await analytics_service.handle_product_event(
        _event(EventTopic.PRODUCT_UPDATED, "ProductUpdated", {"productId": "p-1", "stockLevel": 4})
    )

    assert await _counter(session_factory, MetricType.PRODUCT_COUNT) == 1
    async with session_factory() as db:
        assert await crud.inventory_value(db) == pytest.approx(10.0)

"""
Read side of the dashboard: cached aggregate views and regenerated charts
"""

import datetime
from typing import Awaitable, Callable, Dict, List, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import crud
from ..cache import CacheLayer
from ..core.config import Settings
from ..core.logging import get_logger
from ..events import EventTopic
from ..models import AlertSeverity, ChartType, MetricType, as_utc, utcnow
from ..schemas import (
    ChartDataResponse,
    DashboardMetricsResponse,
    DataPoint,
    FinancialSummaryResponse,
    InventoryOverviewResponse,
    LowStockProductResponse,
    SalesOverviewResponse,
)

logger = get_logger("dashboard_service")

DASHBOARD_METRICS_KEY = "dashboard:metrics"
SALES_OVERVIEW_KEY = "dashboard:sales"
INVENTORY_OVERVIEW_KEY = "dashboard:inventory"
FINANCIAL_SUMMARY_KEY = "dashboard:financial"
DASHBOARD_KEYS = (DASHBOARD_METRICS_KEY, SALES_OVERVIEW_KEY, INVENTORY_OVERVIEW_KEY, FINANCIAL_SUMMARY_KEY)

ChartSeries = Tuple[str, ChartType, List[DataPoint]]

ORDER_REVENUE_COUNTER = "OrderRevenue"
TREND_WINDOW_DAYS = 30


class UnknownChartError(LookupError):
    pass


def start_of_day(now: datetime.datetime) -> datetime.datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class DashboardService:
    def __init__(self,
                 session_factory: async_sessionmaker[AsyncSession],
                 cache: CacheLayer,
                 settings: Settings):
        self._session_factory = session_factory
        self._cache = cache
        self._settings = settings
        self._charts: Dict[str, Callable[[AsyncSession], Awaitable[ChartSeries]]] = {
            "revenue-trend": self._revenue_trend,
            "net-income-trend": self._net_income_trend,
            "metrics-overview": self._metrics_overview,
            "alerts-by-severity": self._alerts_by_severity,
        }

    async def invalidate(self) -> None:
        await self._cache.invalidate(*DASHBOARD_KEYS)

    # --- Cached views ---------------------------------------------------------

    async def get_dashboard_metrics(self, refresh: bool = False) -> DashboardMetricsResponse:
        return await self._cache.get_or_compute(
            DASHBOARD_METRICS_KEY,
            self._settings.DASHBOARD_CACHE_TTL,
            self._compute_dashboard_metrics,
            DashboardMetricsResponse,
            refresh=refresh,
        )

    async def get_sales_overview(self) -> SalesOverviewResponse:
        return await self._cache.get_or_compute(
            SALES_OVERVIEW_KEY,
            self._settings.DASHBOARD_CACHE_TTL,
            self._compute_sales_overview,
            SalesOverviewResponse,
        )

    async def get_inventory_overview(self) -> InventoryOverviewResponse:
        return await self._cache.get_or_compute(
            INVENTORY_OVERVIEW_KEY,
            self._settings.DASHBOARD_CACHE_TTL,
            self._compute_inventory_overview,
            InventoryOverviewResponse,
        )

    async def get_financial_summary(self) -> FinancialSummaryResponse:
        return await self._cache.get_or_compute(
            FINANCIAL_SUMMARY_KEY,
            self._settings.DASHBOARD_CACHE_TTL,
            self._compute_financial_summary,
            FinancialSummaryResponse,
        )

    async def _compute_dashboard_metrics(self) -> DashboardMetricsResponse:
        async with self._session_factory() as db:
            latest = await crud.latest_metrics(db)

        def value(metric_type: MetricType) -> float:
            metric = latest.get(metric_type)
            return float(metric.value) if metric else 0.0

        last_updated = max((as_utc(m.timestamp) for m in latest.values()), default=utcnow())
        return DashboardMetricsResponse(
            total_revenue=value(MetricType.REVENUE),
            total_expenses=value(MetricType.EXPENSES),
            net_income=value(MetricType.NET_INCOME),
            total_orders=int(value(MetricType.ORDER_COUNT)),
            total_customers=int(value(MetricType.CUSTOMER_COUNT)),
            total_products=int(value(MetricType.PRODUCT_COUNT)),
            low_stock_products=int(value(MetricType.LOW_STOCK_PRODUCTS)),
            active_users=int(value(MetricType.USER_COUNT)),
            inventory_value=value(MetricType.INVENTORY_VALUE),
            orders_today=int(value(MetricType.ORDERS_TODAY)),
            last_updated=last_updated,
        )

    async def _compute_sales_overview(self) -> SalesOverviewResponse:
        now = utcnow()
        today = start_of_day(now)
        week_start = today - datetime.timedelta(days=today.weekday())
        month_start = today.replace(day=1)
        async with self._session_factory() as db:
            orders = await crud.get_counter(db, MetricType.ORDER_COUNT.value)
            order_revenue = await crud.get_counter(db, ORDER_REVENUE_COUNTER)
            topic = EventTopic.ORDER_CREATED.value
            orders_today = await crud.count_events_since(db, topic, today)
            orders_week = await crud.count_events_since(db, topic, week_start)
            orders_month = await crud.count_events_since(db, topic, month_start)
        return SalesOverviewResponse(
            total_orders=int(orders),
            total_revenue=order_revenue,
            average_order_value=order_revenue / orders if orders > 0 else 0.0,
            orders_today=orders_today,
            orders_this_week=orders_week,
            orders_this_month=orders_month,
        )

    async def _compute_inventory_overview(self) -> InventoryOverviewResponse:
        threshold = self._settings.LOW_STOCK_THRESHOLD
        async with self._session_factory() as db:
            products = await crud.get_counter(db, MetricType.PRODUCT_COUNT.value)
            low_stock = await crud.list_low_stock_products(db, threshold)
            value = await crud.inventory_value(db)
        out_of_stock = [p for p in low_stock if p.stock_level == 0]
        items = [
            LowStockProductResponse(
                product_id=p.product_id,
                product_name=p.name,
                current_stock=p.stock_level,
                reorder_level=threshold,
            )
            for p in low_stock
            if p.stock_level > 0
        ]
        return InventoryOverviewResponse(
            total_products=int(products),
            low_stock_products=len(items),
            out_of_stock_products=len(out_of_stock),
            total_inventory_value=value,
            low_stock_items=items,
        )

    async def _compute_financial_summary(self) -> FinancialSummaryResponse:
        async with self._session_factory() as db:
            revenue = await crud.get_counter(db, MetricType.REVENUE.value)
            expenses = await crud.get_counter(db, MetricType.EXPENSES.value)
        net_income = revenue - expenses
        return FinancialSummaryResponse(
            total_revenue=revenue,
            total_expenses=expenses,
            net_income=net_income,
            profit_margin=net_income / revenue * 100 if revenue > 0 else 0.0,
        )

    # --- Charts ---------------------------------------------------------------

    async def get_chart(self, chart_id: str) -> ChartDataResponse:
        """Regenerate the whole series and replace the stored chart."""
        build = self._charts.get(chart_id)
        if build is None:
            raise UnknownChartError(chart_id)
        async with self._session_factory() as db:
            title, chart_type, points = await build(db)
            logger.debug(f"Regenerated chart {chart_id} with {len(points)} points")
            chart = await crud.replace_chart(
                db,
                chart_id,
                title,
                chart_type,
                [point.model_dump(mode="json", by_alias=True) for point in points],
            )
            return ChartDataResponse.model_validate(chart)

    async def list_charts(self) -> List[ChartDataResponse]:
        return [await self.get_chart(chart_id) for chart_id in self._charts]

    async def _trend(self, db: AsyncSession, metric_type: MetricType) -> List[DataPoint]:
        since = utcnow() - datetime.timedelta(days=TREND_WINDOW_DAYS)
        history = await crud.metric_history(db, metric_type, since=since)
        return [
            DataPoint(
                label=as_utc(metric.timestamp).strftime("%Y-%m-%d %H:%M"),
                value=metric.value,
                category=metric_type.value,
                timestamp=as_utc(metric.timestamp),
            )
            for metric in history
        ]

    async def _revenue_trend(self, db: AsyncSession) -> ChartSeries:
        return "Revenue Trend", ChartType.LINE, await self._trend(db, MetricType.REVENUE)

    async def _net_income_trend(self, db: AsyncSession) -> ChartSeries:
        return "Net Income Trend", ChartType.AREA, await self._trend(db, MetricType.NET_INCOME)

    async def _metrics_overview(self, db: AsyncSession) -> ChartSeries:
        latest = await crud.latest_metrics(db)
        points = [
            DataPoint(
                label=crud.METRIC_LABELS[metric_type],
                value=latest[metric_type].value if metric_type in latest else 0.0,
                category=metric_type.value,
            )
            for metric_type in MetricType
        ]
        return "Metrics Overview", ChartType.BAR, points

    async def _alerts_by_severity(self, db: AsyncSession) -> ChartSeries:
        counts = await crud.count_alerts_by_severity(db)
        points = [
            DataPoint(label=severity.value, value=counts.get(severity.value, 0), category="alerts")
            for severity in AlertSeverity
        ]
        return "Alerts by Severity", ChartType.PIE, points

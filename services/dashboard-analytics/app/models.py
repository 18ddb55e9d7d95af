import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String, Text

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class MetricType(str, Enum):
    USER_COUNT = "UserCount"
    PRODUCT_COUNT = "ProductCount"
    ORDER_COUNT = "OrderCount"
    REVENUE = "Revenue"
    EXPENSES = "Expenses"
    NET_INCOME = "NetIncome"
    INVENTORY_VALUE = "InventoryValue"
    LOW_STOCK_PRODUCTS = "LowStockProducts"
    ORDERS_TODAY = "OrdersToday"
    CUSTOMER_COUNT = "CustomerCount"


class KPIStatus(str, Enum):
    ON_TRACK = "OnTrack"
    NEEDS_ATTENTION = "NeedsAttention"
    CRITICAL = "Critical"


class AlertSeverity(str, Enum):
    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"
    CRITICAL = "Critical"


class ChartType(str, Enum):
    LINE = "Line"
    BAR = "Bar"
    PIE = "Pie"
    AREA = "Area"


ON_TRACK_PROGRESS = 90.0
NEEDS_ATTENTION_PROGRESS = 70.0


def kpi_progress(current: float, target: float) -> float:
    return current / target * 100 if target > 0 else 0.0


def derive_kpi_status(current: float, target: float) -> KPIStatus:
    progress = kpi_progress(current, target)
    if progress >= ON_TRACK_PROGRESS:
        return KPIStatus.ON_TRACK
    if progress >= NEEDS_ATTENTION_PROGRESS:
        return KPIStatus.NEEDS_ATTENTION
    return KPIStatus.CRITICAL


def percentage_change(current: float, previous: float) -> float:
    if previous == 0:
        return 0.0
    return (current - previous) / previous * 100


class Metric(Base):
    __tablename__ = "metrics"

    id = Column(String(36), primary_key=True, default=new_id)
    type = Column(String(32), nullable=False, index=True)
    label = Column(String, nullable=False)
    value = Column(Float, nullable=False)
    details = Column("metadata", JSON, nullable=False, default=dict)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class KPI(Base):
    __tablename__ = "kpis"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False, unique=True)
    description = Column(String, nullable=False, default="")
    metric_type = Column(String(32), nullable=True, index=True)
    current_value = Column(Float, nullable=False, default=0.0)
    target_value = Column(Float, nullable=False, default=0.0)
    previous_value = Column(Float, nullable=False, default=0.0)
    unit = Column(String, nullable=False, default="")
    status = Column(String(32), nullable=False, default=KPIStatus.ON_TRACK.value)
    last_updated = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def percentage_change(self) -> float:
        return percentage_change(self.current_value or 0.0, self.previous_value or 0.0)


class ChartData(Base):
    __tablename__ = "chart_data"

    id = Column(String(36), primary_key=True, default=new_id)
    chart_id = Column(String, nullable=False, unique=True)
    title = Column(String, nullable=False)
    type = Column(String(16), nullable=False)
    data_points = Column(JSON, nullable=False, default=list)
    generated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Alert(Base):
    __tablename__ = "alerts"

    id = Column(String(36), primary_key=True, default=new_id)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    severity = Column(String(16), nullable=False, index=True)
    source = Column(String, nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    is_read = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class QueryExecution(Base):
    __tablename__ = "query_executions"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String, nullable=False, index=True)
    user_email = Column(String, nullable=True)
    database_name = Column(String, nullable=False)
    collection_name = Column(String, nullable=False)
    query = Column(Text, nullable=False)
    query_type = Column(String(16), nullable=False)
    is_successful = Column(Boolean, nullable=False)
    error_message = Column(Text, nullable=True)
    result_count = Column(Integer, nullable=False, default=0)
    execution_time_ms = Column(Float, nullable=False, default=0.0)
    executed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class DatabaseAlert(Base):
    __tablename__ = "database_alerts"

    id = Column(String(36), primary_key=True, default=new_id)
    service_name = Column(String, nullable=False, index=True)
    database_name = Column(String, nullable=False)
    collection_name = Column(String, nullable=False)
    alert_type = Column(String(32), nullable=False)
    message = Column(Text, nullable=False)
    severity = Column(String(16), nullable=False)
    details = Column("metadata", JSON, nullable=False, default=dict)
    is_resolved = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at = Column(DateTime(timezone=True), nullable=True)


class ProcessedEvent(Base):
    """Ledger of applied events; the composite key is the idempotency key."""
    __tablename__ = "processed_events"

    event_type = Column(String, primary_key=True)
    event_key = Column(String, primary_key=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class AggregateCounter(Base):
    __tablename__ = "aggregate_counters"

    name = Column(String, primary_key=True)
    value = Column(Float, nullable=False, default=0.0)


class ProductSnapshot(Base):
    __tablename__ = "product_snapshots"

    product_id = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    category = Column(String, nullable=True)
    stock_level = Column(Integer, nullable=True)
    price = Column(Float, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

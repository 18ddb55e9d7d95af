import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .core.config import settings
from .models import AlertSeverity, ChartType, KPIStatus, MetricType


class CamelModel(BaseModel):
    """Wire models use camelCase names; snake_case is accepted on input."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# --- Dashboard ---------------------------------------------------------------

class MetricResponse(CamelModel):
    id: str
    type: MetricType
    label: str
    value: float
    details: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("details", "metadata"),
        serialization_alias="metadata",
    )
    timestamp: datetime.datetime


class DashboardMetricsResponse(CamelModel):
    total_revenue: float = 0.0
    total_expenses: float = 0.0
    net_income: float = 0.0
    total_orders: int = 0
    total_customers: int = 0
    total_products: int = 0
    low_stock_products: int = 0
    active_users: int = 0
    inventory_value: float = 0.0
    orders_today: int = 0
    last_updated: datetime.datetime


class SalesOverviewResponse(CamelModel):
    total_orders: int
    total_revenue: float
    average_order_value: float
    orders_today: int
    orders_this_week: int
    orders_this_month: int


class LowStockProductResponse(CamelModel):
    product_id: str
    product_name: Optional[str] = None
    current_stock: int
    reorder_level: int


class InventoryOverviewResponse(CamelModel):
    total_products: int
    low_stock_products: int
    out_of_stock_products: int
    total_inventory_value: float
    low_stock_items: List[LowStockProductResponse] = Field(default_factory=list)


class FinancialSummaryResponse(CamelModel):
    total_revenue: float
    total_expenses: float
    net_income: float
    profit_margin: float


class DataPoint(CamelModel):
    label: str
    value: float
    category: Optional[str] = None
    timestamp: Optional[datetime.datetime] = None


class ChartDataResponse(CamelModel):
    chart_id: str
    type: ChartType
    title: str
    data_points: List[DataPoint]
    generated_at: datetime.datetime


# --- KPIs --------------------------------------------------------------------

class KPICreate(CamelModel):
    name: str = Field(min_length=1)
    description: str = ""
    target_value: float = Field(ge=0)
    metric_type: Optional[MetricType] = None
    unit: str = ""


class KPIUpdate(CamelModel):
    current_value: float
    target_value: Optional[float] = Field(default=None, ge=0)


class KPIResponse(CamelModel):
    id: str
    name: str
    description: str
    metric_type: Optional[MetricType] = None
    current_value: float
    target_value: float
    previous_value: float
    percentage_change: float
    unit: str = ""
    status: KPIStatus
    last_updated: datetime.datetime


# --- Alerts ------------------------------------------------------------------

class AlertResponse(CamelModel):
    id: str
    title: str
    message: str
    severity: AlertSeverity
    source: str
    data: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool
    created_at: datetime.datetime


class AlertPage(CamelModel):
    items: List[AlertResponse]
    page: int
    page_size: int
    total: int


# --- Database management -----------------------------------------------------

QueryType = Literal["find", "count", "aggregate"]


class IndexInfoResponse(CamelModel):
    name: str
    keys: Dict[str, Any]
    is_unique: bool = False
    is_sparse: bool = False
    size_in_bytes: int = 0


class CollectionInfoResponse(CamelModel):
    name: str
    document_count: int = 0
    size_in_bytes: int = 0
    average_size_in_bytes: float = 0.0
    indexes: List[IndexInfoResponse] = Field(default_factory=list)
    sample_document: Optional[str] = None
    schema_: Dict[str, str] = Field(default_factory=dict, alias="schema")


class DatabaseStatsResponse(CamelModel):
    total_collections: int = 0
    total_documents: int = 0
    total_size_in_bytes: int = 0
    total_indexes: int = 0
    average_document_size: float = 0.0


class ServiceDatabaseResponse(CamelModel):
    service_name: str
    database_name: str
    connection_string: str
    port: int
    collections: List[CollectionInfoResponse] = Field(default_factory=list)
    stats: DatabaseStatsResponse = Field(default_factory=DatabaseStatsResponse)
    is_connected: bool
    error_message: Optional[str] = None


class DatabaseOverviewResponse(CamelModel):
    id: str
    generated_at: datetime.datetime
    services: List[ServiceDatabaseResponse]
    total_stats: DatabaseStatsResponse
    cache_time_seconds: int


class SearchDatabaseRequest(CamelModel):
    search_term: Optional[str] = None
    service_name: Optional[str] = None
    collection_name: Optional[str] = None
    min_document_count: Optional[int] = None
    max_document_count: Optional[int] = None
    min_size_in_bytes: Optional[int] = None
    max_size_in_bytes: Optional[int] = None


class DatabaseSearchResult(CamelModel):
    service_name: str
    database_name: str
    collection_name: str
    document_count: int
    size_in_bytes: int
    matched_fields: List[str] = Field(default_factory=list)


class ExecuteQueryRequest(CamelModel):
    database_name: str
    collection_name: str
    query: str = "{}"
    query_type: QueryType = "find"
    limit: int = Field(default_factory=lambda: settings.DEFAULT_QUERY_LIMIT, ge=1)
    skip: int = Field(default=0, ge=0)


class QueryExecutionResponse(CamelModel):
    id: str
    is_successful: bool
    error_message: Optional[str] = None
    results: List[str] = Field(default_factory=list)
    result_count: int
    execution_time_ms: float
    executed_at: datetime.datetime


class QueryExecutionHistoryResponse(CamelModel):
    id: str
    user_email: Optional[str] = None
    database_name: str
    collection_name: str
    query: str
    query_type: str
    is_successful: bool
    result_count: int
    execution_time_ms: float
    executed_at: datetime.datetime


class DatabaseAlertResponse(CamelModel):
    id: str
    service_name: str
    database_name: str
    collection_name: str
    alert_type: str
    message: str
    severity: AlertSeverity
    details: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("details", "metadata"),
        serialization_alias="metadata",
    )
    is_resolved: bool
    created_at: datetime.datetime
    resolved_at: Optional[datetime.datetime] = None


class DatabaseUpdateEvent(CamelModel):
    """Signal from a downstream collaborator that its storage changed."""
    event_type: str
    service_name: str
    database_name: str
    collection_name: str = ""
    timestamp: datetime.datetime = Field(default_factory=lambda: datetime.datetime.now(datetime.timezone.utc))
    details: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("details", "metadata"),
        serialization_alias="metadata",
    )


class DatabaseRefreshedEvent(CamelModel):
    generated_at: datetime.datetime
    total_services: int
    connected_services: int

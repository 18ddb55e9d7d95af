"""
Configuration management for SelfMonitor Dashboard Analytics
"""

from typing import Annotated, Any, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_TOPICS = [
    "users.user.created",
    "users.user.updated",
    "inventory.product.created",
    "inventory.product.updated",
    "inventory.stock.low",
    "sales.order.created",
    "sales.order.updated",
    "sales.invoice.paid",
    "financial.transaction.created",
    "financial.budget.exceeded",
]

DEFAULT_SERVICE_DATABASES = {
    "User Management": "erp_users",
    "Inventory": "erp_inventory",
    "Sales": "erp_sales",
    "Financial": "erp_financial",
    "Dashboard": "erp_dashboard",
}


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Application settings
    APP_NAME: str = "SelfMonitor Dashboard Analytics"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000)
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FILE: Optional[str] = Field(default=None)
    ALLOWED_ORIGINS: Annotated[List[str], NoDecode] = Field(default=["http://localhost:4200"])

    # Aggregation store
    DATABASE_URL: str = Field(default="sqlite+aiosqlite:///./dashboard_analytics.db")
    AUTO_CREATE_SCHEMA: bool = Field(default=True)

    # Broker settings
    KAFKA_ENABLED: bool = Field(default=True)
    KAFKA_BOOTSTRAP_SERVERS: str = Field(default="localhost:9092")
    KAFKA_CONSUMER_GROUP_ID: str = Field(default="dashboard-analytics-group")
    KAFKA_TOPICS: Annotated[List[str], NoDecode] = Field(default_factory=lambda: list(DEFAULT_TOPICS))
    KAFKA_POLL_TIMEOUT_MS: int = Field(default=1000)
    KAFKA_RETRY_BACKOFF_SECONDS: float = Field(default=1.0)

    # Cache settings
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    CACHE_ENABLED: bool = Field(default=True)
    CACHE_KEY_PREFIX: str = Field(default="dashboard-analytics:")
    DATABASE_OVERVIEW_CACHE_TTL: int = Field(default=30)  # seconds
    DASHBOARD_CACHE_TTL: int = Field(default=300)  # 5 minutes

    # Auth settings
    JWT_SECRET: str = Field(default="a_very_secret_key_that_should_be_in_an_env_var")
    JWT_ALGORITHM: str = Field(default="HS256")
    JWT_ISSUER: Optional[str] = Field(default="erp-user-management")
    JWT_AUDIENCE: Optional[str] = Field(default="erp-services")

    # Downstream storage
    MONGO_URI: str = Field(default="mongodb://localhost:27017")
    MONGO_TIMEOUT_MS: int = Field(default=5000)
    MONGO_MAX_WORKERS: int = Field(default=4)
    SERVICE_DATABASES: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_SERVICE_DATABASES))

    # Limits
    MAX_QUERY_RESULTS: int = Field(default=1000)
    DEFAULT_QUERY_LIMIT: int = Field(default=100)
    SAMPLE_DOCUMENT_LIMIT: int = Field(default=20)
    SAMPLE_DOCUMENT_MAX_CHARS: int = Field(default=50000)
    SUBSCRIBER_BUFFER_SIZE: int = Field(default=100)
    SHUTDOWN_GRACE_SECONDS: float = Field(default=10.0)
    LOW_STOCK_THRESHOLD: int = Field(default=10)
    HIGH_DOCUMENT_COUNT_THRESHOLD: int = Field(default=1_000_000)
    LARGE_COLLECTION_SIZE_BYTES: int = Field(default=1_000_000_000)

    # KPI seeding
    SEED_DEFAULT_KPIS: bool = Field(default=True)
    REVENUE_TARGET: float = Field(default=100000.0)
    NET_INCOME_TARGET: float = Field(default=50000.0)
    ORDER_TARGET: float = Field(default=1000.0)
    CUSTOMER_TARGET: float = Field(default=500.0)

    # Tracing
    ENABLE_TRACING: bool = Field(default=False)
    OTLP_ENDPOINT: str = Field(default="http://otel-collector:4318/v1/traces")
    TRACE_SAMPLE_RATE: float = Field(default=0.1)

    @field_validator("ALLOWED_ORIGINS", "KAFKA_TOPICS", mode="before")
    @classmethod
    def split_comma_separated(cls, v: Any) -> list[str]:
        """Split comma-separated strings into lists."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: Any) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @field_validator("MAX_QUERY_RESULTS", "DEFAULT_QUERY_LIMIT", "SUBSCRIBER_BUFFER_SIZE", "MONGO_MAX_WORKERS")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("limits must be positive")
        return v

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


# Global settings instance
settings = Settings()

"""
SelfMonitor Dashboard Analytics
Real-time business dashboard fed by domain events

Features:
- Idempotent aggregation of Kafka domain events into metrics, KPIs and alerts
- Cached dashboard views and regenerated charts
- Live updates over group-push and subscription WebSockets
- Overview and ad-hoc querying of the downstream services' MongoDB storage
"""

import functools
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, Dict

for parent in Path(__file__).resolve().parents:
    if (parent / "libs").exists():
        parent_str = str(parent)
        if parent_str not in sys.path:
            sys.path.append(parent_str)
        break

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from libs.event_streaming.kafka_integration import KafkaConsumerPool, build_kafka_consumer
from libs.observability.telemetry import TelemetryConfig

from . import crud
from .api.v1 import alerts, dashboard, database, health, kpis, realtime
from .cache import CacheLayer
from .connections import ConnectionRegistry
from .core.config import settings
from .core.logging import get_logger, setup_logging
from .database import build_engine, build_session_factory, create_schema
from .notifications import GroupPushSink, NotificationHub, SubscriptionSink
from .router import IngestionRouter
from .services.analytics_service import AnalyticsService, default_kpis
from .services.dashboard_service import DashboardService
from .services.database_service import DatabaseService
from .services.kpi_service import KPIService

setup_logging()
logger = get_logger("main")

telemetry = TelemetryConfig(
    settings.APP_NAME,
    settings.VERSION,
    enabled=settings.ENABLE_TRACING,
    endpoint=settings.OTLP_ENDPOINT,
    environment=settings.ENVIRONMENT,
    sample_rate=settings.TRACE_SAMPLE_RATE,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    logger.info("🚀 Starting SelfMonitor Dashboard Analytics...")
    telemetry.setup_tracing()

    engine = build_engine(settings.DATABASE_URL)
    telemetry.instrument_libraries(engine)
    session_factory = build_session_factory(engine)
    app.state.session_factory = session_factory

    if settings.AUTO_CREATE_SCHEMA:
        await create_schema(engine)
    if settings.SEED_DEFAULT_KPIS:
        async with session_factory() as db:
            seeded = await crud.seed_kpis(db, default_kpis({
                "revenue": settings.REVENUE_TARGET,
                "net_income": settings.NET_INCOME_TARGET,
                "orders": settings.ORDER_TARGET,
                "customers": settings.CUSTOMER_TARGET,
            }))
        logger.info(f"Seeded {seeded} default KPIs")

    cache = CacheLayer.from_settings(settings)
    registry = ConnectionRegistry(buffer_size=settings.SUBSCRIBER_BUFFER_SIZE)
    hub = NotificationHub([GroupPushSink(registry), SubscriptionSink(registry)])
    dashboard_service = DashboardService(session_factory, cache, settings)
    analytics_service = AnalyticsService(session_factory, hub, dashboard_service)
    database_service = DatabaseService(settings, session_factory, cache, hub)

    app.state.cache = cache
    app.state.connection_registry = registry
    app.state.notification_hub = hub
    app.state.dashboard_service = dashboard_service
    app.state.analytics_service = analytics_service
    app.state.kpi_service = KPIService(hub)
    app.state.database_service = database_service
    app.state.consumer_pool = None

    try:
        if settings.KAFKA_ENABLED:
            pool = KafkaConsumerPool(
                settings.KAFKA_TOPICS,
                IngestionRouter(analytics_service),
                consumer_factory=functools.partial(
                    build_kafka_consumer,
                    bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
                    group_id=settings.KAFKA_CONSUMER_GROUP_ID,
                ),
                poll_timeout_ms=settings.KAFKA_POLL_TIMEOUT_MS,
                retry_backoff_seconds=settings.KAFKA_RETRY_BACKOFF_SECONDS,
                shutdown_grace_seconds=settings.SHUTDOWN_GRACE_SECONDS,
            )
            await pool.start()
            app.state.consumer_pool = pool
        else:
            logger.info("Kafka ingestion disabled via KAFKA_ENABLED=false")

        logger.info("✅ Dashboard Analytics started successfully")
        yield
    except Exception as e:
        logger.error(f"❌ Failed to start Dashboard Analytics: {e}")
        raise
    finally:
        logger.info("🔄 Shutting down Dashboard Analytics...")
        if app.state.consumer_pool is not None:
            await app.state.consumer_pool.stop()
        closed = registry.close_all()
        logger.info(f"Closed {closed} live connections")
        await cache.close()
        database_service.close()
        await engine.dispose()
        logger.info("✅ Dashboard Analytics shut down complete")


app = FastAPI(
    title="SelfMonitor Dashboard Analytics",
    description="Real-time dashboard aggregation and database management",
    version=settings.VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)

telemetry.instrument_fastapi(app)

app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(dashboard.router, prefix="/api/v1/dashboard", tags=["dashboard"])
app.include_router(kpis.router, prefix="/api/v1/kpis", tags=["kpis"])
app.include_router(alerts.router, prefix="/api/v1/alerts", tags=["alerts"])
app.include_router(database.router, prefix="/api/v1/database", tags=["database"])
app.include_router(realtime.router, tags=["realtime"])

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/")
async def root() -> Dict[str, Any]:
    """Root endpoint."""
    return {
        "service": settings.APP_NAME,
        "version": settings.VERSION,
        "status": "operational",
    }


if __name__ == "__main__":
    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )

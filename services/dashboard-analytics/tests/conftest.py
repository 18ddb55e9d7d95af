import os
import sys

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["KAFKA_ENABLED"] = "false"
os.environ["CACHE_ENABLED"] = "false"
os.environ["ENABLE_TRACING"] = "false"
os.environ.setdefault("JWT_SECRET", "test-secret")

sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", "..")))

import pytest
import pytest_asyncio

from app.cache import CacheLayer
from app.connections import ConnectionRegistry
from app.core.config import settings
from app.database import build_engine, build_session_factory, create_schema
from app.notifications import GroupPushSink, NotificationHub, SubscriptionSink
from app.services.analytics_service import AnalyticsService
from app.services.dashboard_service import DashboardService
from support import RecordingSink


@pytest_asyncio.fixture()
async def engine():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture()
def registry() -> ConnectionRegistry:
    return ConnectionRegistry(buffer_size=settings.SUBSCRIBER_BUFFER_SIZE)


@pytest.fixture()
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def hub(registry, recording_sink) -> NotificationHub:
    return NotificationHub([GroupPushSink(registry), SubscriptionSink(registry), recording_sink])


@pytest.fixture()
def cache() -> CacheLayer:
    return CacheLayer(None)


@pytest.fixture()
def dashboard_service(session_factory, cache) -> DashboardService:
    return DashboardService(session_factory, cache, settings)


@pytest.fixture()
def analytics_service(session_factory, hub, dashboard_service) -> AnalyticsService:
    return AnalyticsService(session_factory, hub, dashboard_service)

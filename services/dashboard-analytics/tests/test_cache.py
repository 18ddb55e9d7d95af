import datetime

import pytest

from app import cache as cache_module
from app.cache import CacheLayer
from app.core.config import Settings
from app.schemas import DashboardMetricsResponse
from support import FakeRedis


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _snapshot(revenue: float) -> DashboardMetricsResponse:
    return DashboardMetricsResponse(
        total_revenue=revenue,
        last_updated=datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc),
    )


def _counting_compute(values):
    calls = []

    async def compute():
        calls.append(1)
        return _snapshot(values[len(calls) - 1])

    return compute, calls


@pytest.mark.asyncio
async def test_value_is_served_from_cache_until_ttl_expires():
    clock = _Clock()
    layer = CacheLayer(FakeRedis(clock=clock), prefix="test:")
    compute, calls = _counting_compute([100.0, 200.0])

    first = await layer.get_or_compute("dashboard:metrics", 30, compute, DashboardMetricsResponse)
    clock.now = 29
    second = await layer.get_or_compute("dashboard:metrics", 30, compute, DashboardMetricsResponse)
    clock.now = 31
    third = await layer.get_or_compute("dashboard:metrics", 30, compute, DashboardMetricsResponse)

    assert (first.total_revenue, second.total_revenue, third.total_revenue) == (100.0, 100.0, 200.0)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_invalidate_forces_recompute():
    redis = FakeRedis()
    layer = CacheLayer(redis, prefix="test:")
    compute, calls = _counting_compute([1.0, 2.0])

    await layer.get_or_compute("dashboard:metrics", 300, compute, DashboardMetricsResponse)
    await layer.invalidate("dashboard:metrics")
    value = await layer.get_or_compute("dashboard:metrics", 300, compute, DashboardMetricsResponse)

    assert value.total_revenue == 2.0
    assert "test:dashboard:metrics" in redis.store


@pytest.mark.asyncio
async def test_invalidate_prefix_only_touches_matching_keys():
    redis = FakeRedis()
    layer = CacheLayer(redis, prefix="test:")
    await layer.set("db:overview:all", _snapshot(1), 30)
    await layer.set("db:overview:service:Sales", _snapshot(2), 30)
    await layer.set("dashboard:metrics", _snapshot(3), 30)

    removed = await layer.invalidate_prefix("db:overview:")

    assert removed == 2
    assert list(redis.store) == ["test:dashboard:metrics"]


@pytest.mark.asyncio
async def test_unreachable_backend_falls_through_to_compute():
    redis = FakeRedis()
    redis.down = True
    layer = CacheLayer(redis)
    compute, calls = _counting_compute([5.0, 6.0])

    first = await layer.get_or_compute("k", 30, compute, DashboardMetricsResponse)
    second = await layer.get_or_compute("k", 30, compute, DashboardMetricsResponse)
    await layer.invalidate("k")

    assert (first.total_revenue, second.total_revenue) == (5.0, 6.0)


@pytest.mark.asyncio
async def test_garbage_entry_is_treated_as_miss():
    redis = FakeRedis()
    redis.store["k"] = "{not valid"
    layer = CacheLayer(redis)
    compute, _ = _counting_compute([7.0])

    value = await layer.get_or_compute("k", 30, compute, DashboardMetricsResponse)

    assert value.total_revenue == 7.0


def test_from_settings_builds_client_only_when_enabled(monkeypatch):
    created = []
    monkeypatch.setattr(cache_module, "_create_redis_client", lambda url: created.append(url) or FakeRedis())

    disabled = CacheLayer.from_settings(Settings(CACHE_ENABLED=False))
    enabled = CacheLayer.from_settings(Settings(CACHE_ENABLED=True, REDIS_URL="redis://cache:6379/2"))

    assert not disabled.enabled
    assert enabled.enabled
    assert created == ["redis://cache:6379/2"]

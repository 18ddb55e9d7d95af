from typing import Any, Awaitable, Callable, Optional, Type, TypeVar

import redis.asyncio as redis
from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError

from .core.config import Settings
from .core.logging import get_logger
from .instrumentation import CACHE_LOOKUPS

logger = get_logger("cache")

T = TypeVar("T", bound=BaseModel)


def _create_redis_client(url: str) -> Any:
    return redis.from_url(url, decode_responses=True, socket_connect_timeout=1.0, socket_timeout=1.0)


class CacheLayer:
    """Time-boxed cache in front of expensive aggregate views.

    The backend is an accelerator only: whenever Redis is unreachable or
    returns garbage the value is computed directly and the failure logged.
    """

    def __init__(self, client: Optional[Any], prefix: str = ""):
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_settings(cls, settings: Settings) -> "CacheLayer":
        if not settings.CACHE_ENABLED:
            logger.info("Cache disabled; aggregate views are computed on every request")
            return cls(None, settings.CACHE_KEY_PREFIX)
        return cls(_create_redis_client(settings.REDIS_URL), settings.CACHE_KEY_PREFIX)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str, model: Type[T]) -> Optional[T]:
        if self._client is None:
            return None
        try:
            raw = await self._client.get(self._key(key))
        except (RedisError, OSError) as e:
            CACHE_LOOKUPS.labels(result="bypass").inc()
            logger.warning(f"Cache read failed for {key}, computing directly: {e}")
            return None
        if raw is None:
            CACHE_LOOKUPS.labels(result="miss").inc()
            return None
        try:
            value = model.model_validate_json(raw)
        except ValidationError as e:
            CACHE_LOOKUPS.labels(result="miss").inc()
            logger.warning(f"Discarding undecodable cache entry {key}: {e.error_count()} errors")
            return None
        CACHE_LOOKUPS.labels(result="hit").inc()
        return value

    async def set(self, key: str, value: BaseModel, ttl: int) -> None:
        if self._client is None:
            return
        try:
            await self._client.set(self._key(key), value.model_dump_json(by_alias=True), ex=ttl)
        except (RedisError, OSError) as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    async def get_or_compute(self,
                             key: str,
                             ttl: int,
                             compute: Callable[[], Awaitable[T]],
                             model: Type[T],
                             *,
                             refresh: bool = False) -> T:
        """Return the cached value for ``key`` or compute, store and return it."""
        if not refresh:
            cached = await self.get(key, model)
            if cached is not None:
                return cached
        value = await compute()
        await self.set(key, value, ttl)
        return value

    async def invalidate(self, *keys: str) -> None:
        if self._client is None or not keys:
            return
        try:
            await self._client.delete(*(self._key(key) for key in keys))
        except (RedisError, OSError) as e:
            logger.warning(f"Cache invalidation failed for {keys}: {e}")

    async def invalidate_prefix(self, prefix: str) -> int:
        if self._client is None:
            return 0
        removed = 0
        try:
            async for key in self._client.scan_iter(match=f"{self._key(prefix)}*"):
                removed += await self._client.delete(key)
        except (RedisError, OSError) as e:
            logger.warning(f"Cache invalidation failed for prefix {prefix}: {e}")
        return removed

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except (RedisError, OSError) as e:
            logger.warning(f"Error closing cache client: {e}")

"""TTL key/value store scoped per user, per chat or per service.

Values live in Redis as JSON envelopes ``{"v": value, "exp": epoch}``. Redis
expiry evicts keys eventually; the envelope's ``exp`` makes a read past the
deadline a miss even if Redis has not evicted the key yet. ``None`` is never
stored: setting ``None`` removes the key, so ``get`` returning ``None`` always
means a miss.
"""
import json
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from redis.exceptions import RedisError

from common.errors import StoreUnavailable

logger = logging.getLogger(__name__)


class Scope(str, Enum):
    USER = "user"
    CHAT = "chat"
    SERVICE = "service"


class CacheStore:
    def __init__(
        self,
        redis,
        namespace: str = "hub",
        key_prefix: str = "cache",
        clock: Callable[[], float] = time.time,
    ):
        self._redis = redis
        self.namespace = namespace
        self._prefix = key_prefix
        self._clock = clock

    def bind(self, namespace: str) -> "CacheStore":
        """Same backing store, keys namespaced for another service."""
        return CacheStore(self._redis, namespace=namespace, key_prefix=self._prefix, clock=self._clock)

    def _key(self, scope: Scope, scope_id: Any, key: str) -> str:
        return f"{self._prefix}:{scope.value}:{scope_id}:{self.namespace}:{key.lower()}"

    def _envelope(self, value: Any, ttl: Optional[float]) -> str:
        expires_at = self._clock() + ttl if ttl else None
        return json.dumps({"v": value, "exp": expires_at})

    async def get(self, scope: Scope, scope_id: Any, key: str) -> Any:
        redis_key = self._key(scope, scope_id, key)
        try:
            raw = await self._redis.get(redis_key)
        except RedisError as e:
            raise StoreUnavailable(f"cache read failed for {redis_key}: {e}") from e
        if raw is None:
            return None
        try:
            envelope = json.loads(raw)
        except ValueError:
            logger.warning("Dropping undecodable cache entry %s", redis_key)
            await self._delete(redis_key)
            return None
        expires_at = envelope.get("exp")
        if expires_at is not None and expires_at <= self._clock():
            await self._delete(redis_key)
            return None
        return envelope.get("v")

    async def set(self, scope: Scope, scope_id: Any, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        if value is None:
            await self.invalidate(scope, scope_id, key)
            return True
        redis_key = self._key(scope, scope_id, key)
        try:
            await self._redis.set(redis_key, self._envelope(value, ttl), px=int(ttl * 1000) if ttl else None)
        except RedisError as e:
            logger.error(f"Can't set {scope.value} cache value {redis_key}: {e}")
            return False
        return True

    async def set_if_absent(self, scope: Scope, scope_id: Any, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Atomic conditional write. Returns True when this call created the key."""
        redis_key = self._key(scope, scope_id, key)
        try:
            created = await self._redis.set(
                redis_key, self._envelope(value, ttl), nx=True, px=int(ttl * 1000) if ttl else None
            )
            if created:
                return True
            # The key may be logically expired but not yet evicted.
            if await self.get(scope, scope_id, key) is None:
                created = await self._redis.set(
                    redis_key, self._envelope(value, ttl), nx=True, px=int(ttl * 1000) if ttl else None
                )
            return bool(created)
        except RedisError as e:
            raise StoreUnavailable(f"cache write failed for {redis_key}: {e}") from e

    async def invalidate(self, scope: Scope, scope_id: Any, key: str) -> None:
        await self._delete(self._key(scope, scope_id, key))

    async def _delete(self, redis_key: str) -> None:
        try:
            await self._redis.delete(redis_key)
        except RedisError as e:
            logger.error(f"Can't delete cache value {redis_key}: {e}")

    async def fetch(
        self,
        scope: Scope,
        scope_id: Any,
        key: str,
        ttl: Optional[float],
        loader: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Cache-first read; on a miss call ``loader`` and remember its result."""
        try:
            cached = await self.get(scope, scope_id, key)
        except StoreUnavailable as e:
            logger.warning(f"Cache unavailable, loading {key} directly: {e}")
            return await loader()
        if cached is not None:
            return cached
        value = await loader()
        if value is not None:
            await self.set(scope, scope_id, key, value, ttl)
        return value

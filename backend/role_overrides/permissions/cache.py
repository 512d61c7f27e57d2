"""
Override cache.

Caches per-role override tables and per-account chains. Entries are addressed by
an explicit generation counter per (namespace, id): bumping the counter makes
every older entry unreachable, so writers invalidate by bumping, never by
recomputing. Supports in-memory (single instance) and Redis (shared) storage.
"""
import asyncio
from abc import ABC, abstractmethod
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, TypeVar

from pydantic import TypeAdapter

from role_overrides.core.config import settings
from role_overrides.core.logging import cache_logger

T = TypeVar("T")

ROLE_NAMESPACE = "role_override_calculation"
TREE_NAMESPACE = "account_chain"

_bypass_var: ContextVar[bool] = ContextVar("role_override_cache_bypass", default=False)


@contextmanager
def uncached() -> Iterator[None]:
    """Skip cache reads and writes for everything resolved inside the block."""
    token = _bypass_var.set(True)
    try:
        yield
    finally:
        _bypass_var.reset(token)


def caching_bypassed() -> bool:
    return _bypass_var.get()


class OverrideCache(ABC):
    """Generation-addressed cache with at most one computation in flight per key."""

    def __init__(self):
        self._inflight: Dict[str, asyncio.Future] = {}

    # Storage primitives, provided by the backends
    @abstractmethod
    async def generation(self, namespace: str, ident: int) -> int:
        """Current generation of (namespace, ident), 0 when never bumped."""

    @abstractmethod
    async def bump(self, namespace: str, ident: int) -> int:
        """Advance the generation and return the new value."""

    @abstractmethod
    async def _read(self, key: str, adapter: TypeAdapter) -> Optional[Any]:
        ...

    @abstractmethod
    async def _write(self, key: str, value: Any, adapter: TypeAdapter) -> None:
        ...

    @staticmethod
    def make_key(namespace: str, ident: int, generation: int, suffix: str = "") -> str:
        key = f"{namespace}/{ident}/{generation}"
        return f"{key}/{suffix}" if suffix else key

    async def invalidate_role(self, role_id: int) -> int:
        generation = await self.bump(ROLE_NAMESPACE, role_id)
        cache_logger.debug("role overrides invalidated", role_id=role_id, generation=generation)
        return generation

    async def invalidate_tree(self, root_account_id: int) -> int:
        generation = await self.bump(TREE_NAMESPACE, root_account_id)
        cache_logger.debug("account chains invalidated", root_account_id=root_account_id, generation=generation)
        return generation

    async def fetch(
        self,
        namespace: str,
        ident: int,
        compute: Callable[[], Awaitable[T]],
        adapter: TypeAdapter,
        suffix: str = "",
    ) -> T:
        if caching_bypassed():
            return await compute()

        generation = await self.generation(namespace, ident)
        key = self.make_key(namespace, ident, generation, suffix)
        cached = await self._read(key, adapter)
        if cached is not None:
            cache_logger.debug("cache hit", key=key)
            return cached

        cache_logger.debug("cache miss", key=key)
        return await self._single_flight(key, compute, adapter)

    async def _single_flight(self, key: str, compute: Callable[[], Awaitable[T]], adapter: TypeAdapter) -> T:
        # No await between the lookup and the insert, so only one caller can become the owner
        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await compute()
            await self._write(key, value, adapter)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # waiters re-raise it; mark it retrieved for the case where there are none
            future.exception()
            raise
        else:
            future.set_result(value)
            return value
        finally:
            self._inflight.pop(key, None)


class InMemoryOverrideCache(OverrideCache):
    """
    In-memory cache.
    Suitable for single-instance deployments and tests.
    """

    def __init__(self):
        super().__init__()
        self._values: Dict[str, Any] = {}
        self._generations: Dict[str, int] = {}

    async def generation(self, namespace: str, ident: int) -> int:
        return self._generations.get(f"{namespace}/{ident}", 0)

    async def bump(self, namespace: str, ident: int) -> int:
        owner = f"{namespace}/{ident}"
        generation = self._generations.get(owner, 0) + 1
        self._generations[owner] = generation
        stale = [key for key in self._values if key.startswith(owner + "/")]
        for key in stale:
            del self._values[key]
        return generation

    async def _read(self, key: str, adapter: TypeAdapter) -> Optional[Any]:
        return self._values.get(key)

    async def _write(self, key: str, value: Any, adapter: TypeAdapter) -> None:
        self._values[key] = value

    def get_stats(self) -> dict:
        return {
            "backend": "memory",
            "entries": len(self._values),
            "generations": len(self._generations),
            "inflight": len(self._inflight),
        }


class RedisOverrideCache(OverrideCache):
    """
    Redis-based cache for multi-instance deployments.
    Values are JSON with a TTL; generation counters use INCR so every instance
    observes an invalidation as soon as it is written.
    """

    def __init__(self, redis_client, prefix: Optional[str] = None, ttl: Optional[int] = None):
        super().__init__()
        self._redis = redis_client
        self._prefix = prefix if prefix is not None else settings.CACHE_PREFIX
        self._ttl = ttl if ttl is not None else settings.CACHE_TTL_SECONDS

    def _generation_key(self, namespace: str, ident: int) -> str:
        return f"{self._prefix}gen/{namespace}/{ident}"

    async def generation(self, namespace: str, ident: int) -> int:
        raw = await self._redis.get(self._generation_key(namespace, ident))
        return int(raw) if raw is not None else 0

    async def bump(self, namespace: str, ident: int) -> int:
        # Invalidation must not fail silently, errors propagate to the writer
        return int(await self._redis.incr(self._generation_key(namespace, ident)))

    async def _read(self, key: str, adapter: TypeAdapter) -> Optional[Any]:
        try:
            raw = await self._redis.get(f"{self._prefix}{key}")
        except Exception as e:
            cache_logger.error("Redis cache read error", error=e, key=key)
            return None
        if raw is None:
            return None
        return adapter.validate_json(raw)

    async def _write(self, key: str, value: Any, adapter: TypeAdapter) -> None:
        try:
            await self._redis.set(f"{self._prefix}{key}", adapter.dump_json(value), ex=self._ttl)
        except Exception as e:
            cache_logger.error("Redis cache write error", error=e, key=key)

    def get_stats(self) -> dict:
        return {
            "backend": "redis",
            "prefix": self._prefix,
            "inflight": len(self._inflight),
        }


# Global cache instance
_override_cache: Optional[OverrideCache] = None


def get_override_cache() -> OverrideCache:
    """Get or create the global override cache instance."""
    global _override_cache

    if _override_cache is None:
        if settings.CACHE_BACKEND == "redis" and not settings.TESTING:
            try:
                from role_overrides.core.redis import get_redis
                _override_cache = RedisOverrideCache(get_redis())
                cache_logger.info("Override cache initialized with Redis backend")
            except Exception as e:
                cache_logger.warning(f"Failed to initialize Redis override cache: {e}, falling back to in-memory")
                _override_cache = InMemoryOverrideCache()
        else:
            _override_cache = InMemoryOverrideCache()
            cache_logger.info("Override cache initialized with in-memory backend")

    return _override_cache

import asyncio

import pytest
from pydantic import TypeAdapter
from redis.exceptions import ConnectionError as RedisConnectionError

from role_overrides.permissions.cache import (
    InMemoryOverrideCache,
    OverrideCache,
    RedisOverrideCache,
    ROLE_NAMESPACE,
    TREE_NAMESPACE,
    caching_bypassed,
    uncached,
)
from role_overrides.permissions.schemas import OverrideRecord, OverrideTable

pytestmark = pytest.mark.anyio

INT = TypeAdapter(int)


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the cache backend."""

    def __init__(self, fail_reads=False, fail_writes=False, fail_incr=False):
        self.data = {}
        self.ttls = {}
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes
        self.fail_incr = fail_incr

    async def get(self, key):
        if self.fail_reads and "/gen/" not in key and ":gen/" not in key:
            raise RedisConnectionError("read failed")
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        if self.fail_writes:
            raise RedisConnectionError("write failed")
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def incr(self, key):
        if self.fail_incr:
            raise RedisConnectionError("incr failed")
        self.data[key] = int(self.data.get(key, 0)) + 1
        return self.data[key]


def counting(value=1, delay=0.0):
    calls = []

    async def compute():
        calls.append(1)
        if delay:
            await asyncio.sleep(delay)
        return value

    return compute, calls


def test_key_format():
    assert OverrideCache.make_key(ROLE_NAMESPACE, 7, 3) == "role_override_calculation/7/3"
    assert OverrideCache.make_key(TREE_NAMESPACE, 7, 0, "12") == "account_chain/7/0/12"


def test_backends_must_provide_storage_primitives():
    with pytest.raises(TypeError):
        OverrideCache()

    class WithoutWrites(OverrideCache):
        async def generation(self, namespace, ident):
            return 0

        async def bump(self, namespace, ident):
            return 1

        async def _read(self, key, adapter):
            return None

    with pytest.raises(TypeError):
        WithoutWrites()


def test_uncached_context_manager_is_scoped():
    assert caching_bypassed() is False
    with uncached():
        assert caching_bypassed() is True
    assert caching_bypassed() is False


# In-memory backend


async def test_fetch_computes_once_then_hits():
    cache = InMemoryOverrideCache()
    compute, calls = counting(5)

    assert await cache.fetch(ROLE_NAMESPACE, 1, compute, INT) == 5
    assert await cache.fetch(ROLE_NAMESPACE, 1, compute, INT) == 5
    assert len(calls) == 1
    assert cache.get_stats()["entries"] == 1


async def test_bump_makes_old_entries_unreachable():
    cache = InMemoryOverrideCache()
    compute, calls = counting(5)

    await cache.fetch(ROLE_NAMESPACE, 1, compute, INT)
    assert await cache.invalidate_role(1) == 1
    await cache.fetch(ROLE_NAMESPACE, 1, compute, INT)

    assert len(calls) == 2
    # other ids are untouched
    await cache.fetch(ROLE_NAMESPACE, 2, compute, INT)
    await cache.fetch(ROLE_NAMESPACE, 2, compute, INT)
    assert len(calls) == 3


async def test_invalidating_a_tree_purges_its_chains():
    cache = InMemoryOverrideCache()
    compute, calls = counting(1)

    await cache.fetch(TREE_NAMESPACE, 10, compute, INT, suffix="11")
    await cache.fetch(TREE_NAMESPACE, 10, compute, INT, suffix="12")
    assert cache.get_stats()["entries"] == 2

    await cache.invalidate_tree(10)
    assert cache.get_stats()["entries"] == 0


async def test_bypass_skips_read_and_write():
    cache = InMemoryOverrideCache()
    compute, calls = counting(5)

    with uncached():
        await cache.fetch(ROLE_NAMESPACE, 1, compute, INT)
        await cache.fetch(ROLE_NAMESPACE, 1, compute, INT)

    assert len(calls) == 2
    assert cache.get_stats()["entries"] == 0


async def test_concurrent_misses_share_one_computation():
    cache = InMemoryOverrideCache()
    compute, calls = counting(9, delay=0.01)

    results = await asyncio.gather(*(cache.fetch(ROLE_NAMESPACE, 1, compute, INT) for _ in range(5)))

    assert results == [9] * 5
    assert len(calls) == 1
    assert cache.get_stats()["inflight"] == 0


async def test_failed_computation_reaches_every_waiter_and_is_not_cached():
    cache = InMemoryOverrideCache()
    calls = []

    async def explode():
        calls.append(1)
        await asyncio.sleep(0.01)
        raise RuntimeError("store down")

    results = await asyncio.gather(
        *(cache.fetch(ROLE_NAMESPACE, 1, explode, INT) for _ in range(3)),
        return_exceptions=True,
    )

    assert len(calls) == 1
    assert all(isinstance(r, RuntimeError) for r in results)

    compute, _ = counting(4)
    assert await cache.fetch(ROLE_NAMESPACE, 1, compute, INT) == 4


# Redis backend


async def test_redis_round_trips_override_tables():
    client = FakeRedis()
    cache = RedisOverrideCache(client, prefix="t:", ttl=60)
    record = OverrideRecord(id=1, context_id=2, permission="read_forum", role_id=3, enabled=False, locked=True)
    table = OverrideTable.build(3, [record])
    adapter = TypeAdapter(OverrideTable)
    calls = []

    async def compute():
        calls.append(1)
        return table

    assert await cache.fetch(ROLE_NAMESPACE, 3, compute, adapter, suffix="shard0") == table
    # a second instance sharing the same redis sees the entry
    other = RedisOverrideCache(client, prefix="t:", ttl=60)
    cached = await other.fetch(ROLE_NAMESPACE, 3, compute, adapter, suffix="shard0")

    assert cached.for_permission("read_forum")[2].locked is True
    assert len(calls) == 1
    assert client.ttls["t:role_override_calculation/3/0/shard0"] == 60


async def test_redis_invalidation_is_seen_by_every_instance():
    client = FakeRedis()
    first = RedisOverrideCache(client, prefix="t:")
    second = RedisOverrideCache(client, prefix="t:")
    compute, calls = counting(1)

    await first.fetch(ROLE_NAMESPACE, 3, compute, INT)
    await second.invalidate_role(3)
    await first.fetch(ROLE_NAMESPACE, 3, compute, INT)

    assert len(calls) == 2
    assert await first.generation(ROLE_NAMESPACE, 3) == 1


async def test_redis_read_and_write_failures_fall_through_to_compute():
    cache = RedisOverrideCache(FakeRedis(fail_reads=True, fail_writes=True), prefix="t:")
    compute, calls = counting(2)

    assert await cache.fetch(ROLE_NAMESPACE, 3, compute, INT) == 2
    assert await cache.fetch(ROLE_NAMESPACE, 3, compute, INT) == 2
    assert len(calls) == 2


async def test_redis_invalidation_failure_propagates():
    cache = RedisOverrideCache(FakeRedis(fail_incr=True), prefix="t:")

    with pytest.raises(RedisConnectionError):
        await cache.invalidate_role(3)


# Through the service


async def test_role_table_computed_once_for_courses_under_one_root(service, store, default_account, student_role, count_calls):
    courses = [await store.create_course(default_account) for _ in range(2)]
    calls = count_calls(store, "uncached_overrides_for")

    for course in courses:
        assert (await service.permission_for(course, "read_forum", student_role)).enabled is True

    assert len(calls) == 1


async def test_role_table_computed_once_for_repeated_queries(service, store, default_account, student_role, count_calls):
    course = await store.create_course(default_account)
    calls = count_calls(store, "uncached_overrides_for")

    for _ in range(3):
        assert (await service.permission_for(course, "read_forum", student_role)).enabled is True

    assert len(calls) == 1


async def test_separate_roles_are_cached_separately(service, store, default_account, student_role, teacher_role, count_calls):
    course = await store.create_course(default_account)
    calls = count_calls(store, "uncached_overrides_for")

    for role in (student_role, teacher_role):
        assert (await service.permission_for(course, "read_forum", role)).enabled is True

    assert len(calls) == 2


async def test_one_table_serves_different_sub_accounts(service, store, default_account, student_role, count_calls):
    sub = await store.create_account("Sub", default_account)
    await store.create_override(sub, "read_forum", student_role, enabled=False)
    course1 = await store.create_course(default_account)
    course2 = await store.create_course(sub)
    calls = count_calls(store, "uncached_overrides_for")

    assert (await service.permission_for(course1, "read_forum", student_role)).enabled is True
    assert (await service.permission_for(course2, "read_forum", student_role)).enabled is False
    assert len(calls) == 1


async def test_upstream_override_change_invalidates(service, store, default_account, student_role, count_calls):
    sub = await store.create_account("Sub", default_account)
    course = await store.create_course(sub)
    calls = count_calls(store, "uncached_overrides_for")

    assert (await service.permission_for(course, "read_forum", student_role)).enabled is True
    await store.create_override(default_account, "read_forum", student_role, enabled=False)
    assert (await service.permission_for(course, "read_forum", student_role)).enabled is False

    assert len(calls) == 2


async def test_account_chain_change_invalidates(service, store, default_account, student_role, count_calls):
    sub1 = await store.create_account("Sub 1", default_account)
    sub2 = await store.create_account("Sub 2", default_account)
    course = await store.create_course(sub1)
    await store.create_override(sub2, "read_forum", student_role, enabled=False)
    chain_loads = count_calls(service.tree, "_load_chain")

    assert (await service.permission_for(course, "read_forum", student_role)).enabled is True
    await store.set_parent_account(sub1, sub2)
    assert (await service.permission_for(course, "read_forum", student_role)).enabled is False

    assert len(chain_loads) == 2


async def test_no_caching_skips_the_cache(service, store, cache, default_account, teacher_role, count_calls):
    calls = count_calls(store, "uncached_overrides_for")

    await service.permission_for(default_account, "moderate_forum", teacher_role, default_account, True)
    assert len(calls) == 1
    assert cache.get_stats()["entries"] == 0

    with uncached():
        await service.permission_for(default_account, "moderate_forum", teacher_role)
    assert len(calls) == 2
    assert cache.get_stats()["entries"] == 0


def test_global_cache_stays_in_memory_while_testing(monkeypatch):
    from role_overrides.core.config import settings
    from role_overrides.permissions import cache as cache_module

    monkeypatch.setattr(settings, "CACHE_BACKEND", "redis")
    monkeypatch.setattr(settings, "TESTING", True)
    monkeypatch.setattr(cache_module, "_override_cache", None)

    assert isinstance(cache_module.get_override_cache(), InMemoryOverrideCache)

import pytest

from role_overrides.db.enums import BaseRoleType
from role_overrides.db.database import ShardRouter
from role_overrides.permissions.cache import InMemoryOverrideCache
from role_overrides.permissions.plugins import plugin_registry
from role_overrides.permissions.repository import OverrideStore
from role_overrides.permissions.service import RoleOverrideService

# Tests use one on-disk SQLite file per shard, created under pytest's tmp dir, so
# cross-shard reads go through separate engines exactly as they would in production.


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
async def router(tmp_path_factory):
    base = tmp_path_factory.mktemp("shards")
    router = ShardRouter({
        0: f"sqlite+aiosqlite:///{base / 'shard0.db'}",
        1: f"sqlite+aiosqlite:///{base / 'shard1.db'}",
    })
    await router.create_all()

    yield router

    await router.drop_all()
    await router.dispose()


@pytest.fixture
def cache():
    return InMemoryOverrideCache()


@pytest.fixture
async def store(router, cache):
    """Store over emptied shards; every DB-backed test starts from no rows."""
    await router.truncate_all()
    return OverrideStore(router, cache)


@pytest.fixture
def service(store, cache):
    return RoleOverrideService(store, cache)


@pytest.fixture
def plugins():
    with plugin_registry.scoped() as registry:
        yield registry


@pytest.fixture
async def site_admin(store):
    return await store.create_account("Site Admin", site_admin=True)


@pytest.fixture
async def default_account(store, site_admin):
    return await store.create_account("Default Account")


@pytest.fixture
async def admin_role(store, default_account):
    return await store.get_built_in_role(BaseRoleType.account_admin, default_account.global_id)


@pytest.fixture
async def teacher_role(store, default_account):
    return await store.get_built_in_role(BaseRoleType.teacher, default_account.global_id)


@pytest.fixture
async def student_role(store, default_account):
    return await store.get_built_in_role(BaseRoleType.student, default_account.global_id)


@pytest.fixture
def count_calls(monkeypatch):
    """Wrap an async method on an instance and record each call's arguments."""
    def _wrap(obj, name):
        calls = []
        original = getattr(obj, name)

        async def spy(*args, **kwargs):
            calls.append(args)
            return await original(*args, **kwargs)

        monkeypatch.setattr(obj, name, spy)
        return calls

    return _wrap

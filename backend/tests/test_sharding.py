import pytest

from role_overrides.core.config import settings
from role_overrides.db.database import local_of, shard_of, to_global_id
from role_overrides.db.enums import BaseRoleType, Scope
from role_overrides.permissions.exceptions import ShardNotFound

pytestmark = pytest.mark.anyio


def test_global_id_arithmetic():
    gid = to_global_id(1, 42)
    assert gid == settings.SHARD_ID_SPAN + 42
    assert shard_of(gid) == 1
    assert local_of(gid) == 42


async def test_rows_are_stamped_with_their_shard(store, site_admin):
    account = await store.create_account("Shard One", shard_id=1)
    sub = await store.create_account("Shard One Sub", account)

    assert account.shard_id == 1
    assert sub.shard_id == 1
    assert shard_of(sub.global_id) == 1
    assert sub.root_account_id == account.global_id
    assert (await store.get_account(sub.global_id)).name == "Shard One Sub"


async def test_overrides_found_on_another_shard(service, store, admin_role):
    account = await store.create_account("Shard One", shard_id=1)
    override = await store.create_override(account, "become_user", admin_role, enabled=False)
    assert shard_of(override.global_id) == 1

    assert (await service.permission_for(account, "become_user", admin_role)).enabled is False


async def test_site_admin_overrides_reach_other_shards(service, store, site_admin):
    role = await store.create_role(site_admin, "custom", BaseRoleType.account_membership)
    await store.create_override(site_admin, "become_user", role, enabled=True)
    account = await store.create_account("Shard One", shard_id=1)

    result = await service.permission_for(account, "become_user", role)
    assert result.enabled is True
    assert await service.enabled_for(account, "become_user", role) == (Scope.self, Scope.descendants)


async def test_unknown_shard_is_an_error(router, store):
    assert router.local_id(to_global_id(1, 5)) == 5
    assert router.shard_for(to_global_id(1, 5)) == 1
    with pytest.raises(ShardNotFound):
        router.session(7)
    with pytest.raises(ShardNotFound):
        await store.get_account(to_global_id(7, 1))

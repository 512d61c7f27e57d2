from typing import Iterable, Optional

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError

from role_overrides.core.logging import store_logger
from role_overrides.db.database import ShardRouter, local_of, shard_of
from role_overrides.db.enums import BaseRoleType, ContextType, WorkflowState
from role_overrides.db.models import Account, Course, Role, RoleOverride, Setting, PluginSetting, utcnow
from role_overrides.permissions.cache import OverrideCache
from role_overrides.permissions.exceptions import InvalidOverrideContext, InvalidTreeChange, OverrideConflict
from role_overrides.permissions.schemas import OverrideRecord, OverrideTable


class OverrideStore:
    """
    Persistence for accounts, courses, roles, overrides and settings.

    Every write that can change a resolution result invalidates the matching
    cache generation before returning.
    """

    def __init__(self, router: ShardRouter, cache: OverrideCache):
        self.router = router
        self.cache = cache

    # Accounts

    async def create_account(
        self,
        name: str,
        parent: Optional[Account] = None,
        *,
        shard_id: Optional[int] = None,
        site_admin: bool = False,
        settings: Optional[dict] = None,
    ) -> Account:
        if parent is not None:
            root_id = parent.resolved_root_account_id
            if shard_id is None:
                shard_id = self.router.shard_for(root_id)
        else:
            root_id = None
            shard_id = shard_id or 0

        account = Account(
            name=name,
            parent_account_id=parent.global_id if parent is not None else None,
            root_account_id=root_id,
            site_admin=site_admin,
            settings=dict(settings or {}),
        )
        async with self.router.session(shard_id) as session:
            session.add(account)
            await session.commit()
        if site_admin:
            # the site admin heads every chain, so every cached chain is stale
            for tree_root_id in await self.root_account_ids():
                await self.cache.invalidate_tree(tree_root_id)
        return account

    async def get_account(self, account_id: int) -> Optional[Account]:
        async with self.router.session_for(account_id) as session:
            return await session.get(Account, local_of(account_id))

    async def root_account_ids(self) -> list[int]:
        """Global ids of every root account on every shard."""
        root_ids: list[int] = []
        for shard_id in self.router.shard_ids:
            async with self.router.session(shard_id) as session:
                result = await session.execute(select(Account).where(Account.parent_account_id.is_(None)))
                root_ids.extend(account.global_id for account in result.scalars())
        return root_ids

    async def get_site_admin(self) -> Optional[Account]:
        async with self.router.session(0) as session:
            result = await session.execute(select(Account).where(Account.site_admin.is_(True)))
            return result.scalars().first()

    async def update_account_settings(self, account: Account, **values) -> Account:
        async with self.router.session_for(account.global_id) as session:
            account = await session.get(Account, account.id)
            account.settings = {**(account.settings or {}), **values}
            await session.commit()
        return account

    async def set_parent_account(self, account: Account, new_parent: Account) -> Account:
        """Move `account` (and its subtree) under `new_parent` within the same root."""
        if account.is_root:
            raise InvalidTreeChange("root accounts cannot be re-parented")
        if new_parent.resolved_root_account_id != account.resolved_root_account_id:
            raise InvalidTreeChange("accounts cannot move between roots")

        # new_parent must not sit inside the subtree being moved
        ancestor_id: Optional[int] = new_parent.global_id
        while ancestor_id is not None:
            if ancestor_id == account.global_id:
                raise InvalidTreeChange(f"{new_parent!r} is a descendant of {account!r}")
            ancestor = await self.get_account(ancestor_id)
            ancestor_id = ancestor.parent_account_id if ancestor is not None else None

        async with self.router.session_for(account.global_id) as session:
            account = await session.get(Account, account.id)
            account.parent_account_id = new_parent.global_id
            await session.commit()

        await self.cache.invalidate_tree(account.resolved_root_account_id)
        store_logger.info(
            "account re-parented",
            account_id=account.global_id,
            parent_account_id=new_parent.global_id,
        )
        return account

    # Courses

    async def create_course(self, account: Account, name: str = "Course", *, local_id: Optional[int] = None) -> Course:
        course = Course(
            name=name,
            account_id=account.global_id,
            root_account_id=account.resolved_root_account_id,
        )
        if local_id is not None:
            course.id = local_id
        async with self.router.session_for(account.resolved_root_account_id) as session:
            session.add(course)
            await session.commit()
        return course

    async def get_course(self, course_id: int) -> Optional[Course]:
        async with self.router.session_for(course_id) as session:
            return await session.get(Course, local_of(course_id))

    # Roles

    async def create_role(
        self,
        account: Account,
        name: str,
        base_role_type: BaseRoleType,
        *,
        built_in: bool = False,
    ) -> Role:
        role = Role(
            name=name,
            base_role_type=BaseRoleType(base_role_type).value,
            account_id=account.global_id,
            root_account_id=account.resolved_root_account_id,
            built_in=built_in,
        )
        async with self.router.session_for(account.resolved_root_account_id) as session:
            session.add(role)
            await session.commit()
        return role

    async def get_role(self, role_id: int) -> Optional[Role]:
        async with self.router.session_for(role_id) as session:
            return await session.get(Role, local_of(role_id))

    async def get_built_in_role(self, base_role_type: BaseRoleType, root_account_id: int) -> Role:
        """Built-in roles are singletons per root account, created on first use."""
        base_role_type = BaseRoleType(base_role_type)
        async with self.router.session_for(root_account_id) as session:
            result = await session.execute(
                select(Role)
                .where(Role.root_account_id == root_account_id)
                .where(Role.base_role_type == base_role_type.value)
                .where(Role.built_in.is_(True))
            )
            role = result.scalars().first()
        if role is not None:
            return role

        root = await self.get_account(root_account_id)
        if root is None:
            raise InvalidOverrideContext(f"root account {root_account_id} does not exist")
        try:
            return await self.create_role(root, base_role_type.value, base_role_type, built_in=True)
        except IntegrityError:
            # another caller created it first
            return await self.get_built_in_role(base_role_type, root_account_id)

    async def touch_role(self, role_id: int) -> None:
        """Bump the role's modification marker and drop its cached overrides."""
        async with self.router.session_for(role_id) as session:
            await session.execute(
                update(Role).where(Role.id == local_of(role_id)).values(updated_at=utcnow())
            )
            await session.commit()
        await self.cache.invalidate_role(role_id)

    async def deactivate_role(self, role: Role) -> Role:
        async with self.router.session_for(role.global_id) as session:
            role = await session.get(Role, role.id)
            role.workflow_state = WorkflowState.inactive.value
            await session.commit()
        await self.touch_role(role.global_id)
        return role

    # Overrides

    async def find_override(self, context: Account, permission: str, role: Role) -> Optional[RoleOverride]:
        if not isinstance(context, Account):
            raise InvalidOverrideContext(f"overrides attach to accounts, not {type(context).__name__}")
        async with self.router.session_for(context.global_id) as session:
            result = await session.execute(
                select(RoleOverride)
                .where(RoleOverride.context_id == context.global_id)
                .where(RoleOverride.context_type == ContextType.account.value)
                .where(RoleOverride.permission == str(permission))
                .where(RoleOverride.role_id == role.global_id)
            )
            return result.scalar_one_or_none()

    async def overrides_at(self, context: Account) -> list[RoleOverride]:
        async with self.router.session_for(context.global_id) as session:
            result = await session.execute(
                select(RoleOverride)
                .where(RoleOverride.context_id == context.global_id)
                .order_by(RoleOverride.id)
            )
            return list(result.scalars().all())

    async def create_override(
        self,
        context: Account,
        permission: str,
        role: Role,
        *,
        enabled: bool = True,
        locked: bool = False,
        applies_to_self: bool = True,
        applies_to_descendants: bool = True,
        root_account_id: Optional[int] = None,
    ) -> RoleOverride:
        if not isinstance(context, Account):
            raise InvalidOverrideContext(f"overrides attach to accounts, not {type(context).__name__}")
        override = RoleOverride(
            context_id=context.global_id,
            permission=str(permission),
            role_id=role.global_id,
            enabled=enabled,
            locked=locked,
            applies_to_self=applies_to_self,
            applies_to_descendants=applies_to_descendants,
            root_account_id=root_account_id,
        )
        return await self.save_override(override, context)

    async def save_override(self, override: RoleOverride, context: Optional[Account] = None) -> RoleOverride:
        """Insert or update an override, then touch its role."""
        if override.root_account_id is None:
            if context is None:
                context = await self.get_account(override.context_id)
            if context is None:
                raise InvalidOverrideContext(f"account {override.context_id} does not exist")
            override.root_account_id = context.resolved_root_account_id

        async with self.router.session_for(override.context_id) as session:
            session.add(override)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise OverrideConflict(override.context_id, override.permission, override.role_id) from e

        await self.touch_role(override.role_id)
        store_logger.debug(
            "role override saved",
            permission=override.permission,
            role_id=override.role_id,
            context_id=override.context_id,
        )
        return override

    async def delete_override(self, override: RoleOverride) -> None:
        async with self.router.session_for(override.context_id) as session:
            await session.execute(delete(RoleOverride).where(RoleOverride.id == override.id))
            await session.commit()
        await self.touch_role(override.role_id)
        store_logger.debug(
            "role override deleted",
            permission=override.permission,
            role_id=override.role_id,
            context_id=override.context_id,
        )

    async def uncached_overrides_for(self, role: Role, shard_ids: Iterable[int]) -> OverrideTable:
        """Read every override for `role` from each listed shard."""
        records: list[OverrideRecord] = []
        for shard_id in sorted(set(shard_ids)):
            async with self.router.session(shard_id) as session:
                result = await session.execute(
                    select(RoleOverride).where(RoleOverride.role_id == role.global_id)
                )
                records.extend(OverrideRecord.from_model(o) for o in result.scalars().all())
        return OverrideTable.build(role.global_id, records)

    # Settings

    async def get_setting(self, name: str, default: Optional[str] = None) -> Optional[str]:
        async with self.router.session(0) as session:
            result = await session.execute(select(Setting.value).where(Setting.name == name))
            value = result.scalar_one_or_none()
        return default if value is None else value

    async def set_setting(self, name: str, value: Optional[str]) -> None:
        async with self.router.session(0) as session:
            result = await session.execute(select(Setting).where(Setting.name == name))
            setting = result.scalar_one_or_none()
            if setting is None:
                session.add(Setting(name=name, value=value))
            else:
                setting.value = value
            await session.commit()

    async def save_plugin_setting(self, name: str, settings: Optional[dict] = None, *, disabled: bool = False) -> PluginSetting:
        async with self.router.session(0) as session:
            result = await session.execute(select(PluginSetting).where(PluginSetting.name == name))
            plugin_setting = result.scalar_one_or_none()
            if plugin_setting is None:
                plugin_setting = PluginSetting(name=name)
                session.add(plugin_setting)
            plugin_setting.settings = dict(settings or {})
            plugin_setting.disabled = disabled
            await session.commit()
        return plugin_setting

    async def plugin_settings(self, names: Iterable[str]) -> dict[str, PluginSetting]:
        names = list(names)
        if not names:
            return {}
        async with self.router.session(0) as session:
            result = await session.execute(select(PluginSetting).where(PluginSetting.name.in_(names)))
            return {ps.name: ps for ps in result.scalars().all()}


def shard_ids_for(*global_ids: Optional[int]) -> set[int]:
    return {shard_of(gid) for gid in global_ids if gid is not None}

"""
Role override service.

Entry point for callers: resolves permissions (`permission_for`, `enabled_for`),
lists what an administrator may edit (`manageable_permissions`) and applies
administrative changes (`manage_override`).
"""
from contextlib import nullcontext
from typing import Any, Mapping, Optional

from pydantic import TypeAdapter

from role_overrides.core.config import settings
from role_overrides.core.logging import engine_logger, store_logger, log_context, log_operation
from role_overrides.db.database import shard_of
from role_overrides.db.enums import BaseRoleType, ContextType, Scope
from role_overrides.db.models import Account, Role, RoleOverride
from role_overrides.permissions.cache import OverrideCache, ROLE_NAMESPACE, uncached
from role_overrides.permissions.exceptions import InvalidOverrideContext
from role_overrides.permissions.plugins import PluginRegistry, plugin_registry
from role_overrides.permissions.predicates import NoPredicate, PredicateContext, parse_allow_list
from role_overrides.permissions.registry import PermissionDefinition, PermissionRegistry, permission_registry
from role_overrides.permissions.repository import OverrideStore, shard_ids_for
from role_overrides.permissions.resolution import ResolutionResult, enabled_scopes, resolve
from role_overrides.permissions.schemas import ChainNode, OverrideTable
from role_overrides.permissions.tree import ContextTreeResolver, context_ref

_TABLE_ADAPTER = TypeAdapter(OverrideTable)


def _override_fields(service, context, role, permission, *args, **kwargs) -> dict:
    return {
        "context_id": getattr(context, "global_id", None),
        "role_id": role.global_id,
        "permission": permission,
        "shard": shard_of(role.global_id),
    }


class RoleOverrideService:
    def __init__(
        self,
        store: OverrideStore,
        cache: OverrideCache,
        registry: PermissionRegistry = permission_registry,
        plugins: PluginRegistry = plugin_registry,
    ):
        self.store = store
        self.cache = cache
        self.registry = registry
        self.plugins = plugins
        self.tree = ContextTreeResolver(store, cache)

    # Resolution

    async def permission_for(
        self,
        context: Any,
        permission: str,
        role: Role,
        role_context: Any = None,
        no_caching: bool = False,
    ) -> ResolutionResult:
        """
        Effective state of `permission` for `role` at `context`.

        `role_context` is where the role is held (an account for admins, the
        course for enrollments); it defaults to `context`. With `no_caching`
        nothing is read from or written to the cache.
        """
        definition = self.registry.definition_for(permission)
        with log_context(role_id=role.global_id, permission=definition.key, shard=shard_of(role.global_id)):
            with uncached() if no_caching else nullcontext():
                return await self._resolve(definition, context, role, role_context)

    async def enabled_for(self, context: Any, permission: str, role: Role, role_context: Any = None) -> tuple[Scope, ...]:
        """Scopes in which `permission` is granted when `context` is the point of use."""
        result = await self.permission_for(context, permission, role, role_context)
        return enabled_scopes(result.enabled)

    async def _resolve(self, definition: PermissionDefinition, context: Any, role: Role, role_context: Any) -> ResolutionResult:
        chain = await self.tree.ancestor_chain(context)
        overrides = {}
        if chain:
            table = await self.overrides_for(role, chain[-1].root_id)
            overrides = table.for_permission(definition.key)

        predicate_ctx = PredicateContext(
            account_settings=await self._root_settings(definition, chain),
            role_name=role.name,
            allowed_role_names=await self._allow_list(definition),
        )
        result = resolve(
            definition,
            role,
            chain,
            overrides,
            context=context_ref(context),
            role_context=context_ref(role_context),
            account_allows=definition.account_allows.evaluate(predicate_ctx),
            predicate_ctx=predicate_ctx,
        )
        engine_logger.debug(
            "permission resolved",
            enabled=str(result.enabled),
            locked=result.locked,
            explicit=result.explicit,
        )
        return result

    async def overrides_for(self, role: Role, root_account_id: int) -> OverrideTable:
        """
        All overrides for `role` visible from the tree rooted at `root_account_id`.

        Reads the role's own shard, the requesting root's shard and the site
        admin shard. One table is shared by every context under that root.
        """
        requesting_shard = shard_of(root_account_id)
        shard_ids = shard_ids_for(role.global_id, role.root_account_id, root_account_id) | {0}
        return await self.cache.fetch(
            ROLE_NAMESPACE,
            role.global_id,
            lambda: self.store.uncached_overrides_for(role, shard_ids),
            _TABLE_ADAPTER,
            suffix=f"shard{requesting_shard}",
        )

    async def _root_settings(self, definition: PermissionDefinition, chain: list[ChainNode]) -> Mapping[str, Any]:
        if isinstance(definition.account_allows, NoPredicate) or not chain:
            return {}
        root = await self.store.get_account(chain[-1].root_id)
        return dict(root.settings or {}) if root is not None else {}

    async def _allow_list(self, definition: PermissionDefinition) -> frozenset[str]:
        if not definition.restricted_to_allow_list:
            return frozenset()
        return parse_allow_list(await self.store.get_setting(settings.ALLOWED_SITE_ADMIN_ROLES_SETTING))

    # Administration

    async def manageable_permissions(
        self,
        context: Any,
        base_role_type: Optional[BaseRoleType] = None,
    ) -> Mapping[str, PermissionDefinition]:
        """Permissions an administrator can edit at `context`, gated by live plugin state."""
        ref = context_ref(context)
        is_course = ref is not None and ref.kind == ContextType.course
        is_account = isinstance(context, Account)
        return self.registry.manageable(
            PredicateContext(enabled_plugins=await self.enabled_plugins()),
            is_course=is_course,
            is_root=is_account and context.is_root,
            is_site_admin=is_account and bool(context.site_admin),
            base_role_type=BaseRoleType(base_role_type) if base_role_type is not None else None,
        )

    async def enabled_plugins(self) -> frozenset[str]:
        """Plugin ids that are registered and have an enabled PluginSetting row."""
        registered = [pid for pid in self.registry.plugin_ids() if pid in self.plugins]
        plugin_settings = await self.store.plugin_settings(registered)
        return frozenset(pid for pid, setting in plugin_settings.items() if setting.enabled)

    @log_operation("manage_override", store_logger, bind=_override_fields)
    async def manage_override(
        self,
        context: Account,
        role: Role,
        permission: str,
        override: Optional[bool] = None,
        locked: Optional[bool] = None,
        applies_to_self: Optional[bool] = None,
        applies_to_descendants: Optional[bool] = None,
    ) -> Optional[RoleOverride]:
        """
        Create, update or delete the override at exactly (context, permission, role).

        Only supplied fields change. When `override` is None and `locked` is
        falsy an existing override is deleted, and a missing one is not created.
        """
        if not isinstance(context, Account):
            raise InvalidOverrideContext(f"overrides attach to accounts, not {type(context).__name__}")
        definition = self.registry.definition_for(permission)
        existing = await self.store.find_override(context, definition.key, role)
        keep = override is not None or bool(locked)

        if existing is not None:
            if not keep:
                await self.store.delete_override(existing)
                return None
            if override is not None:
                existing.enabled = override
            if locked is not None:
                existing.locked = locked
            if applies_to_self is not None:
                existing.applies_to_self = applies_to_self
            if applies_to_descendants is not None:
                existing.applies_to_descendants = applies_to_descendants
            return await self.store.save_override(existing, context)

        if not keep:
            return None
        if override is None:
            override = definition.default_for(BaseRoleType(role.base_role_type))
        return await self.store.create_override(
            context,
            definition.key,
            role,
            enabled=override,
            locked=bool(locked),
            applies_to_self=True if applies_to_self is None else applies_to_self,
            applies_to_descendants=True if applies_to_descendants is None else applies_to_descendants,
        )


# Global service instance
_service: Optional[RoleOverrideService] = None


def get_role_override_service() -> RoleOverrideService:
    """Get or create the process-wide service on the configured router and cache."""
    global _service

    if _service is None:
        from role_overrides.db.database import get_router
        from role_overrides.permissions.cache import get_override_cache

        cache = get_override_cache()
        _service = RoleOverrideService(OverrideStore(get_router(), cache), cache)
    return _service

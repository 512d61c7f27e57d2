from typing import Any, Optional

from pydantic import TypeAdapter

from role_overrides.core.logging import engine_logger
from role_overrides.db.enums import ContextType
from role_overrides.permissions.cache import OverrideCache, TREE_NAMESPACE
from role_overrides.permissions.repository import OverrideStore
from role_overrides.permissions.schemas import ChainNode, ContextRef

_CHAIN_ADAPTER = TypeAdapter(list[ChainNode])


def context_ref(context: Any) -> Optional[ContextRef]:
    """Type-tagged identity of an account, a course, or any other context object."""
    if context is None:
        return None
    if isinstance(context, ContextRef):
        return context
    kind = ContextType(getattr(context, "context_type", ContextType.other))
    ident = getattr(context, "global_id", None)
    if ident is None:
        ident = getattr(context, "id", None)
    return ContextRef(kind, ident)


def owning_account_id(context: Any) -> Optional[int]:
    """The account a context hangs off; an account owns itself."""
    return getattr(context, "account_id", None)


def root_account_id_of(context: Any) -> Optional[int]:
    root_id = getattr(context, "resolved_root_account_id", None)
    if root_id is None:
        root_id = getattr(context, "root_account_id", None)
    return root_id


class ContextTreeResolver:
    """
    Expands a context into its account chain, root first.

    The site admin account heads every chain that does not already start with
    it. Courses are never chain members: a course resolves through its own
    `account_id`, never by looking up an account with the course's id.
    Chains are cached per start account under the tree generation of its root.
    """

    def __init__(self, store: OverrideStore, cache: OverrideCache):
        self.store = store
        self.cache = cache

    async def ancestor_chain(self, context: Any) -> list[ChainNode]:
        start_id = owning_account_id(context)
        if start_id is None:
            engine_logger.debug("context has no owning account", context=repr(context))
            return []

        root_id = root_account_id_of(context)
        if root_id is None:
            return await self._load_chain(start_id)
        return await self.cache.fetch(
            TREE_NAMESPACE,
            root_id,
            lambda: self._load_chain(start_id),
            _CHAIN_ADAPTER,
            suffix=str(start_id),
        )

    async def _load_chain(self, start_id: int) -> list[ChainNode]:
        nodes: list[ChainNode] = []
        seen: set[int] = set()
        account_id: Optional[int] = start_id
        while account_id is not None:
            if account_id in seen:
                engine_logger.warning("account chain loops, truncating", account_id=account_id)
                break
            seen.add(account_id)
            account = await self.store.get_account(account_id)
            if account is None:
                break
            nodes.append(ChainNode.from_account(account))
            account_id = account.parent_account_id
        nodes.reverse()

        if nodes and not nodes[0].site_admin:
            site_admin = await self.store.get_site_admin()
            if site_admin is not None:
                nodes.insert(0, ChainNode.from_account(site_admin))
        return nodes

"""
Permission resolution.

A pure fold over an account chain: registry default first, then each override
from the root account down to the queried context. Nothing here touches storage;
the service gathers the chain, the overrides and the predicate inputs and hands
them in.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Mapping, Optional, Sequence, Union

from role_overrides.db.enums import AccountOnly, BaseRoleType, Scope
from role_overrides.permissions.predicates import AllowListCheck, PredicateContext
from role_overrides.permissions.registry import PermissionDefinition
from role_overrides.permissions.schemas import ChainNode, ContextRef, OverrideRecord

FULL_SCOPE: tuple[Scope, ...] = (Scope.self, Scope.descendants)

Enabled = Union[bool, tuple[Scope, ...]]


@dataclass
class ResolutionResult:
    """Effective state of one permission for one role at one context."""
    permission: str
    enabled: Enabled
    locked: bool
    explicit: bool
    prior_default: bool
    account_allows: bool
    base_role_type: BaseRoleType
    role_id: int
    prior_enabled: bool = False  # value inherited from the parent context
    readonly: bool = False  # locked by an ancestor, not editable here
    context_id: Optional[int] = None  # account holding the winning override

    @property
    def is_grantable(self) -> bool:
        """Whether a grant check treating this context as the point of use succeeds."""
        return self.account_allows and Scope.self in enabled_scopes(self.enabled)

    def __getitem__(self, item: str):
        return getattr(self, item)

    def as_dict(self) -> dict:
        return asdict(self)


def enabled_scopes(enabled: Enabled) -> tuple[Scope, ...]:
    """Expand a resolution's `enabled` value to the scopes it covers."""
    if enabled is True:
        return FULL_SCOPE
    if not enabled:
        return ()
    return tuple(enabled)


def scope_tag(applies_to_self: bool, applies_to_descendants: bool) -> Enabled:
    if applies_to_self and applies_to_descendants:
        return True
    tag = []
    if applies_to_self:
        tag.append(Scope.self)
    if applies_to_descendants:
        tag.append(Scope.descendants)
    return tuple(tag) if tag else False


@dataclass
class _FoldState:
    enabled: bool
    locked: bool
    explicit: bool = False
    prior_default: bool = True
    prior_enabled: bool = False
    source: Optional[OverrideRecord] = None
    source_is_terminal: bool = False


def effective_base_role(
    definition: PermissionDefinition,
    role,
    *,
    site_admin_id: Optional[int],
    context_is_site_admin: bool,
    predicate_ctx: PredicateContext,
) -> tuple[BaseRoleType, bool]:
    """
    Base role type whose defaults apply, and whether the default is suppressed.

    Custom account roles owned by the site admin account are checked against the
    allow-list for restricted permissions: listed roles take AccountAdmin
    defaults away from site admin, unlisted roles default to disabled.
    """
    base = BaseRoleType(role.base_role_type)
    if not definition.restricted_to_allow_list:
        return base, False
    if site_admin_id is None or role.root_account_id != site_admin_id:
        return base, False
    if role.built_in or not base.is_account_type:
        return base, False
    if not AllowListCheck().evaluate(predicate_ctx):
        return base, True
    if context_is_site_admin:
        return base, False
    return BaseRoleType.account_admin, False


def placement_allows(
    definition: PermissionDefinition,
    base: BaseRoleType,
    role,
    *,
    site_admin_id: Optional[int],
    role_context_is_root: bool,
) -> bool:
    account_only = definition.account_only
    if account_only == AccountOnly.none:
        return True
    if not base.is_account_type:
        return False
    if account_only == AccountOnly.site_admin:
        return site_admin_id is not None and role.root_account_id == site_admin_id
    if account_only == AccountOnly.root:
        return role_context_is_root
    return True


def resolve(
    definition: PermissionDefinition,
    role,
    chain: Sequence[ChainNode],
    overrides: Mapping[int, OverrideRecord],
    *,
    context: Optional[ContextRef],
    role_context: Optional[ContextRef] = None,
    account_allows: bool = True,
    predicate_ctx: Optional[PredicateContext] = None,
) -> ResolutionResult:
    """
    Fold the registry default and `overrides` (keyed by account id) down `chain`.

    `context` is the queried context and `role_context` the node the role is
    held at (defaults to `context`). Both are type-tagged so a course never
    matches an account with the same numeric id.
    """
    predicate_ctx = predicate_ctx or PredicateContext()
    role_context = role_context or context
    site_admin = chain[0] if chain and chain[0].site_admin else None
    site_admin_id = site_admin.id if site_admin is not None else None
    context_is_site_admin = site_admin is not None and context == site_admin.ref
    role_context_node = next((n for n in chain if n.ref == role_context), None)

    base, suppressed = effective_base_role(
        definition,
        role,
        site_admin_id=site_admin_id,
        context_is_site_admin=context_is_site_admin,
        predicate_ctx=predicate_ctx,
    )

    enabled = definition.default_for(base) and not suppressed
    locked = not definition.is_available_to(base)
    if not placement_allows(
        definition,
        base,
        role,
        site_admin_id=site_admin_id,
        role_context_is_root=role_context_node is not None and role_context_node.is_root,
    ):
        enabled = False
        locked = True

    state = _FoldState(enabled=enabled, locked=locked, prior_enabled=enabled)
    # a lock from the registry or an ancestor, or a grant at the role context, stops the fold
    blocked = locked
    hit_role_context = False

    for node in chain:
        record = overrides.get(node.id)
        is_terminal = node.ref == context

        if record is None or blocked:
            state.prior_enabled = state.enabled
            state.prior_default = True
            state.explicit = False
        else:
            previous = state.enabled
            state.enabled = record.enabled
            state.locked = record.locked
            state.explicit = is_terminal
            state.prior_enabled = previous
            state.prior_default = record.enabled == previous
            state.source = record
            state.source_is_terminal = is_terminal
            if record.locked:
                blocked = True

        if node.ref == role_context:
            hit_role_context = True
        if hit_role_context and state.enabled:
            blocked = True

    if not state.enabled:
        final: Enabled = False
    elif state.source is None:
        final = True
    elif state.source_is_terminal:
        final = scope_tag(state.source.applies_to_self, state.source.applies_to_descendants)
    else:
        # inherited from an ancestor: counts in full here if it reaches descendants
        final = True if state.source.applies_to_descendants else False

    return ResolutionResult(
        permission=definition.key,
        enabled=final,
        locked=state.locked,
        explicit=state.explicit,
        prior_default=state.prior_default,
        account_allows=account_allows,
        base_role_type=base,
        role_id=role.global_id,
        prior_enabled=state.prior_enabled,
        readonly=state.locked and not state.source_is_terminal,
        context_id=state.source.context_id if state.source is not None else None,
    )

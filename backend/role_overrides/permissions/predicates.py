"""
Gating predicates attached to permission definitions.

Each predicate kind is a frozen dataclass evaluated against a PredicateContext that
the caller has already populated from the settings store and plugin settings, so
evaluation itself never touches storage.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Union


@dataclass(frozen=True)
class PredicateContext:
    """Everything a predicate may consult, fetched up front."""

    account_settings: Mapping[str, Any] = field(default_factory=dict)
    enabled_plugins: frozenset[str] = frozenset()
    role_name: str | None = None
    allowed_role_names: frozenset[str] = frozenset()


@dataclass(frozen=True)
class NoPredicate:
    def evaluate(self, ctx: PredicateContext) -> bool:
        return True


@dataclass(frozen=True)
class SettingLookup:
    """True when the root account's settings map holds a truthy value for `key`."""

    key: str

    def evaluate(self, ctx: PredicateContext) -> bool:
        return bool(ctx.account_settings.get(self.key))


@dataclass(frozen=True)
class PluginEnabledCheck:
    plugin_id: str

    def evaluate(self, ctx: PredicateContext) -> bool:
        return self.plugin_id in ctx.enabled_plugins


@dataclass(frozen=True)
class AllowListCheck:
    """True when the role's name is on the custom site admin allow-list."""

    def evaluate(self, ctx: PredicateContext) -> bool:
        return ctx.role_name is not None and ctx.role_name in ctx.allowed_role_names


Predicate = Union[NoPredicate, SettingLookup, PluginEnabledCheck, AllowListCheck]


def parse_allow_list(raw: str | None) -> frozenset[str]:
    """Split the comma separated setting value; names may contain spaces and punctuation."""
    if not raw:
        return frozenset()
    return frozenset(name.strip() for name in raw.split(",") if name.strip())

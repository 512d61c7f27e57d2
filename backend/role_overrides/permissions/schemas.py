from typing import Dict, List, Optional, NamedTuple

from pydantic import BaseModel, ConfigDict

from role_overrides.db.enums import ContextType


class ContextRef(NamedTuple):
    """Type-tagged identity; a course never equals an account with the same id."""
    kind: ContextType
    id: int


class OverrideRecord(BaseModel):
    """Detached, cacheable copy of a RoleOverride row."""
    model_config = ConfigDict(frozen=True)

    id: int
    context_id: int
    permission: str
    role_id: int
    enabled: bool
    locked: bool
    applies_to_self: bool = True
    applies_to_descendants: bool = True

    @classmethod
    def from_model(cls, override) -> "OverrideRecord":
        return cls(
            id=override.global_id,
            context_id=override.context_id,
            permission=override.permission,
            role_id=override.role_id,
            enabled=override.enabled,
            locked=override.locked,
            applies_to_self=override.applies_to_self,
            applies_to_descendants=override.applies_to_descendants,
        )


class OverrideTable(BaseModel):
    """All overrides for one role, indexed by permission then context id."""

    role_id: int
    overrides: Dict[str, Dict[int, OverrideRecord]] = {}

    @classmethod
    def build(cls, role_id: int, records: List[OverrideRecord]) -> "OverrideTable":
        table: Dict[str, Dict[int, OverrideRecord]] = {}
        for record in records:
            table.setdefault(record.permission, {})[record.context_id] = record
        return cls(role_id=role_id, overrides=table)

    def for_permission(self, permission: str) -> Dict[int, OverrideRecord]:
        return self.overrides.get(permission, {})

    def __len__(self) -> int:
        return sum(len(v) for v in self.overrides.values())


class ChainNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    parent_id: Optional[int] = None
    root_id: int
    site_admin: bool = False

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def ref(self) -> ContextRef:
        return ContextRef(ContextType.account, self.id)

    @classmethod
    def from_account(cls, account) -> "ChainNode":
        return cls(
            id=account.global_id,
            name=account.name,
            parent_id=account.parent_account_id,
            root_id=account.resolved_root_account_id,
            site_admin=bool(account.site_admin),
        )

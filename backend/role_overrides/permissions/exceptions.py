class RoleOverrideError(Exception):
    """Base class for errors raised by the override engine."""


class UnknownPermission(RoleOverrideError, KeyError):
    def __init__(self, permission: str):
        self.permission = permission
        super().__init__(f"Unknown permission: {permission}")

    def __str__(self):
        return self.args[0]


class OverrideConflict(RoleOverrideError):
    """A concurrent write already created an override for this (context, permission, role)."""

    def __init__(self, context_id: int, permission: str, role_id: int):
        self.context_id = context_id
        self.permission = permission
        self.role_id = role_id
        super().__init__(
            f"Override already exists for permission={permission} role={role_id} context={context_id}"
        )


class ShardNotFound(RoleOverrideError):
    def __init__(self, shard_id: int):
        self.shard_id = shard_id
        super().__init__(f"Shard {shard_id} is not configured")


class InvalidOverrideContext(RoleOverrideError, ValueError):
    """Overrides attach to accounts only."""


class InvalidTreeChange(RoleOverrideError, ValueError):
    """Rejected account re-parenting."""

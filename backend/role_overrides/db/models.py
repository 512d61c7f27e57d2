from datetime import datetime, timezone

from sqlalchemy import Column, Integer, BigInteger, String, Boolean, DateTime, Text, JSON, Index, UniqueConstraint

from role_overrides.db.database import Base, to_global_id
from role_overrides.db.enums import BaseRoleType, ContextType, WorkflowState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ShardedMixin:
    """Rows carry the shard they were written to; references between rows use global ids."""

    shard_id = Column(Integer, nullable=False)

    @property
    def global_id(self) -> int:
        return to_global_id(self.shard_id, self.id)


class Account(ShardedMixin, Base):
    __tablename__ = "accounts"
    __table_args__ = (
        Index("ix_accounts_parent_account_id", "parent_account_id"),
        Index("ix_accounts_root_account_id", "root_account_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    parent_account_id = Column(BigInteger, nullable=True)  # Null for roots
    root_account_id = Column(BigInteger, nullable=True)  # Null for roots
    site_admin = Column(Boolean, default=False, nullable=False)
    settings = Column(JSON, default=dict, nullable=False)
    workflow_state = Column(String(20), default=WorkflowState.active.value, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    context_type = ContextType.account

    @property
    def is_root(self) -> bool:
        return self.parent_account_id is None

    @property
    def resolved_root_account_id(self) -> int:
        return self.root_account_id if self.root_account_id is not None else self.global_id

    @property
    def account_id(self) -> int:
        return self.global_id

    def __repr__(self):
        return f"<Account {self.global_id} {self.name!r}>"


class Course(ShardedMixin, Base):
    __tablename__ = "courses"
    __table_args__ = (
        Index("ix_courses_account_id", "account_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    account_id = Column(BigInteger, nullable=False)
    root_account_id = Column(BigInteger, nullable=False)
    workflow_state = Column(String(20), default=WorkflowState.active.value, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    context_type = ContextType.course

    @property
    def resolved_root_account_id(self) -> int:
        return self.root_account_id

    def __repr__(self):
        return f"<Course {self.global_id} {self.name!r}>"


class Role(ShardedMixin, Base):
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("root_account_id", "name", name="uq_roles_root_account_name"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    base_role_type = Column(String(50), nullable=False)
    account_id = Column(BigInteger, nullable=False)
    root_account_id = Column(BigInteger, nullable=False)
    built_in = Column(Boolean, default=False, nullable=False)
    workflow_state = Column(String(20), default=WorkflowState.active.value, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)

    @property
    def base_type(self) -> BaseRoleType:
        return BaseRoleType(self.base_role_type)

    @property
    def is_account_role(self) -> bool:
        return self.base_type.is_account_type

    @property
    def is_custom(self) -> bool:
        return not self.built_in

    @property
    def is_active(self) -> bool:
        return self.workflow_state == WorkflowState.active.value

    def __repr__(self):
        return f"<Role {self.global_id} {self.name!r} ({self.base_role_type})>"


class RoleOverride(ShardedMixin, Base):
    __tablename__ = "role_overrides"
    __table_args__ = (
        UniqueConstraint("context_id", "permission", "role_id", name="uq_role_override_context_permission_role"),
        Index("ix_role_overrides_role_id", "role_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    context_id = Column(BigInteger, nullable=False)
    context_type = Column(String(20), default=ContextType.account.value, nullable=False)
    permission = Column(String(100), nullable=False)
    role_id = Column(BigInteger, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    locked = Column(Boolean, default=False, nullable=False)
    applies_to_self = Column(Boolean, default=True, nullable=False)
    applies_to_descendants = Column(Boolean, default=True, nullable=False)
    root_account_id = Column(BigInteger, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return (
            f"<RoleOverride {self.permission} role={self.role_id} context={self.context_id} "
            f"enabled={self.enabled} locked={self.locked}>"
        )


class Setting(Base):
    """Global key/value settings, stored on shard 0."""
    __tablename__ = "settings"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), unique=True, index=True, nullable=False)
    value = Column(Text)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class PluginSetting(Base):
    __tablename__ = "plugin_settings"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, index=True, nullable=False)
    settings = Column(JSON, default=dict)
    disabled = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def enabled(self) -> bool:
        return not self.disabled

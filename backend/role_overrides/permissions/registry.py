"""Canonical permission catalogue.

Definitions are built once at import and never mutated; gating that depends on
runtime state (root account settings, plugin enablement, the site admin
allow-list) is expressed as predicates and evaluated per call.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator, Mapping

from role_overrides.db.enums import AccountOnly, BaseRoleType
from role_overrides.permissions.exceptions import UnknownPermission
from role_overrides.permissions.predicates import (
    NoPredicate,
    PluginEnabledCheck,
    Predicate,
    PredicateContext,
    SettingLookup,
)

R = BaseRoleType

ACCOUNT_TYPES = frozenset({R.account_admin, R.account_membership})
COURSE_TYPES = frozenset({R.teacher, R.ta, R.designer, R.student, R.observer})
ALL_TYPES = ACCOUNT_TYPES | COURSE_TYPES

ENROLLMENT_TYPES: tuple[dict[str, str], ...] = (
    {"base_role_name": R.student.value, "name": R.student.value, "label": "Student"},
    {"base_role_name": R.teacher.value, "name": R.teacher.value, "label": "Teacher"},
    {"base_role_name": R.ta.value, "name": R.ta.value, "label": "TA"},
    {"base_role_name": R.designer.value, "name": R.designer.value, "label": "Designer"},
    {"base_role_name": R.observer.value, "name": R.observer.value, "label": "Observer"},
)


@dataclass(frozen=True)
class PermissionDefinition:
    """Static permission definition."""

    key: str
    label: str
    true_for: frozenset[BaseRoleType]
    available_to: frozenset[BaseRoleType]
    account_only: AccountOnly = AccountOnly.none
    account_allows: Predicate = NoPredicate()
    enabled_for_plugin: Predicate = NoPredicate()
    restricted_to_allow_list: bool = False
    group: str | None = None

    def default_for(self, base_role_type: BaseRoleType) -> bool:
        return base_role_type in self.true_for

    def is_available_to(self, base_role_type: BaseRoleType) -> bool:
        return base_role_type == R.account_admin or base_role_type in self.available_to

    def plugin_id(self) -> str | None:
        if isinstance(self.enabled_for_plugin, PluginEnabledCheck):
            return self.enabled_for_plugin.plugin_id
        return None


def _permission(
    *,
    key: str,
    label: str,
    true_for: Iterable[BaseRoleType],
    available_to: Iterable[BaseRoleType],
    **options,
) -> PermissionDefinition:
    return PermissionDefinition(
        key=key,
        label=label,
        true_for=frozenset(true_for),
        available_to=frozenset(available_to),
        **options,
    )


PERMISSIONS: tuple[PermissionDefinition, ...] = (
    # Course content ------------------------------------------------------
    _permission(
        key="read_forum",
        label="View discussions",
        true_for=COURSE_TYPES | {R.account_admin},
        available_to=ALL_TYPES,
        group="discussions",
    ),
    _permission(
        key="moderate_forum",
        label="Moderate discussions",
        true_for={R.teacher, R.ta, R.designer, R.account_admin},
        available_to=ALL_TYPES,
        group="discussions",
    ),
    _permission(
        key="read_course_content",
        label="View course content",
        true_for=COURSE_TYPES | {R.account_admin},
        available_to=ALL_TYPES,
    ),
    _permission(
        key="view_group_pages",
        label="View all student groups",
        true_for={R.student, R.ta, R.designer, R.teacher, R.account_admin},
        available_to=ALL_TYPES,
    ),
    _permission(
        key="read_reports",
        label="View usage reports",
        true_for={R.teacher, R.ta, R.designer, R.account_admin, R.account_membership},
        available_to=ALL_TYPES,
    ),
    _permission(
        key="select_final_grade",
        label="Select final grade for moderation",
        true_for={R.account_admin, R.teacher, R.ta},
        available_to={R.account_admin, R.account_membership, R.teacher, R.ta},
    ),
    _permission(
        key="view_audit_trail",
        label="View audit trail",
        true_for={R.account_admin},
        available_to={R.teacher, R.account_admin, R.account_membership},
    ),
    _permission(
        key="manage_proficiency_calculations",
        label="Manage outcome mastery calculations",
        true_for={R.account_admin},
        available_to={R.account_admin, R.account_membership, R.designer, R.teacher},
        group="outcomes",
    ),
    _permission(
        key="manage_proficiency_scales",
        label="Manage outcome mastery scales",
        true_for={R.account_admin},
        available_to={R.account_admin, R.account_membership, R.designer, R.teacher},
        group="outcomes",
    ),
    _permission(
        key="manage_frozen_assignments",
        label="Manage frozen assignments",
        true_for={R.account_admin},
        available_to={R.account_admin, R.account_membership, R.teacher, R.ta, R.designer},
        enabled_for_plugin=PluginEnabledCheck("assignment_freezer"),
    ),
    # Account administration ----------------------------------------------
    _permission(
        key="undelete_courses",
        label="Undelete courses",
        true_for={R.account_admin},
        available_to=ACCOUNT_TYPES,
        account_only=AccountOnly.any,
    ),
    _permission(
        key="view_notifications",
        label="View notifications",
        true_for=(),
        available_to=ACCOUNT_TYPES,
        account_only=AccountOnly.any,
        account_allows=SettingLookup("admins_can_view_notifications"),
    ),
    _permission(
        key="manage_role_overrides",
        label="Manage permissions",
        true_for={R.account_admin},
        available_to=ACCOUNT_TYPES,
        account_only=AccountOnly.any,
    ),
    _permission(
        key="manage_account_memberships",
        label="Manage account admins",
        true_for={R.account_admin},
        available_to=ACCOUNT_TYPES,
        account_only=AccountOnly.any,
        restricted_to_allow_list=True,
    ),
    _permission(
        key="allow_course_admin_actions",
        label="Manage course admin actions",
        true_for={R.account_admin},
        available_to=ACCOUNT_TYPES,
        account_only=AccountOnly.any,
    ),
    _permission(
        key="temporary_enrollments_add",
        label="Add temporary enrollments",
        true_for={R.account_admin},
        available_to=ACCOUNT_TYPES,
        account_only=AccountOnly.any,
        group="manage_temp_enroll",
    ),
    _permission(
        key="temporary_enrollments_edit",
        label="Edit temporary enrollments",
        true_for={R.account_admin},
        available_to=ACCOUNT_TYPES,
        account_only=AccountOnly.any,
        group="manage_temp_enroll",
    ),
    _permission(
        key="temporary_enrollments_delete",
        label="Delete temporary enrollments",
        true_for={R.account_admin},
        available_to=ACCOUNT_TYPES,
        account_only=AccountOnly.any,
        group="manage_temp_enroll",
    ),
    _permission(
        key="become_user",
        label="Act as users",
        true_for={R.account_admin},
        available_to=ACCOUNT_TYPES,
        account_only=AccountOnly.root,
        restricted_to_allow_list=True,
    ),
    _permission(
        key="view_course_changes",
        label="View course change history",
        true_for={R.account_admin},
        available_to=ACCOUNT_TYPES,
        account_only=AccountOnly.root,
    ),
    _permission(
        key="manage_site_settings",
        label="Manage site settings",
        true_for={R.account_admin},
        available_to=ACCOUNT_TYPES,
        account_only=AccountOnly.site_admin,
    ),
)


class PermissionRegistry:
    """Read-only lookup over a fixed set of definitions."""

    def __init__(self, definitions: Iterable[PermissionDefinition]):
        self._definitions: dict[str, PermissionDefinition] = {}
        for definition in definitions:
            if definition.key in self._definitions:
                raise ValueError(f"duplicate permission {definition.key}")
            self._definitions[definition.key] = definition

    def __contains__(self, key: object) -> bool:
        return key in self._definitions

    def __iter__(self) -> Iterator[PermissionDefinition]:
        return iter(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)

    def keys(self) -> list[str]:
        return list(self._definitions)

    def definitions(self) -> list[PermissionDefinition]:
        return list(self._definitions.values())

    def definition_for(self, key: str) -> PermissionDefinition:
        try:
            return self._definitions[str(key)]
        except KeyError:
            raise UnknownPermission(str(key)) from None

    def plugin_ids(self) -> frozenset[str]:
        return frozenset(pid for d in self._definitions.values() if (pid := d.plugin_id()))

    def manageable(
        self,
        ctx: PredicateContext,
        *,
        is_course: bool,
        is_root: bool,
        is_site_admin: bool,
        base_role_type: BaseRoleType | None = None,
    ) -> Mapping[str, PermissionDefinition]:
        """Definitions an administrator may edit at a context of the given shape."""
        result: dict[str, PermissionDefinition] = {}
        for key, definition in self._definitions.items():
            if not definition.enabled_for_plugin.evaluate(ctx):
                continue
            if is_course and definition.account_only != AccountOnly.none:
                continue
            if definition.account_only == AccountOnly.site_admin and not is_site_admin:
                continue
            if definition.account_only == AccountOnly.root and not is_root:
                continue
            if base_role_type is not None and not definition.is_available_to(base_role_type):
                continue
            result[key] = definition
        return result


permission_registry = PermissionRegistry(PERMISSIONS)

import enum


class BaseRoleType(str, enum.Enum):
    account_admin = "AccountAdmin"
    account_membership = "AccountMembership"
    teacher = "TeacherEnrollment"
    ta = "TaEnrollment"
    designer = "DesignerEnrollment"
    student = "StudentEnrollment"
    observer = "ObserverEnrollment"
    no_permissions = "NoPermissions"

    @property
    def is_account_type(self) -> bool:
        return self in (BaseRoleType.account_admin, BaseRoleType.account_membership)


class WorkflowState(str, enum.Enum):
    active = "active"
    inactive = "inactive"
    deleted = "deleted"


class ContextType(str, enum.Enum):
    account = "Account"
    course = "Course"
    other = "Other"


class AccountOnly(str, enum.Enum):
    none = "none"
    any = "any"
    root = "root"
    site_admin = "site_admin"


class Scope(str, enum.Enum):
    self = "self"
    descendants = "descendants"

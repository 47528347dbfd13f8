"""Permission catalog: canonical (resource type, action) pairs and their minimal roles."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from praxisauth.security.roles import Role, RoleHierarchy

if TYPE_CHECKING:  # pragma: no cover - typing only
    from praxisauth.security.models import Grant

WILDCARD = "*"


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    WRITE = "write"
    BOOK = "book"
    CANCEL = "cancel"
    RESCHEDULE = "reschedule"
    GENERATE = "generate"
    PRINT = "print"
    SHARE = "share"
    EXPORT = "export"
    IMPORT = "import"
    APPROVE = "approve"
    AUDIT = "audit"
    CONFIGURE = "configure"
    MANAGE_USERS = "manage_users"
    MANAGE_ROLES = "manage_roles"
    DIAGNOSE = "diagnose"
    PRESCRIBE = "prescribe"
    QUERY = "query"
    RETRIEVE = "retrieve"
    DEPRECATE = "deprecate"
    SUBMIT = "submit"


class ResourceType(str, Enum):
    PATIENT = "patient"
    APPOINTMENT = "appointment"
    DOCUMENT = "document"
    DIAGNOSIS = "diagnosis"
    PRESCRIPTION = "prescription"
    BILLING = "billing"
    USER = "user"
    ROLE = "role"
    LOCATION = "location"
    SERVICE = "service"
    TEMPLATE = "template"
    AUDIT_LOG = "audit_log"
    SYSTEM = "system"
    SETTINGS = "settings"
    REPORTS = "reports"
    XDS_DOCUMENT = "xds_document"


ResourceTypeLike = Union[ResourceType, str]
ActionLike = Union[Action, str]


def _coerce(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    if value == WILDCARD:
        return WILDCARD
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unknown {enum_cls.__name__}: {value!r}") from None


def coerce_resource_type(value: ResourceTypeLike) -> ResourceTypeLike:
    return _coerce(ResourceType, value)


def coerce_action(value: ActionLike) -> ActionLike:
    return _coerce(Action, value)


def _text(value: Union[Enum, str]) -> str:
    return value.value if isinstance(value, Enum) else value


@dataclass(frozen=True)
class Permission:
    """A ``resource_type:action`` pair where either side may be ``*``."""

    resource_type: ResourceTypeLike
    action: ActionLike

    def __post_init__(self) -> None:
        object.__setattr__(self, "resource_type", coerce_resource_type(self.resource_type))
        object.__setattr__(self, "action", coerce_action(self.action))

    @classmethod
    def parse(cls, value: Union["Permission", str]) -> "Permission":
        if isinstance(value, Permission):
            return value
        resource_type, sep, action = value.partition(":")
        if not sep:
            raise ValueError(f"Permission must look like 'resource:action', got {value!r}")
        return cls(resource_type, action)

    @property
    def is_wildcard(self) -> bool:
        return self.resource_type == WILDCARD or self.action == WILDCARD

    def covers(self, resource_type: ResourceTypeLike, action: ActionLike) -> bool:
        """True if this permission pattern includes the concrete pair.

        ``write`` is covered by a pattern naming ``create`` or ``update``.
        """

        if self.resource_type != WILDCARD and self.resource_type != resource_type:
            return False
        if self.action == WILDCARD or self.action == action:
            return True
        return action == Action.WRITE and self.action in (Action.CREATE, Action.UPDATE)

    def __str__(self) -> str:
        return f"{_text(self.resource_type)}:{_text(self.action)}"


R = ResourceType
A = Action

DEFAULT_CATALOG: Dict[Tuple[ResourceType, Action], Role] = {
    (R.PATIENT, A.CREATE): Role.REZEPTION,
    (R.PATIENT, A.READ): Role.REZEPTION,
    (R.PATIENT, A.UPDATE): Role.REZEPTION,
    (R.PATIENT, A.DELETE): Role.ADMIN,
    (R.APPOINTMENT, A.CREATE): Role.REZEPTION,
    (R.APPOINTMENT, A.READ): Role.REZEPTION,
    (R.APPOINTMENT, A.UPDATE): Role.REZEPTION,
    (R.APPOINTMENT, A.DELETE): Role.ADMIN,
    (R.APPOINTMENT, A.BOOK): Role.REZEPTION,
    (R.APPOINTMENT, A.CANCEL): Role.REZEPTION,
    (R.APPOINTMENT, A.RESCHEDULE): Role.REZEPTION,
    (R.DOCUMENT, A.CREATE): Role.ASSISTENT,
    (R.DOCUMENT, A.READ): Role.REZEPTION,
    (R.DOCUMENT, A.UPDATE): Role.ASSISTENT,
    (R.DOCUMENT, A.DELETE): Role.ADMIN,
    (R.DOCUMENT, A.GENERATE): Role.ASSISTENT,
    (R.DOCUMENT, A.PRINT): Role.REZEPTION,
    (R.DOCUMENT, A.SHARE): Role.ARZT,
    (R.DOCUMENT, A.EXPORT): Role.ADMIN,
    (R.DIAGNOSIS, A.CREATE): Role.ARZT,
    (R.DIAGNOSIS, A.READ): Role.ASSISTENT,
    (R.DIAGNOSIS, A.UPDATE): Role.ARZT,
    (R.DIAGNOSIS, A.DELETE): Role.ARZT,
    (R.DIAGNOSIS, A.DIAGNOSE): Role.ARZT,
    (R.PRESCRIPTION, A.CREATE): Role.ARZT,
    (R.PRESCRIPTION, A.READ): Role.ASSISTENT,
    (R.PRESCRIPTION, A.UPDATE): Role.ARZT,
    (R.PRESCRIPTION, A.DELETE): Role.ARZT,
    (R.PRESCRIPTION, A.PRESCRIBE): Role.ARZT,
    (R.BILLING, A.CREATE): Role.BILLING,
    (R.BILLING, A.READ): Role.REZEPTION,
    (R.BILLING, A.UPDATE): Role.BILLING,
    (R.BILLING, A.DELETE): Role.BILLING,
    (R.BILLING, A.GENERATE): Role.REZEPTION,
    (R.BILLING, A.PRINT): Role.REZEPTION,
    (R.BILLING, A.EXPORT): Role.BILLING,
    (R.USER, A.CREATE): Role.ADMIN,
    (R.USER, A.READ): Role.ADMIN,
    (R.USER, A.UPDATE): Role.ADMIN,
    (R.USER, A.DELETE): Role.ADMIN,
    (R.USER, A.MANAGE_USERS): Role.ADMIN,
    (R.ROLE, A.READ): Role.ADMIN,
    (R.ROLE, A.MANAGE_ROLES): Role.ADMIN,
    (R.LOCATION, A.CREATE): Role.ADMIN,
    (R.LOCATION, A.READ): Role.REZEPTION,
    (R.LOCATION, A.UPDATE): Role.ADMIN,
    (R.LOCATION, A.DELETE): Role.ADMIN,
    (R.SERVICE, A.CREATE): Role.ADMIN,
    (R.SERVICE, A.READ): Role.REZEPTION,
    (R.SERVICE, A.UPDATE): Role.ADMIN,
    (R.SERVICE, A.DELETE): Role.ADMIN,
    (R.TEMPLATE, A.CREATE): Role.ARZT,
    (R.TEMPLATE, A.READ): Role.ASSISTENT,
    (R.TEMPLATE, A.UPDATE): Role.ARZT,
    (R.TEMPLATE, A.DELETE): Role.ADMIN,
    (R.AUDIT_LOG, A.READ): Role.ADMIN,
    (R.AUDIT_LOG, A.AUDIT): Role.ADMIN,
    (R.SYSTEM, A.CONFIGURE): Role.ADMIN,
    (R.SETTINGS, A.READ): Role.ADMIN,
    (R.SETTINGS, A.UPDATE): Role.ADMIN,
    (R.SETTINGS, A.CONFIGURE): Role.ADMIN,
    (R.REPORTS, A.READ): Role.ADMIN,
    (R.REPORTS, A.GENERATE): Role.ADMIN,
    (R.REPORTS, A.EXPORT): Role.ADMIN,
    (R.XDS_DOCUMENT, A.CREATE): Role.ARZT,
    (R.XDS_DOCUMENT, A.READ): Role.ASSISTENT,
    (R.XDS_DOCUMENT, A.UPDATE): Role.ARZT,
    (R.XDS_DOCUMENT, A.DELETE): Role.ADMIN,
    (R.XDS_DOCUMENT, A.QUERY): Role.ASSISTENT,
    (R.XDS_DOCUMENT, A.RETRIEVE): Role.ASSISTENT,
    (R.XDS_DOCUMENT, A.DEPRECATE): Role.ARZT,
    (R.XDS_DOCUMENT, A.SUBMIT): Role.ADMIN,
}

# Patients reach their own records only through ownership.
DEFAULT_SELF_SERVICE: Dict[ResourceType, Tuple[Action, ...]] = {
    R.PATIENT: (A.READ,),
    R.APPOINTMENT: (A.READ, A.BOOK, A.CANCEL),
    R.DOCUMENT: (A.READ,),
    R.BILLING: (A.READ,),
}


class PermissionCatalog:
    """Default (resource type, action) -> minimal role table.

    The catalog is a coarse, instance-unaware gate. Fine-grained decisions
    that consider ownership, confidentiality or delegation go through
    :class:`praxisauth.security.policy.PolicyEvaluator`.
    """

    def __init__(
        self,
        hierarchy: RoleHierarchy,
        table: Optional[Mapping[Tuple[ResourceType, Action], Role]] = None,
        *,
        overrides: Optional[Mapping[str, Role]] = None,
    ) -> None:
        self._hierarchy = hierarchy
        self._table: Dict[Tuple[ResourceType, Action], Role] = dict(
            DEFAULT_CATALOG if table is None else table
        )
        for raw, role in (overrides or {}).items():
            permission = Permission.parse(raw)
            if permission.is_wildcard:
                raise ValueError(f"Catalog overrides must be concrete, got {raw!r}")
            self._table[(permission.resource_type, permission.action)] = Role(role)

    @property
    def hierarchy(self) -> RoleHierarchy:
        return self._hierarchy

    def minimal_role(self, resource_type: ResourceTypeLike, action: ActionLike) -> Optional[Role]:
        resource_type = coerce_resource_type(resource_type)
        action = coerce_action(action)
        role = self._table.get((resource_type, action))
        if role is not None or action != Action.WRITE:
            return role
        candidates = [
            self._table[(resource_type, alias)]
            for alias in (Action.CREATE, Action.UPDATE)
            if (resource_type, alias) in self._table
        ]
        if not candidates:
            return None
        return min(candidates, key=self._hierarchy.rank)

    def implied_role(self, permission: Union[Permission, str]) -> Role:
        """The rank a permission pattern confers on whoever holds it."""

        permission = Permission.parse(permission)
        if permission.resource_type == WILDCARD:
            return self._hierarchy.top
        if permission.action == WILDCARD:
            roles = [role for (rt, _), role in self._table.items() if rt == permission.resource_type]
            if not roles:
                return self._hierarchy.top
            return max(roles, key=self._hierarchy.rank)
        role = self.minimal_role(permission.resource_type, permission.action)
        return role if role is not None else self._hierarchy.top

    def grant_covers(
        self,
        grant: "Grant",
        resource_type: ResourceTypeLike,
        action: ActionLike,
        resource_id: Optional[str] = None,
    ) -> bool:
        """True if ``grant`` confers the concrete pair.

        An action wildcard on a named resource type reaches only the actions
        cataloged for it, the same set :meth:`implied_role` ranks it by.
        """

        resource_type = coerce_resource_type(resource_type)
        action = coerce_action(action)
        if not grant.matches(resource_type, action, resource_id):
            return False
        for permission in grant.permissions:
            if not permission.covers(resource_type, action):
                continue
            if permission.action != WILDCARD or permission.resource_type == WILDCARD:
                return True
        return self.minimal_role(resource_type, action) is not None

    def role_allows(self, role: Union[Role, str, None], resource_type: ResourceTypeLike, action: ActionLike) -> bool:
        if self._hierarchy.is_top(role):
            return True
        minimal = self.minimal_role(resource_type, action)
        return minimal is not None and self._hierarchy.is_at_least(role, minimal)

    def has_permission(
        self,
        role: Union[Role, str, None],
        permission: Union[Permission, str],
        grants: Iterable["Grant"] = (),
        at: Optional[datetime] = None,
    ) -> bool:
        permission = Permission.parse(permission)
        if self._hierarchy.is_at_least(role, self.implied_role(permission)):
            return True
        if permission.is_wildcard:
            return False
        return any(
            grant.is_active(at) and self.grant_covers(grant, permission.resource_type, permission.action)
            for grant in grants
        )

    def has_all_permissions(
        self,
        role: Union[Role, str, None],
        permissions: Iterable[Union[Permission, str]],
        grants: Iterable["Grant"] = (),
        at: Optional[datetime] = None,
    ) -> bool:
        grants = list(grants)
        permissions = list(permissions)
        return bool(permissions) and all(self.has_permission(role, p, grants, at) for p in permissions)

    def has_any_permission(
        self,
        role: Union[Role, str, None],
        permissions: Iterable[Union[Permission, str]],
        grants: Iterable["Grant"] = (),
        at: Optional[datetime] = None,
    ) -> bool:
        grants = list(grants)
        return any(self.has_permission(role, p, grants, at) for p in permissions)

    def effective_permissions(self, role: Union[Role, str, None]) -> List[Permission]:
        """Concrete permissions the role holds by default, sorted by name."""

        permissions = [
            Permission(rt, action)
            for (rt, action), minimal in self._table.items()
            if self._hierarchy.is_at_least(role, minimal)
        ]
        return sorted(permissions, key=str)

    def entries(self) -> List[Tuple[Permission, Role]]:
        return sorted(
            ((Permission(rt, action), role) for (rt, action), role in self._table.items()),
            key=lambda item: str(item[0]),
        )


__all__ = [
    "Action",
    "ResourceType",
    "Permission",
    "PermissionCatalog",
    "DEFAULT_CATALOG",
    "DEFAULT_SELF_SERVICE",
    "WILDCARD",
    "coerce_action",
    "coerce_resource_type",
]

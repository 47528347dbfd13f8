"""Value objects shared by the authorization core."""

from __future__ import annotations

import ipaddress
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from praxisauth.security.permissions import (
    WILDCARD,
    ActionLike,
    Permission,
    ResourceTypeLike,
    coerce_action,
    coerce_resource_type,
)
from praxisauth.security.roles import Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps are taken to be UTC."""

    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class ReasonCode(str, Enum):
    """Closed set of reasons returned verbatim to callers."""

    ROLE_BYPASS = "ROLE_BYPASS"
    RESOURCE_ROLE = "RESOURCE_ROLE"
    SELF_SERVICE = "SELF_SERVICE"
    ROLE_DEFAULT = "ROLE_DEFAULT"
    CUSTOM_GRANT = "CUSTOM_GRANT"
    DELEGATION = "DELEGATION"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    INSUFFICIENT_PERMISSION = "INSUFFICIENT_PERMISSION"
    CONTEXT_RESTRICTED = "CONTEXT_RESTRICTED"
    SENSITIVITY_EXCEEDED = "SENSITIVITY_EXCEEDED"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    GRANT_ESCALATION_REJECTED = "GRANT_ESCALATION_REJECTED"
    DELEGATION_CONFLICT = "DELEGATION_CONFLICT"


class ConfidentialityTier(str, Enum):
    NORMAL = "normal"
    SENSITIVE = "sensitive"
    HIGHLY_SENSITIVE = "highly_sensitive"

    @property
    def level(self) -> int:
        return _TIER_LEVELS[self]


_TIER_LEVELS = {
    ConfidentialityTier.NORMAL: 0,
    ConfidentialityTier.SENSITIVE: 1,
    ConfidentialityTier.HIGHLY_SENSITIVE: 2,
}


@dataclass(frozen=True)
class Subject:
    """An authenticated actor.

    ``role`` is ``None`` when the identity provider handed us a role we do not
    know; such subjects rank below every known role.
    """

    id: str
    role: Optional[Role]
    consent: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", Role.parse(self.role))

    @classmethod
    def from_claims(cls, subject_id: str, role: Any, *, consent: bool = False) -> "Subject":
        return cls(id=str(subject_id), role=Role.parse(role), consent=bool(consent))

    @property
    def role_name(self) -> str:
        return self.role.value if self.role is not None else "unknown"


@dataclass(frozen=True)
class ObjectAcl:
    """Per-instance allow/deny lists and access conditions attached by the domain layer.

    Conditions are optional. ``valid_from``/``valid_until`` bound a half-open
    window, ``allowed_locations`` is matched against the request location and
    ``allowed_ips`` takes single addresses or CIDR networks. A restricted
    condition fails when the request does not carry the fact it needs.
    """

    allowed_roles: FrozenSet[Role] = frozenset()
    allowed_subjects: FrozenSet[str] = frozenset()
    denied_roles: FrozenSet[Role] = frozenset()
    denied_subjects: FrozenSet[str] = frozenset()
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    allowed_locations: FrozenSet[str] = frozenset()
    allowed_ips: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "valid_from", ensure_aware(self.valid_from))
        object.__setattr__(self, "valid_until", ensure_aware(self.valid_until))
        object.__setattr__(self, "allowed_ips", tuple(self.allowed_ips))
        for entry in self.allowed_ips:
            ipaddress.ip_network(entry, strict=False)

    def violation(self, subject: Subject, context: "AuthorizationContext") -> Optional[str]:
        """Name of the first failing check, or ``None`` when access passes."""

        if subject.role in self.denied_roles or subject.id in self.denied_subjects:
            return "object_acl"
        if self.allowed_roles and subject.role not in self.allowed_roles:
            return "object_acl"
        if self.allowed_subjects and subject.id not in self.allowed_subjects:
            return "object_acl"
        if self.valid_from is not None and context.timestamp < self.valid_from:
            return "object_acl:time_window"
        if self.valid_until is not None and context.timestamp >= self.valid_until:
            return "object_acl:time_window"
        if self.allowed_locations and context.location_id not in self.allowed_locations:
            return "object_acl:location"
        if self.allowed_ips and not _ip_in(context.ip, self.allowed_ips):
            return "object_acl:ip"
        return None

    def permits(self, subject: Subject, context: "AuthorizationContext") -> bool:
        return self.violation(subject, context) is None


def _ip_in(address: Optional[str], networks: Tuple[str, ...]) -> bool:
    if not address:
        return False
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(ip in ipaddress.ip_network(entry, strict=False) for entry in networks)


@dataclass(frozen=True)
class ResourceInstance:
    id: str
    resource_type: ResourceTypeLike
    owner_id: Optional[str] = None
    location_id: Optional[str] = None
    tier: ConfidentialityTier = ConfidentialityTier.NORMAL
    acl: Optional[ObjectAcl] = None
    attributes: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "resource_type", coerce_resource_type(self.resource_type))
        object.__setattr__(self, "tier", ConfidentialityTier(self.tier))


@dataclass(frozen=True)
class AuthorizationContext:
    """Request facts the evaluator may consult."""

    timestamp: datetime = field(default_factory=utcnow)
    ip: Optional[str] = None
    location_id: Optional[str] = None
    request_id: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", ensure_aware(self.timestamp))


@dataclass(frozen=True)
class Grant:
    """A custom permission attached to a subject beyond their role."""

    id: str
    subject_id: str
    resource_type: ResourceTypeLike
    actions: Tuple[ActionLike, ...]
    granted_by: str
    granted_at: datetime
    reason: str
    expires_at: Optional[datetime] = None
    resource_id: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "resource_type", coerce_resource_type(self.resource_type))
        object.__setattr__(self, "actions", tuple(coerce_action(a) for a in self.actions))
        object.__setattr__(self, "granted_at", ensure_aware(self.granted_at))
        object.__setattr__(self, "expires_at", ensure_aware(self.expires_at))

    @property
    def permissions(self) -> Tuple[Permission, ...]:
        return tuple(Permission(self.resource_type, action) for action in self.actions)

    def is_active(self, at: Optional[datetime] = None) -> bool:
        moment = ensure_aware(at or utcnow())
        if moment < self.granted_at:
            return False
        return self.expires_at is None or moment < self.expires_at

    def matches(self, resource_type: ResourceTypeLike, action: ActionLike, resource_id: Optional[str] = None) -> bool:
        if self.resource_id is not None and self.resource_id != resource_id:
            return False
        resource_type = coerce_resource_type(resource_type)
        action = coerce_action(action)
        return any(permission.covers(resource_type, action) for permission in self.permissions)


@dataclass(frozen=True)
class ResourceRoleAssignment:
    """A role held only for one resource instance or one location."""

    id: str
    subject_id: str
    role: Role
    granted_by: str
    granted_at: datetime
    reason: str
    resource_type: Optional[ResourceTypeLike] = None
    resource_id: Optional[str] = None
    location_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.resource_type is not None:
            object.__setattr__(self, "resource_type", coerce_resource_type(self.resource_type))
        object.__setattr__(self, "granted_at", ensure_aware(self.granted_at))
        object.__setattr__(self, "expires_at", ensure_aware(self.expires_at))

    def is_active(self, at: Optional[datetime] = None) -> bool:
        moment = ensure_aware(at or utcnow())
        if moment < self.granted_at:
            return False
        return self.expires_at is None or moment < self.expires_at

    def applies_to(self, instance: Optional[ResourceInstance]) -> bool:
        if instance is None:
            return False
        if self.resource_id is not None:
            same_type = self.resource_type in (None, WILDCARD) or self.resource_type == instance.resource_type
            return same_type and self.resource_id == instance.id
        return self.location_id is not None and self.location_id == instance.location_id


@dataclass(frozen=True)
class Revocation:
    id: str
    target_id: str
    revoked_by: str
    revoked_at: datetime
    reason: str


@dataclass(frozen=True)
class Delegation:
    """Authority of ``delegator`` lent to ``delegate_id`` for ``[starts_at, ends_at)``.

    ``delegator`` is a snapshot taken when the delegation is recorded. A later
    change to the delegator's role does not reach the delegate; revoke the
    delegation when the delegator is demoted.
    """

    id: str
    delegator: Subject
    delegate_id: str
    starts_at: datetime
    ends_at: datetime
    granted_by: str
    created_at: datetime
    reason: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "starts_at", ensure_aware(self.starts_at))
        object.__setattr__(self, "ends_at", ensure_aware(self.ends_at))

    def covers(self, at: datetime) -> bool:
        return self.starts_at <= ensure_aware(at) < self.ends_at

    def overlaps(self, starts_at: datetime, ends_at: datetime) -> bool:
        return self.starts_at < ends_at and starts_at < self.ends_at


class HistoryKind(str, Enum):
    GRANTED = "granted"
    REVOKED = "revoked"
    ROLE_ASSIGNED = "role_assigned"
    ROLE_REVOKED = "role_revoked"
    DELEGATED = "delegated"
    DELEGATION_REVOKED = "delegation_revoked"


@dataclass(frozen=True)
class HistoryEntry:
    kind: HistoryKind
    record_id: str
    subject_id: str
    permission: str
    changed_by: str
    at: datetime
    reason: str


@dataclass(frozen=True)
class MutationResult:
    """Outcome of a grant, revoke or delegate call."""

    accepted: bool
    reason: Optional[ReasonCode] = None
    record_id: Optional[str] = None


@dataclass(frozen=True)
class SubjectSummary:
    """Non-sensitive view of the caller's own authority, shown on denials."""

    role: str
    grants: Tuple[str, ...] = ()
    resource_roles: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: ReasonCode
    matched_rule: str
    required_permission: str
    audit_id: str
    subject_summary: Optional[SubjectSummary] = None
    delegated_from: Optional[str] = None
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["reason"] = self.reason.value
        return payload


__all__ = [
    "ReasonCode",
    "ConfidentialityTier",
    "Subject",
    "ObjectAcl",
    "ResourceInstance",
    "AuthorizationContext",
    "Grant",
    "ResourceRoleAssignment",
    "Revocation",
    "Delegation",
    "HistoryKind",
    "HistoryEntry",
    "MutationResult",
    "SubjectSummary",
    "Decision",
    "utcnow",
    "new_id",
    "ensure_aware",
]

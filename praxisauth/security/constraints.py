"""Contextual restrictions: time windows, IP allow-lists, consent and clearance."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from datetime import tzinfo
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Union
from zoneinfo import ZoneInfo

from praxisauth.security.models import AuthorizationContext, ConfidentialityTier, Subject
from praxisauth.security.permissions import ActionLike, Permission, ResourceTypeLike
from praxisauth.security.roles import Role, RoleHierarchy

WEEKDAYS = (0, 1, 2, 3, 4)


class ContextPredicate:
    """A single contextual check a call site can opt into."""

    name = "predicate"

    def check(self, context: AuthorizationContext) -> bool:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass(frozen=True)
class BusinessHours(ContextPredicate):
    """Allow only between ``start`` and ``end`` o'clock on ``days`` (Monday is 0)."""

    start: int = 8
    end: int = 18
    days: FrozenSet[int] = frozenset(WEEKDAYS)
    timezone: tzinfo = field(default_factory=lambda: ZoneInfo("Europe/Vienna"))

    name = "business_hours"

    def check(self, context: AuthorizationContext) -> bool:
        local = context.timestamp.astimezone(self.timezone)
        return local.weekday() in self.days and self.start <= local.hour < self.end


@dataclass(frozen=True)
class AllowedWeekdays(ContextPredicate):
    days: FrozenSet[int] = frozenset(WEEKDAYS)
    timezone: tzinfo = field(default_factory=lambda: ZoneInfo("Europe/Vienna"))

    name = "allowed_weekdays"

    def check(self, context: AuthorizationContext) -> bool:
        return context.timestamp.astimezone(self.timezone).weekday() in self.days


class IpAllowList(ContextPredicate):
    """Single addresses or CIDR networks; an empty list allows everything."""

    name = "ip_allow_list"

    def __init__(self, networks: Iterable[str]) -> None:
        self.networks = tuple(ipaddress.ip_network(entry, strict=False) for entry in networks)

    def check(self, context: AuthorizationContext) -> bool:
        if not self.networks:
            return True
        if not context.ip:
            return False
        try:
            address = ipaddress.ip_address(context.ip)
        except ValueError:
            return False
        return any(address in network for network in self.networks)


DEFAULT_CLEARANCE: Dict[ConfidentialityTier, Role] = {
    ConfidentialityTier.SENSITIVE: Role.ARZT,
    ConfidentialityTier.HIGHLY_SENSITIVE: Role.ARZT,
}

DEFAULT_CONSENT_PERMISSIONS = ("*:export", "*:share", "xds_document:submit")


class ContextualConstraints:
    """Holds the confidentiality ceiling, the consent gate and named predicate sets.

    Predicate sets are never applied globally; a call site asks for them by
    name (for example ``business_hours_only``) and passes them to
    :meth:`PolicyEvaluator.authorize`.
    """

    def __init__(
        self,
        hierarchy: RoleHierarchy,
        *,
        clearance: Optional[Mapping[ConfidentialityTier, Role]] = None,
        consent_permissions: Sequence[Union[Permission, str]] = DEFAULT_CONSENT_PERMISSIONS,
        guards: Optional[Mapping[str, Sequence[ContextPredicate]]] = None,
    ) -> None:
        self._hierarchy = hierarchy
        self._clearance = dict(DEFAULT_CLEARANCE if clearance is None else clearance)
        self._consent = tuple(Permission.parse(p) for p in consent_permissions)
        self._guards: Dict[str, List[ContextPredicate]] = {
            name: list(predicates) for name, predicates in (guards or {}).items()
        }

    @classmethod
    def default_guards(
        cls,
        *,
        timezone: tzinfo,
        start: int = 8,
        end: int = 18,
        days: Iterable[int] = WEEKDAYS,
        allowed_weekdays: Iterable[int] = WEEKDAYS,
        ip_allow_list: Iterable[str] = (),
    ) -> Dict[str, List[ContextPredicate]]:
        hours = BusinessHours(start=start, end=end, days=frozenset(days), timezone=timezone)
        weekdays = AllowedWeekdays(days=frozenset(allowed_weekdays), timezone=timezone)
        network = IpAllowList(ip_allow_list)
        return {
            "business_hours_only": [hours],
            "weekdays_only": [weekdays],
            "clinic_network_only": [network],
            "clinic_network_business_hours": [network, hours],
        }

    def guard(self, name: str) -> List[ContextPredicate]:
        if name not in self._guards:
            raise KeyError(name)
        return list(self._guards[name])

    def guard_names(self) -> List[str]:
        return sorted(self._guards)

    def required_clearance(self, tier: ConfidentialityTier) -> Optional[Role]:
        if tier.level <= ConfidentialityTier.NORMAL.level:
            return None
        return self._clearance.get(tier, self._hierarchy.top)

    def meets_clearance(self, subject: Subject, tier: ConfidentialityTier) -> bool:
        required = self.required_clearance(tier)
        return required is None or self._hierarchy.is_at_least(subject.role, required)

    def requires_consent(self, resource_type: ResourceTypeLike, action: ActionLike) -> bool:
        return any(pattern.covers(resource_type, action) for pattern in self._consent)


__all__ = [
    "ContextPredicate",
    "BusinessHours",
    "AllowedWeekdays",
    "IpAllowList",
    "ContextualConstraints",
    "DEFAULT_CLEARANCE",
    "DEFAULT_CONSENT_PERMISSIONS",
]

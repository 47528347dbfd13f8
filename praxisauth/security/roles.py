"""Role hierarchy for the practice staff and patients."""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Mapping, Optional, Union

from praxisauth.utils.errors import ConfigurationError
from praxisauth.utils.logging import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    ARZT = "arzt"
    ASSISTENT = "assistent"
    BILLING = "billing"
    REZEPTION = "rezeption"
    PATIENT = "patient"

    @classmethod
    def parse(cls, value: Union["Role", str, None]) -> Optional["Role"]:
        """Return the matching role or ``None`` for anything unrecognised."""

        if value is None or isinstance(value, Role):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


DEFAULT_RANKS: Dict[Role, int] = {
    Role.SUPER_ADMIN: 100,
    Role.ADMIN: 80,
    Role.ARZT: 60,
    Role.ASSISTENT: 40,
    Role.BILLING: 30,
    Role.REZEPTION: 20,
    Role.PATIENT: 10,
}

# Anything that is not a known role sits below the lowest known rank.
UNKNOWN_RANK = -1


class RoleHierarchy:
    """Total order over :class:`Role` backed by an explicit rank table.

    Ranks must be distinct and cover every role, so comparisons never fall
    back to an implicit default. The highest-ranked role is the universal
    access role: :meth:`is_at_least` always succeeds for it.
    """

    def __init__(self, ranks: Optional[Mapping[Role, int]] = None) -> None:
        table = dict(ranks or DEFAULT_RANKS)
        missing = [role.value for role in Role if role not in table]
        if missing:
            raise ConfigurationError(f"Role ranks missing for: {', '.join(missing)}")
        if len(set(table.values())) != len(table):
            raise ConfigurationError("Role ranks must be distinct to form a total order")
        if min(table.values()) <= UNKNOWN_RANK:
            raise ConfigurationError(f"Role ranks must be greater than {UNKNOWN_RANK}")
        self._ranks = table
        self._top = max(table, key=table.__getitem__)

    @property
    def top(self) -> Role:
        return self._top

    def rank(self, role: Union[Role, str, None]) -> int:
        parsed = Role.parse(role)
        if parsed is None:
            if role is not None:
                logger.warning("unknown role ranked lowest", extra={"rule": str(role)})
            return UNKNOWN_RANK
        return self._ranks[parsed]

    def is_top(self, role: Union[Role, str, None]) -> bool:
        return Role.parse(role) is self._top

    def is_at_least(self, role: Union[Role, str, None], required: Union[Role, str, None]) -> bool:
        """True iff ``role`` ranks at or above ``required``.

        An unknown ``required`` role can only be met by the top role.
        """

        if self.is_top(role):
            return True
        required_role = Role.parse(required)
        if required_role is None:
            return False
        return self.rank(role) >= self._ranks[required_role]

    def ordered(self) -> List[Role]:
        """Roles from highest to lowest rank."""

        return sorted(self._ranks, key=self._ranks.__getitem__, reverse=True)

    def as_table(self) -> Dict[str, int]:
        return {role.value: self._ranks[role] for role in self.ordered()}


__all__ = ["Role", "RoleHierarchy", "DEFAULT_RANKS", "UNKNOWN_RANK"]

import pytest

from praxisauth.security.roles import DEFAULT_RANKS, UNKNOWN_RANK, Role, RoleHierarchy
from praxisauth.utils.errors import ConfigurationError


def test_default_hierarchy_is_total_order() -> None:
    hierarchy = RoleHierarchy()
    ordered = hierarchy.ordered()
    assert ordered[0] is Role.SUPER_ADMIN
    assert ordered[-1] is Role.PATIENT
    ranks = [hierarchy.rank(role) for role in ordered]
    assert ranks == sorted(ranks, reverse=True)
    assert len(set(ranks)) == len(ranks)
    assert hierarchy.top is Role.SUPER_ADMIN


def test_unknown_roles_rank_lowest() -> None:
    hierarchy = RoleHierarchy()
    assert hierarchy.rank(None) == UNKNOWN_RANK
    assert hierarchy.rank("hausmeister") == UNKNOWN_RANK
    assert not hierarchy.is_at_least("hausmeister", Role.PATIENT)
    assert Role.parse("ARZT") is Role.ARZT
    assert Role.parse("hausmeister") is None


def test_top_role_meets_every_requirement() -> None:
    hierarchy = RoleHierarchy()
    assert hierarchy.is_at_least(Role.SUPER_ADMIN, Role.ADMIN)
    assert hierarchy.is_at_least(Role.SUPER_ADMIN, "no-such-role")
    assert not hierarchy.is_at_least(Role.ADMIN, "no-such-role")
    assert hierarchy.is_at_least(Role.ARZT, Role.ASSISTENT)
    assert not hierarchy.is_at_least(Role.REZEPTION, Role.BILLING)


def test_rank_table_validation() -> None:
    duplicated = dict(DEFAULT_RANKS)
    duplicated[Role.BILLING] = duplicated[Role.REZEPTION]
    with pytest.raises(ConfigurationError):
        RoleHierarchy(duplicated)

    missing = dict(DEFAULT_RANKS)
    del missing[Role.PATIENT]
    with pytest.raises(ConfigurationError):
        RoleHierarchy(missing)


def test_custom_ranks_move_the_top_role() -> None:
    ranks = dict(DEFAULT_RANKS)
    ranks[Role.ADMIN] = 200
    hierarchy = RoleHierarchy(ranks)
    assert hierarchy.top is Role.ADMIN
    assert hierarchy.is_top("admin")
    assert list(hierarchy.as_table())[0] == "admin"

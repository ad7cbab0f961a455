from __future__ import annotations

import allure
import pytest

from delegrid.errors import ValidationError
from delegrid.hierarchy.roles import (
    HIERARCHIES,
    MAX_DEPTH,
    ROOT_ROLE,
    can_delegate,
    get_hierarchy,
    get_role,
    lookup_role,
    parent_role,
    role_exists,
    role_title,
    subordinate_role,
    validate_fan_out,
)

pytestmark = [
    allure.epic("Hierarchy"),
    allure.feature("Role Catalog"),
]


def test_every_chain_starts_at_root_and_has_depth_length() -> None:
    for depth, roles in HIERARCHIES.items():
        assert roles[0].code == ROOT_ROLE
        assert len(roles) == depth


def test_role_codes_are_unique_across_depths() -> None:
    codes = [role.code for roles in HIERARCHIES.values() for role in roles[1:]]
    assert len(codes) == len(set(codes))


def test_reverse_lookup_returns_depth_and_layer() -> None:
    position = lookup_role("TASKENG")
    assert position is not None
    assert (position.depth, position.layer) == (3, 2)
    assert lookup_role(ROOT_ROLE) is None
    assert lookup_role("NOPE") is None


def test_get_hierarchy_rejects_unknown_depth() -> None:
    with pytest.raises(ValidationError):
        get_hierarchy(MAX_DEPTH + 1)
    assert get_role(3, 5) is None
    assert get_role(3, 1).code == "PROCCTL"


def test_delegation_edges_follow_the_chain() -> None:
    assert subordinate_role(ROOT_ROLE, depth=4) == "STRATOP"
    assert subordinate_role(ROOT_ROLE) is None
    assert subordinate_role("STRATOP") == "DELIVCO"
    assert subordinate_role("EXESUPP") is None
    assert parent_role("DELIVCO") == "STRATOP"
    assert parent_role("STRATOP") == ROOT_ROLE
    assert parent_role(ROOT_ROLE) is None


def test_can_delegate_distinguishes_leaves() -> None:
    assert can_delegate("PROCCTL")
    assert not can_delegate("TASKENG")
    assert can_delegate(ROOT_ROLE, depth=2)
    assert not can_delegate(ROOT_ROLE, depth=1)
    assert not can_delegate("UNKNOWN")


def test_role_titles_and_existence() -> None:
    assert role_exists(ROOT_ROLE)
    assert role_exists("EXECOPS")
    assert not role_exists("ceo")
    assert role_title("EXECOPS") == "Execution Operations Associate"
    assert role_title("MISSING") is None


def test_fan_out_validation_for_managers_and_leaves() -> None:
    assert validate_fan_out("PROCCTL", 3) == []
    assert validate_fan_out("PROCCTL", 0)
    assert validate_fan_out("TASKENG", 0) == []
    assert validate_fan_out("TASKENG", 2)
    assert validate_fan_out(ROOT_ROLE, 0, depth=1) == []
    assert validate_fan_out(ROOT_ROLE, 0, depth=3)
    assert validate_fan_out("BOGUS", 1) == ["Unknown role code: BOGUS"]

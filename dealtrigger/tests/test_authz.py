from __future__ import annotations

import logging

import pytest

from dealtrigger.authz import (
    RANK_GRANTS,
    Permission,
    Principal,
    Role,
    has_permission,
    has_role_level,
    parse_permissions,
    parse_role,
    require_permission,
    role_permissions,
    user_has_permission,
)
from dealtrigger.errors import PermissionDeniedError

RANKED = [Role.USER, Role.REVIEWER, Role.ADMIN, Role.SYSTEM]


def test_role_permission_sets_are_strictly_nested() -> None:
    for lower, higher in zip(RANKED, RANKED[1:]):
        assert role_permissions(lower) < role_permissions(higher)


def test_every_rank_adds_a_permission() -> None:
    for role in RANKED:
        assert RANK_GRANTS[role]


def test_system_holds_every_permission() -> None:
    assert role_permissions(Role.SYSTEM) == frozenset(Permission)


def test_reviewer_grants() -> None:
    assert has_permission(Role.REVIEWER, Permission.EVIDENCE_READ)
    assert has_permission(Role.REVIEWER, Permission.VALIDATION_REVIEW)
    assert has_permission(Role.REVIEWER, Permission.PROMOTIONS_READ)
    assert not has_permission(Role.REVIEWER, Permission.EVIDENCE_WRITE)
    assert not has_permission(Role.REVIEWER, Permission.VALIDATION_OVERRIDE)


def test_override_belongs_to_admin_and_system() -> None:
    assert not has_permission(Role.USER, Permission.VALIDATION_OVERRIDE)
    assert has_permission(Role.ADMIN, Permission.VALIDATION_OVERRIDE)
    assert has_permission(Role.SYSTEM, Permission.VALIDATION_OVERRIDE)
    assert not has_permission(Role.ADMIN, Permission.SYSTEM_MANAGE)


def test_explicit_grants_are_a_union() -> None:
    principal = Principal("u-1", Role.USER, frozenset({Permission.EVIDENCE_READ}))
    assert user_has_permission(principal, Permission.EVIDENCE_READ)
    assert user_has_permission(principal, Permission.PROMOTIONS_READ)
    assert not user_has_permission(principal, Permission.VALIDATION_OVERRIDE)


def test_require_permission_raises_and_logs(caplog: pytest.LogCaptureFixture) -> None:
    principal = Principal("u-2", Role.REVIEWER)
    with caplog.at_level(logging.WARNING, logger="dealtrigger.authz"):
        with pytest.raises(PermissionDeniedError) as exc_info:
            require_permission(principal, Permission.VALIDATION_OVERRIDE)
    assert exc_info.value.permission == "validation:override"
    assert exc_info.value.principal_id == "u-2"
    assert any("permission denied" in record.getMessage() for record in caplog.records)


def test_role_levels() -> None:
    assert has_role_level(Role.ADMIN, Role.REVIEWER)
    assert has_role_level(Role.ADMIN, Role.ADMIN)
    assert not has_role_level(Role.REVIEWER, Role.ADMIN)


def test_parse_role_and_permissions() -> None:
    assert parse_role(" Admin ") is Role.ADMIN
    assert parse_permissions(["evidence:read", "VALIDATION:REVIEW"]) == frozenset(
        {Permission.EVIDENCE_READ, Permission.VALIDATION_REVIEW}
    )
    with pytest.raises(ValueError):
        parse_role("superuser")
    with pytest.raises(ValueError):
        parse_permissions(["evidence:delete"])

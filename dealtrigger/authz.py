from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Iterable

from .errors import PermissionDeniedError

_LOGGER = logging.getLogger("dealtrigger.authz")


class Role(StrEnum):
    USER = "user"
    REVIEWER = "reviewer"
    ADMIN = "admin"
    SYSTEM = "system"


class Permission(StrEnum):
    PROMOTIONS_READ = "promotions:read"
    PROMOTIONS_WRITE = "promotions:write"
    EVIDENCE_READ = "evidence:read"
    EVIDENCE_WRITE = "evidence:write"
    VALIDATION_EXECUTE = "validation:execute"
    VALIDATION_REVIEW = "validation:review"
    VALIDATION_OVERRIDE = "validation:override"
    USERS_MANAGE = "users:manage"
    SYSTEM_MANAGE = "system:manage"


ROLE_LEVELS: dict[Role, int] = {
    Role.USER: 1,
    Role.REVIEWER: 2,
    Role.ADMIN: 3,
    Role.SYSTEM: 4,
}

# Permissions introduced at each rank; lower ranks are inherited.
RANK_GRANTS: dict[Role, frozenset[Permission]] = {
    Role.USER: frozenset({Permission.PROMOTIONS_READ}),
    Role.REVIEWER: frozenset({Permission.EVIDENCE_READ, Permission.VALIDATION_REVIEW}),
    Role.ADMIN: frozenset(
        {
            Permission.PROMOTIONS_WRITE,
            Permission.EVIDENCE_WRITE,
            Permission.VALIDATION_EXECUTE,
            Permission.VALIDATION_OVERRIDE,
            Permission.USERS_MANAGE,
        }
    ),
    Role.SYSTEM: frozenset({Permission.SYSTEM_MANAGE}),
}


@dataclass(frozen=True)
class Principal:
    principal_id: str
    role: Role
    explicit_permissions: frozenset[Permission] = field(default_factory=frozenset)


def parse_role(value: str | Role) -> Role:
    if isinstance(value, Role):
        return value
    normalized = str(value or "").strip().lower()
    try:
        return Role(normalized)
    except ValueError as exc:
        raise ValueError(f"unknown role: {value!r}") from exc


def parse_permission(value: str | Permission) -> Permission:
    if isinstance(value, Permission):
        return value
    normalized = str(value or "").strip().lower()
    try:
        return Permission(normalized)
    except ValueError as exc:
        raise ValueError(f"unknown permission: {value!r}") from exc


def parse_permissions(values: Iterable[str | Permission]) -> frozenset[Permission]:
    return frozenset(parse_permission(value) for value in values)


def role_level(role: Role) -> int:
    return ROLE_LEVELS[role]


def role_permissions(role: Role) -> frozenset[Permission]:
    level = role_level(role)
    granted: set[Permission] = set()
    for rank, permissions in RANK_GRANTS.items():
        if ROLE_LEVELS[rank] <= level:
            granted.update(permissions)
    return frozenset(granted)


def has_permission(role: Role, permission: Permission) -> bool:
    return permission in role_permissions(role)


def has_role_level(role: Role, required: Role) -> bool:
    return role_level(role) >= role_level(required)


def effective_permissions(principal: Principal) -> frozenset[Permission]:
    return role_permissions(principal.role) | principal.explicit_permissions


def user_has_permission(principal: Principal, permission: Permission) -> bool:
    if permission in principal.explicit_permissions:
        allowed = True
        source = "explicit"
    else:
        allowed = has_permission(principal.role, permission)
        source = "role"
    if allowed:
        _LOGGER.debug(
            "permission granted principal=%s role=%s permission=%s source=%s",
            principal.principal_id,
            principal.role,
            permission,
            source,
        )
    else:
        _LOGGER.warning(
            "permission denied principal=%s role=%s permission=%s",
            principal.principal_id,
            principal.role,
            permission,
        )
    return allowed


def require_permission(principal: Principal, permission: Permission) -> None:
    if not user_has_permission(principal, permission):
        raise PermissionDeniedError(str(permission), principal.principal_id)

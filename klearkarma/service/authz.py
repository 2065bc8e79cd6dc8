"""Role, permission and ownership guards.

Each guard takes an authenticated ``Subject`` and either returns or raises
``ForbiddenError``. Authentication failures (401) never come from here.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Mapping, Optional

from klearkarma.logging import get_logger
from klearkarma.service.errors import ForbiddenError
from klearkarma.storage.models import Permission, Role, User

logger = get_logger(__name__)

TOP_ROLE = Role.SUPERADMIN

_ALL = frozenset(Permission)

ROLE_PERMISSIONS: Mapping[Role, FrozenSet[Permission]] = {
    Role.USER: frozenset(),
    Role.PRACTITIONER: frozenset(),
    Role.SUPPORT: frozenset(
        {
            Permission.USER_READ,
            Permission.PRACTITIONER_READ,
            Permission.BOOKING_READ,
            Permission.PAYMENT_READ,
            Permission.CONTENT_READ,
        }
    ),
    Role.CURATOR: frozenset(
        {
            Permission.PRODUCT_READ,
            Permission.PRODUCT_WRITE,
            Permission.CONTENT_READ,
            Permission.CONTENT_WRITE,
            Permission.PRACTITIONER_READ,
        }
    ),
    Role.MODERATOR: frozenset(
        {
            Permission.USER_READ,
            Permission.PRACTITIONER_READ,
            Permission.CONTENT_READ,
            Permission.CONTENT_WRITE,
            Permission.CONTENT_DELETE,
            Permission.CONTENT_MODERATE,
        }
    ),
    Role.ADMIN: _ALL
    - {Permission.SYSTEM_ADMIN, Permission.USER_DELETE, Permission.PAYMENT_REFUND},
    Role.SUPERADMIN: _ALL,
}


def default_permissions(role: Role) -> list[Permission]:
    return sorted(ROLE_PERMISSIONS.get(Role(role), frozenset()), key=lambda p: p.value)


@dataclass(frozen=True)
class Subject:
    """The authenticated caller, built from the live user record."""

    user_id: str
    email: str
    role: Role
    permissions: FrozenSet[Permission] = field(default_factory=frozenset)
    verified: bool = False

    @classmethod
    def from_user(cls, user: User) -> "Subject":
        return cls(
            user_id=user.id,
            email=user.email,
            role=user.role,
            permissions=frozenset(user.permissions) | ROLE_PERMISSIONS.get(user.role, frozenset()),
            verified=user.verified,
        )


def is_top_role(subject: Subject) -> bool:
    """The superadmin escape hatch: passes every role, permission and ownership check."""
    return subject.role == TOP_ROLE


def _deny(subject: Subject, check: str, message: str, **detail) -> ForbiddenError:
    logger.warning(
        "authorization_denied",
        user_id=subject.user_id,
        role=subject.role.value,
        check=check,
        **detail,
    )
    return ForbiddenError(message, detail=detail or None)


def authorize_role(subject: Subject, allowed_roles: Iterable[Role | str]) -> None:
    if is_top_role(subject):
        return
    allowed = {Role(r) for r in allowed_roles}
    if subject.role not in allowed:
        raise _deny(
            subject,
            "role",
            "insufficient role",
            required_roles=sorted(r.value for r in allowed),
        )


def authorize_permission(subject: Subject, permission: Permission | str) -> None:
    authorize_all_permissions(subject, [permission])


def authorize_all_permissions(
    subject: Subject, permissions: Iterable[Permission | str]
) -> None:
    if is_top_role(subject):
        return
    required = {Permission(p) for p in permissions}
    missing = required - subject.permissions
    if missing:
        raise _deny(
            subject,
            "permission_all",
            "insufficient permissions",
            missing_permissions=sorted(p.value for p in missing),
        )


def authorize_any_permission(
    subject: Subject, permissions: Iterable[Permission | str]
) -> None:
    if is_top_role(subject):
        return
    required = {Permission(p) for p in permissions}
    if not required & subject.permissions:
        raise _deny(
            subject,
            "permission_any",
            "insufficient permissions",
            any_of=sorted(p.value for p in required),
        )


def authorize_ownership(
    subject: Subject,
    resource_owner_id: Optional[str],
    *,
    bypass_permission: Optional[Permission] = None,
) -> None:
    """Pass the top role, the owner, or a holder of ``bypass_permission``."""
    if is_top_role(subject):
        return
    if resource_owner_id is not None and subject.user_id == resource_owner_id:
        return
    if bypass_permission is not None and bypass_permission in subject.permissions:
        return
    raise _deny(subject, "ownership", "resource is owned by another user")


def authorize_verified(subject: Subject) -> None:
    if is_top_role(subject) or subject.verified:
        return
    raise _deny(subject, "verified", "email verification required")


__all__ = [
    "ROLE_PERMISSIONS",
    "Subject",
    "TOP_ROLE",
    "authorize_all_permissions",
    "authorize_any_permission",
    "authorize_ownership",
    "authorize_permission",
    "authorize_role",
    "authorize_verified",
    "default_permissions",
    "is_top_role",
]

"""Permission resolver: allow/deny decisions over the role registry.

Two entry points with deliberately different semantics:

- ``authorize()``: **all-of**: the principal must hold every required
  permission.
- ``authorize_role()``: **any-of**: the principal's role must be equal to
  or above at least one of the required roles.

Both treat an empty requirement as "no restriction" and deny a principal
without a role before looking at anything else. ``super_admin`` is always
allowed. Everything here is pure and synchronous.
"""

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Optional

from ..errors import (
    AuthenticationRequired,
    AuthorizationDenied,
    InsufficientPermission,
    InsufficientRole,
    NoRoleAssigned,
)
from .permissions import (
    PermissionLike,
    Role,
    RoleLike,
    level_of,
    parse_permission,
    parse_role,
    permissions_of,
)

if TYPE_CHECKING:
    from .auth import Principal


class DenyCode(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    NO_ROLE_ASSIGNED = "no_role_assigned"
    INSUFFICIENT_PERMISSION = "insufficient_permission"
    INSUFFICIENT_ROLE = "insufficient_role"


@dataclass(frozen=True)
class AccessDecision:
    """Terminal allow/deny decision with the reason for a denial."""

    allowed: bool
    code: Optional[DenyCode] = None
    reason: Optional[str] = None
    missing: tuple[str, ...] = ()

    @classmethod
    def deny(
        cls, code: DenyCode, reason: str, missing: Iterable[str] = ()
    ) -> "AccessDecision":
        return cls(allowed=False, code=code, reason=reason, missing=tuple(missing))

    def __bool__(self) -> bool:
        return self.allowed

    def raise_for_denial(self) -> None:
        """Raise the exception matching this decision; no-op when allowed."""
        if self.allowed:
            return
        if self.code == DenyCode.UNAUTHENTICATED:
            raise AuthenticationRequired(self.reason or "Authentication required")
        if self.code == DenyCode.NO_ROLE_ASSIGNED:
            raise NoRoleAssigned()
        if self.code == DenyCode.INSUFFICIENT_PERMISSION:
            raise InsufficientPermission(self.missing)
        if self.code == DenyCode.INSUFFICIENT_ROLE:
            raise InsufficientRole(self.missing)
        raise AuthorizationDenied(self.reason or "Access denied")


ALLOW = AccessDecision(allowed=True)

_NO_ROLE = AccessDecision.deny(DenyCode.NO_ROLE_ASSIGNED, "no role assigned")


def has_permission(role: RoleLike, permission: PermissionLike) -> bool:
    """Check whether *role* grants *permission*.

    O(1) frozenset membership test. ``super_admin`` always passes.
    """
    role = parse_role(role)
    permission = parse_permission(permission)
    if role == Role.SUPER_ADMIN:
        return True
    return permission in permissions_of(role)


def has_equal_or_higher_role(role_a: RoleLike, role_b: RoleLike) -> bool:
    """Check if *role_a* has equal or higher privileges than *role_b*."""
    return level_of(role_a) >= level_of(role_b)


def authorize(
    principal: Optional["Principal"],
    required_permissions: Iterable[PermissionLike],
) -> AccessDecision:
    """Decide whether *principal* holds **all** of *required_permissions*."""
    required = [parse_permission(p) for p in required_permissions]
    if principal is None or principal.role is None:
        return _NO_ROLE
    if not required:
        return ALLOW

    role = parse_role(principal.role)
    if role == Role.SUPER_ADMIN:
        return ALLOW

    granted = permissions_of(role)
    missing = sorted({p.value for p in required if p not in granted})
    if missing:
        return AccessDecision.deny(
            DenyCode.INSUFFICIENT_PERMISSION,
            f"missing permissions: {', '.join(missing)}",
            missing,
        )
    return ALLOW


def authorize_role(
    principal: Optional["Principal"],
    required_roles: Iterable[RoleLike],
) -> AccessDecision:
    """Decide whether *principal* is at or above **any** of *required_roles*."""
    required = [parse_role(r) for r in required_roles]
    if principal is None or principal.role is None:
        return _NO_ROLE
    if not required:
        return ALLOW

    role = parse_role(principal.role)
    if role == Role.SUPER_ADMIN:
        return ALLOW

    if any(has_equal_or_higher_role(role, r) for r in required):
        return ALLOW

    names = sorted({r.value for r in required})
    return AccessDecision.deny(
        DenyCode.INSUFFICIENT_ROLE,
        f"requires one of [{', '.join(names)}]",
        names,
    )

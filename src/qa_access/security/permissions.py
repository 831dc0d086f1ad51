"""Role registry for the QA platform.

Maps each ``Role`` to a hierarchy level and to a fine-grained ``Permission``
set. All tables are built at import time from frozensets and plain dicts and
are never mutated afterwards, so lookups are safe for unlimited concurrent
readers on the request hot path.

Levels (higher = more privileged)::

    super_admin 100 > client_admin 80 > manager 60 > qa_analyst 40
        > auditor 30 > agent 10
"""

import enum
from typing import FrozenSet, Union

from ..errors import UnknownPermission, UnknownRole


class Role(str, enum.Enum):
    """Platform and instance level roles."""

    # Platform level
    SUPER_ADMIN = "super_admin"

    # Instance level
    CLIENT_ADMIN = "client_admin"
    MANAGER = "manager"
    QA_ANALYST = "qa_analyst"
    AUDITOR = "auditor"
    AGENT = "agent"


class Permission(str, enum.Enum):
    """Fine-grained permissions for RBAC enforcement."""

    # Instance management (super admin only)
    MANAGE_INSTANCES = "manage_instances"
    VIEW_INSTANCES = "view_instances"
    MANAGE_CLIENTS = "manage_clients"
    MANAGE_CREDITS = "manage_credits"
    VIEW_ALL_USAGE = "view_all_usage"
    SSH_ACCESS = "ssh_access"

    MANAGE_USERS = "manage_users"
    VIEW_USERS = "view_users"

    PERFORM_AUDIT = "perform_audit"
    VIEW_ALL_AUDITS = "view_all_audits"
    VIEW_OWN_AUDITS = "view_own_audits"
    DELETE_AUDITS = "delete_audits"

    MANAGE_CAMPAIGNS = "manage_campaigns"
    VIEW_CAMPAIGNS = "view_campaigns"

    MANAGE_PARAMETERS = "manage_parameters"
    MANAGE_SOPS = "manage_sops"
    VIEW_PARAMETERS = "view_parameters"
    VIEW_SOPS = "view_sops"

    SUBMIT_DISPUTE = "submit_dispute"
    RESOLVE_DISPUTE = "resolve_dispute"
    VIEW_DISPUTES = "view_disputes"

    GENERATE_REPORTS = "generate_reports"
    VIEW_ANALYTICS = "view_analytics"

    VIEW_OWN_PERFORMANCE = "view_own_performance"
    ACKNOWLEDGE_FEEDBACK = "acknowledge_feedback"

    MANAGE_SETTINGS = "manage_settings"


RoleLike = Union[Role, str]
PermissionLike = Union[Permission, str]


# ---------------------------------------------------------------------------
# Role → level / permission tables (immutable, pre-built at import time)
# ---------------------------------------------------------------------------

ROLE_HIERARCHY: dict[Role, int] = {
    Role.SUPER_ADMIN: 100,
    Role.CLIENT_ADMIN: 80,
    Role.MANAGER: 60,
    Role.QA_ANALYST: 40,
    Role.AUDITOR: 30,
    Role.AGENT: 10,
}

_ALL_PERMISSIONS: FrozenSet[Permission] = frozenset(Permission)

ROLE_PERMISSIONS: dict[Role, FrozenSet[Permission]] = {
    Role.SUPER_ADMIN: _ALL_PERMISSIONS,

    Role.CLIENT_ADMIN: frozenset({
        Permission.MANAGE_USERS,
        Permission.VIEW_USERS,
        Permission.PERFORM_AUDIT,
        Permission.VIEW_ALL_AUDITS,
        Permission.DELETE_AUDITS,
        Permission.MANAGE_CAMPAIGNS,
        Permission.VIEW_CAMPAIGNS,
        Permission.MANAGE_PARAMETERS,
        Permission.MANAGE_SOPS,
        Permission.VIEW_PARAMETERS,
        Permission.VIEW_SOPS,
        Permission.RESOLVE_DISPUTE,
        Permission.VIEW_DISPUTES,
        Permission.GENERATE_REPORTS,
        Permission.VIEW_ANALYTICS,
    }),

    Role.MANAGER: frozenset({
        Permission.VIEW_USERS,
        Permission.PERFORM_AUDIT,
        Permission.VIEW_ALL_AUDITS,
        Permission.VIEW_CAMPAIGNS,
        Permission.VIEW_PARAMETERS,
        Permission.VIEW_SOPS,
        Permission.RESOLVE_DISPUTE,
        Permission.VIEW_DISPUTES,
        Permission.GENERATE_REPORTS,
        Permission.VIEW_ANALYTICS,
    }),

    Role.QA_ANALYST: frozenset({
        Permission.PERFORM_AUDIT,
        Permission.VIEW_ALL_AUDITS,
        Permission.VIEW_CAMPAIGNS,
        Permission.VIEW_PARAMETERS,
        Permission.VIEW_SOPS,
        Permission.VIEW_DISPUTES,
        Permission.VIEW_ANALYTICS,
    }),

    Role.AUDITOR: frozenset({
        Permission.PERFORM_AUDIT,
        Permission.VIEW_ALL_AUDITS,
        Permission.VIEW_PARAMETERS,
        Permission.VIEW_SOPS,
    }),

    Role.AGENT: frozenset({
        Permission.VIEW_OWN_AUDITS,
        Permission.VIEW_OWN_PERFORMANCE,
        Permission.SUBMIT_DISPUTE,
        Permission.ACKNOWLEDGE_FEEDBACK,
    }),
}


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def parse_role(value: RoleLike) -> Role:
    """Coerce *value* to a ``Role``; raise ``UnknownRole`` otherwise."""
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        raise UnknownRole(value) from None


def parse_permission(value: PermissionLike) -> Permission:
    """Coerce *value* to a ``Permission``; raise ``UnknownPermission`` otherwise."""
    if isinstance(value, Permission):
        return value
    try:
        return Permission(value)
    except ValueError:
        raise UnknownPermission(value) from None


def level_of(role: RoleLike) -> int:
    """Return the hierarchy level of *role*."""
    return ROLE_HIERARCHY[parse_role(role)]


def permissions_of(role: RoleLike) -> FrozenSet[Permission]:
    """Return the full permission set for *role*.

    Returns the pre-built frozenset, not a copy.
    """
    return ROLE_PERMISSIONS[parse_role(role)]


def validate_registry() -> None:
    """Check the static tables at startup.

    Raises ``UnknownRole`` when a role lacks a level or a non-empty permission
    set, and ``UnknownPermission`` when a mapped permission is not defined or
    ``super_admin`` does not hold the full set.
    """
    for role in Role:
        if role not in ROLE_HIERARCHY:
            raise UnknownRole(role.value)
        if not ROLE_PERMISSIONS.get(role):
            raise UnknownRole(role.value)

    for role, perms in ROLE_PERMISSIONS.items():
        parse_role(role)
        for perm in perms:
            parse_permission(perm)

    missing = _ALL_PERMISSIONS - ROLE_PERMISSIONS[Role.SUPER_ADMIN]
    if missing:
        raise UnknownPermission(sorted(p.value for p in missing))

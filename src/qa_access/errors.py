"""Exception types for authorization and credit accounting.

Every error carries an HTTP ``status_code`` and a stable ``code`` so the
request layer can tell "not allowed" (403) apart from "out of quota" (402).
``UnknownRole`` / ``UnknownPermission`` are configuration errors and are
expected only at startup validation.
"""

from typing import Iterable, Optional


class AccessError(Exception):
    """Base exception for the access core."""

    status_code: int = 500
    code: str = "access_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationError(AccessError):
    """Static role/permission tables are malformed."""

    code = "configuration_error"


class UnknownRole(ConfigurationError):
    """A value outside the role enumeration was looked up."""

    code = "unknown_role"

    def __init__(self, role: object):
        self.role = role
        super().__init__(f"Unknown role: {role!r}")


class UnknownPermission(ConfigurationError):
    """A value outside the permission enumeration was looked up."""

    code = "unknown_permission"

    def __init__(self, permission: object):
        self.permission = permission
        super().__init__(f"Unknown permission: {permission!r}")


class AuthenticationRequired(AccessError):
    """No valid credential accompanied the request."""

    status_code = 401
    code = "unauthenticated"


class AuthorizationDenied(AccessError):
    """The principal is not allowed to perform the operation."""

    status_code = 403
    code = "forbidden"


class NoRoleAssigned(AuthorizationDenied):
    code = "no_role_assigned"

    def __init__(self, message: str = "Access denied: No role assigned"):
        super().__init__(message)


class InsufficientPermission(AuthorizationDenied):
    code = "insufficient_permission"

    def __init__(self, missing: Iterable[str], message: Optional[str] = None):
        self.missing = sorted(missing)
        super().__init__(
            message or f"Access denied: Missing permissions: {', '.join(self.missing)}"
        )


class InsufficientRole(AuthorizationDenied):
    code = "insufficient_role"

    def __init__(self, required: Iterable[str], message: Optional[str] = None):
        self.required = sorted(required)
        super().__init__(
            message or f"Access denied: Requires one of [{', '.join(self.required)}]"
        )


class TenantNotFound(AccessError):
    status_code = 404
    code = "tenant_not_found"

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Instance {tenant_id} not found")


class InsufficientCredit(AccessError):
    """Audit or token credits are exhausted for the tenant (recoverable)."""

    status_code = 402
    code = "insufficient_credit"

    def __init__(self, tenant_id: str, used: int, total: int, credit_type: str = "audit"):
        self.tenant_id = tenant_id
        self.used = used
        self.total = total
        self.credit_type = credit_type
        self.remaining = max(0, total - used)
        super().__init__(
            f"Insufficient {credit_type} credits for instance {tenant_id} "
            f"({used}/{total} used, {self.remaining} remaining)"
        )


class LedgerWriteFailure(AccessError):
    """A credit counter could not be persisted."""

    status_code = 503
    code = "ledger_write_failure"


class DuplicateInstance(AccessError):
    status_code = 409
    code = "duplicate_instance"

    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__(f"Instance with client_id '{client_id}' already exists")

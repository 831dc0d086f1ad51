"""Tenant context resolution.

The scope is a verbatim projection of the principal's signed claims. No
storage round trip happens per request; reassigning a user to another
tenant takes effect when their credential is refreshed.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from .auth import Principal

TENANT_SCOPE_STATE_KEY = "tenant_scope"


@dataclass(frozen=True)
class TenantScope:
    """Organization / instance / project scoping for one request."""
    organization_id: Optional[str] = None
    instance_id: Optional[str] = None
    project_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.organization_id or self.instance_id or self.project_id)

    def as_filter(self) -> dict[str, str]:
        """Non-empty fields keyed for data-access query filters."""
        fields = {
            "organization_id": self.organization_id,
            "instance_id": self.instance_id,
            "project_id": self.project_id,
        }
        return {k: v for k, v in fields.items() if v}


EMPTY_SCOPE = TenantScope()


def resolve(principal: Optional[Principal]) -> TenantScope:
    """Project *principal* onto a ``TenantScope``.

    Public (unauthenticated) routes get an empty scope.
    """
    if principal is None:
        return EMPTY_SCOPE
    return TenantScope(
        organization_id=principal.organization_id or None,
        instance_id=principal.instance_id or None,
        project_id=principal.project_id or None,
    )


def get_tenant_scope(request: Request) -> TenantScope:
    """FastAPI dependency: the scope attached by the access guard."""
    return getattr(request.state, TENANT_SCOPE_STATE_KEY, None) or EMPTY_SCOPE

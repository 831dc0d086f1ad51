"""Identity endpoint: who the caller is and what they may do."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from ..security.guard import require_access
from ..security.permissions import level_of, permissions_of
from ..security.tenant import TenantScope

router = APIRouter()


class MeResponse(BaseModel):
    user_id: str
    username: str
    email: Optional[str] = None
    role: str
    role_level: int
    permissions: List[str]
    organization_id: Optional[str] = None
    instance_id: Optional[str] = None
    project_id: Optional[str] = None


@router.get("/me", response_model=MeResponse)
async def get_me(request: Request, scope: TenantScope = Depends(require_access())):
    """Return the authenticated principal, its permissions and tenant scope."""
    principal = request.state.principal
    return MeResponse(
        user_id=principal.user_id,
        username=principal.username,
        email=principal.email,
        role=principal.role.value,
        role_level=level_of(principal.role),
        permissions=sorted(p.value for p in permissions_of(principal.role)),
        organization_id=scope.organization_id,
        instance_id=scope.instance_id,
        project_id=scope.project_id,
    )

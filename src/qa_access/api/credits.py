"""Credit views for the caller's own instance."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from ..credits.ledger import CreditLedger, get_credit_ledger
from ..security.guard import require_access
from ..security.permissions import Permission
from ..security.tenant import TenantScope

router = APIRouter()


@router.get("/credits")
async def get_my_credits(
    scope: TenantScope = Depends(require_access(Permission.VIEW_ALL_AUDITS)),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> Dict[str, Any]:
    """Usage summary for the caller's instance."""
    if not scope.instance_id:
        raise HTTPException(status_code=400, detail="No instance assigned to this user")
    return await ledger.usage_summary(scope.instance_id)

"""Audit execution entry point: the credit-consuming operation."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..credits.ledger import CreditLedger, get_credit_ledger
from ..security.guard import require_access
from ..security.permissions import Permission
from ..security.tenant import TenantScope

logger = logging.getLogger(__name__)

router = APIRouter()


class AuditRequest(BaseModel):
    tokens: int = Field(default=0, ge=0)
    idempotency_key: Optional[str] = Field(default=None, max_length=255)
    reference: Optional[str] = Field(default=None, max_length=255)


class AuditResponse(BaseModel):
    instance_id: str
    transaction_id: str
    used_audits: int
    total_audits: int
    remaining_audits: Optional[int]
    used_tokens: int
    low_balance: bool
    duplicate: bool


@router.post("/audits", response_model=AuditResponse, status_code=201)
async def perform_audit(
    body: AuditRequest,
    scope: TenantScope = Depends(require_access(Permission.PERFORM_AUDIT)),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """Bill one audit (and its AI tokens) to the caller's instance.

    402 when the instance's audit credits are exhausted or the tokens would
    exceed its token allocation.
    """
    if not scope.instance_id:
        raise HTTPException(status_code=400, detail="No instance assigned to this user")

    result = await ledger.consume_audit_credit(
        scope.instance_id,
        tokens=body.tokens,
        idempotency_key=body.idempotency_key,
        reference=body.reference,
    )
    if result.low_balance:
        logger.info(
            "Instance %s is low on audit credits (%s remaining)",
            result.instance_id, result.remaining,
        )

    return AuditResponse(
        instance_id=result.instance_id,
        transaction_id=result.transaction_id,
        used_audits=result.used_audits,
        total_audits=result.total_audits,
        remaining_audits=result.remaining,
        used_tokens=result.used_tokens,
        low_balance=result.low_balance,
        duplicate=result.duplicate,
    )

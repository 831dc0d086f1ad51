"""Admin API for tenant instances and their credit allocations."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from ..credits.ledger import CreditBalance, CreditLedger, get_credit_ledger
from ..models.credit_transaction import CreditType
from ..models.instance import UNLIMITED, BillingType, InstancePlan
from ..security.guard import require_access
from ..security.permissions import Permission

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class InstanceCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    client_id: str = Field(min_length=1, max_length=100)
    organization_id: Optional[str] = None
    plan: InstancePlan = InstancePlan.TRIAL
    billing_type: BillingType = BillingType.PREPAID
    total_audits: Optional[int] = Field(default=None, ge=UNLIMITED)
    total_tokens: Optional[int] = Field(default=None, ge=UNLIMITED)


class BalanceResponse(BaseModel):
    instance_id: str
    billing_type: str
    total_audits: int
    used_audits: int
    remaining_audits: Optional[int]
    total_tokens: int
    used_tokens: int
    total_api_calls: int


class AddCreditsRequest(BaseModel):
    amount: int = Field(gt=0)
    reason: str = Field(min_length=1, max_length=255)


class SetLimitsRequest(BaseModel):
    total_audits: Optional[int] = Field(default=None, ge=UNLIMITED)
    total_tokens: Optional[int] = Field(default=None, ge=UNLIMITED)
    billing_type: Optional[BillingType] = None
    block_on_exhausted: Optional[bool] = None


class TransactionItem(BaseModel):
    id: str
    type: str
    credit_type: str
    amount: int
    balance_after: int
    tokens: int
    reason: str
    reference: Optional[str]
    created_by: Optional[str]
    created_at: datetime


def _balance_response(balance: CreditBalance) -> BalanceResponse:
    return BalanceResponse(
        instance_id=balance.instance_id,
        billing_type=balance.billing_type,
        total_audits=balance.total_audits,
        used_audits=balance.used_audits,
        remaining_audits=balance.remaining_audits,
        total_tokens=balance.total_tokens,
        used_tokens=balance.used_tokens,
        total_api_calls=balance.total_api_calls,
    )


def _actor(request: Request) -> Optional[str]:
    principal = getattr(request.state, "principal", None)
    return principal.user_id if principal else None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/instances",
    response_model=BalanceResponse,
    status_code=201,
    dependencies=[Depends(require_access(Permission.MANAGE_INSTANCES))],
)
async def create_instance(
    body: InstanceCreateRequest,
    request: Request,
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """Provision an instance with its initial credit allocation."""
    balance = await ledger.provision(
        name=body.name,
        client_id=body.client_id,
        organization_id=body.organization_id,
        plan=body.plan,
        billing_type=body.billing_type,
        total_audits=body.total_audits,
        total_tokens=body.total_tokens,
        created_by=_actor(request),
    )
    return _balance_response(balance)


@router.get(
    "/instances/{instance_id}/credits",
    dependencies=[Depends(require_access(Permission.VIEW_ALL_USAGE))],
)
async def get_instance_credits(
    instance_id: str,
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> Dict[str, Any]:
    return await ledger.usage_summary(instance_id)


@router.post(
    "/instances/{instance_id}/credits/audits",
    response_model=BalanceResponse,
    dependencies=[Depends(require_access(Permission.MANAGE_CREDITS))],
)
async def add_audit_credits(
    instance_id: str,
    body: AddCreditsRequest,
    request: Request,
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    try:
        balance = await ledger.add_audit_credits(
            instance_id, body.amount, body.reason, added_by=_actor(request)
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _balance_response(balance)


@router.post(
    "/instances/{instance_id}/credits/tokens",
    response_model=BalanceResponse,
    dependencies=[Depends(require_access(Permission.MANAGE_CREDITS))],
)
async def add_token_credits(
    instance_id: str,
    body: AddCreditsRequest,
    request: Request,
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    try:
        balance = await ledger.add_token_credits(
            instance_id, body.amount, body.reason, added_by=_actor(request)
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _balance_response(balance)


@router.put(
    "/instances/{instance_id}/credits/limits",
    response_model=BalanceResponse,
    dependencies=[Depends(require_access(Permission.MANAGE_CREDITS))],
)
async def set_credit_limits(
    instance_id: str,
    body: SetLimitsRequest,
    request: Request,
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """Set absolute allocations; ``-1`` means unlimited."""
    balance = await ledger.set_limits(
        instance_id,
        total_audits=body.total_audits,
        total_tokens=body.total_tokens,
        billing_type=body.billing_type,
        block_on_exhausted=body.block_on_exhausted,
        updated_by=_actor(request),
    )
    return _balance_response(balance)


@router.post(
    "/instances/{instance_id}/credits/reset",
    response_model=BalanceResponse,
    dependencies=[Depends(require_access(Permission.MANAGE_CREDITS))],
)
async def reset_credit_usage(
    instance_id: str,
    request: Request,
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """Zero the used counters for a new billing cycle."""
    balance = await ledger.reset_usage(instance_id, reset_by=_actor(request))
    return _balance_response(balance)


@router.get(
    "/instances/{instance_id}/credits/transactions",
    response_model=List[TransactionItem],
    dependencies=[Depends(require_access(Permission.VIEW_ALL_USAGE))],
)
async def list_credit_transactions(
    instance_id: str,
    credit_type: Optional[CreditType] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    transactions = await ledger.list_transactions(
        instance_id, credit_type=credit_type, limit=limit, offset=offset
    )
    return [
        TransactionItem(
            id=str(t.id),
            type=t.type.value,
            credit_type=t.credit_type.value,
            amount=t.amount,
            balance_after=t.balance_after,
            tokens=t.tokens,
            reason=t.reason,
            reference=t.reference,
            created_by=t.created_by,
            created_at=t.created_at,
        )
        for t in transactions
    ]

from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from tenant_credits.core.authz import CallerContext
from tenant_credits.core.config import get_settings
from tenant_credits.core.logging import bind_tenant
from tenant_credits.core.money import ZERO, format_amount
from tenant_credits.deps import get_caller, get_credit_service
from tenant_credits.services.credits import CreditService

router = APIRouter()


class CourtesyRequest(BaseModel):
    tenant_id: UUID
    amount: Decimal | None = None
    description: str | None = None


@router.post("/courtesy")
async def grant_courtesy_credit(
    body: CourtesyRequest,
    caller: CallerContext = Depends(get_caller),
    credits: CreditService = Depends(get_credit_service),
):
    """Admin: grant a courtesy credit. Missing or non-positive amounts fall back to the configured default."""
    bind_tenant(str(body.tenant_id))
    amount = body.amount
    if amount is None or amount <= ZERO:
        amount = get_settings().courtesy_default_amount
    grant = await credits.grant_courtesy(caller, body.tenant_id, amount, description=body.description)
    return {
        "status": "credited",
        "amount": format_amount(grant.entry.amount),
        "new_balance": format_amount(grant.balance),
    }


@router.get("/{tenant_id}/balance")
async def credits_balance(
    tenant_id: UUID,
    caller: CallerContext = Depends(get_caller),
    credits: CreditService = Depends(get_credit_service),
):
    """Return current credit balance."""
    balance = await credits.get_balance(caller, tenant_id)
    return {"balance": format_amount(balance)}


@router.get("/{tenant_id}/ledger")
async def credits_ledger(
    tenant_id: UUID,
    caller: CallerContext = Depends(get_caller),
    credits: CreditService = Depends(get_credit_service),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for a tenant (newest first)."""
    entries = await credits.list_ledger(caller, tenant_id, limit=limit, offset=offset)
    out = [
        {
            "id": str(e.id),
            "source": e.source.value,
            "amount": format_amount(e.amount),
            "description": e.description,
            "external_reference": e.external_reference,
            "created_at": e.created_at.isoformat(),
        }
        for e in entries
    ]
    return {"entries": out, "limit": limit, "offset": offset}

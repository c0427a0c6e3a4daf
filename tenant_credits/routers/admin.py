from fastapi import APIRouter, Depends, Query

from tenant_credits.core.authz import CallerContext
from tenant_credits.core.money import format_amount
from tenant_credits.core.pagination import paginate
from tenant_credits.deps import get_admin, get_credit_service
from tenant_credits.services.credits import CreditService
from tenant_credits.storage.base import CreditStore, get_store

router = APIRouter()


@router.get("/unresolved-payments")
async def unresolved_payments(
    caller: CallerContext = Depends(get_admin),
    store: CreditStore = Depends(get_store),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Admin: verified payments that could not be credited, newest first."""
    limit, offset = paginate(limit, offset)
    items = await store.list_unresolved(limit=limit, offset=offset)
    return {
        "items": [i.model_dump(mode="json") for i in items],
        "limit": limit,
        "offset": offset,
    }


@router.get("/balance-audit")
async def balance_audit(
    caller: CallerContext = Depends(get_admin),
    credits: CreditService = Depends(get_credit_service),
):
    """Admin: compare every materialized balance with its ledger total."""
    drifts = await credits.audit_balances()
    return {
        "consistent": not drifts,
        "drifts": [
            {
                "tenant_id": str(d.tenant_id),
                "balance": format_amount(d.balance),
                "ledger_total": format_amount(d.ledger_total),
            }
            for d in drifts
        ],
    }

from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel

from tenant_credits.core.authz import CallerContext, ensure_can_read_balance
from tenant_credits.deps import get_caller, get_gateway, get_reconciler
from tenant_credits.services import payments as payments_service
from tenant_credits.services.reconciliation import PaymentReconciler
from tenant_credits.services.stripe_gateway import StripeGateway
from tenant_credits.storage.base import CreditStore, get_store

router = APIRouter()


class CheckoutRequest(BaseModel):
    tenant_id: UUID
    amount: Decimal


@router.post("/checkout-session")
async def create_checkout_session(
    body: CheckoutRequest,
    request: Request,
    caller: CallerContext = Depends(get_caller),
    store: CreditStore = Depends(get_store),
    gateway: StripeGateway = Depends(get_gateway),
):
    """Start a Stripe checkout for buying credits; the webhook credits it on completion."""
    ensure_can_read_balance(caller, body.tenant_id)
    origin = f"{request.url.scheme}://{request.url.netloc}"
    return await payments_service.create_checkout(body.tenant_id, body.amount, origin, store, gateway)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    """Stripe webhook: paid checkout sessions -> credit (idempotent on the payment intent)."""
    body = await request.body()
    return await payments_service.handle_webhook(body, stripe_signature, reconciler)


@router.get("/success")
async def checkout_success(sid: str = Query(...)):
    return {"status": "success", "message": "Payment completed", "session_id": sid}


@router.get("/cancel")
async def checkout_cancel():
    return {"status": "canceled", "message": "Payment canceled"}

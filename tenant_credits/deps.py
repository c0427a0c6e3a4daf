"""Shared FastAPI dependencies."""

from fastapi import Depends, Request

from tenant_credits.core.authz import CallerContext, require_admin
from tenant_credits.core.exceptions import UnauthorizedError
from tenant_credits.core.security import caller_from_payload, load_session_token
from tenant_credits.services.credits import CreditService
from tenant_credits.services.reconciliation import PaymentReconciler
from tenant_credits.services.stripe_gateway import StripeGateway
from tenant_credits.storage.base import CreditStore, get_store

SESSION_HEADER_NAME = "X-Session-Token"


async def get_caller(request: Request) -> CallerContext:
    """Dependency: decode the session token into an explicit caller context."""
    token = request.headers.get(SESSION_HEADER_NAME)
    if not token:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_token(token)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    caller = caller_from_payload(payload)
    if caller is None:
        raise UnauthorizedError("Invalid session")
    return caller


async def get_admin(caller: CallerContext = Depends(get_caller)) -> CallerContext:
    require_admin(caller)
    return caller


def get_credit_service(store: CreditStore = Depends(get_store)) -> CreditService:
    return CreditService(store)


def get_gateway() -> StripeGateway:
    return StripeGateway()


def get_reconciler(
    credits: CreditService = Depends(get_credit_service),
    gateway: StripeGateway = Depends(get_gateway),
) -> PaymentReconciler:
    return PaymentReconciler(credits, gateway)

"""
Turn verified Stripe checkout completions into ledger credits.

The webhook snapshot is only used for the session id. Tenant, amount,
payment status and transaction id all come from the session re-fetched from
Stripe. Only sessions Stripe reports as paid are credited. Redelivered events
are absorbed by the issuance idempotency on the transaction id.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

from pydantic import BaseModel

from tenant_credits.core.logging import get_logger
from tenant_credits.core.money import ZERO, from_minor_units
from tenant_credits.models.credit_ledger import CreditSource
from tenant_credits.models.unresolved_payment import UnresolvedPayment, UnresolvedReason
from tenant_credits.services.credits import CreditService
from tenant_credits.services.stripe_gateway import CheckoutSessionRecord
from tenant_credits.storage.base import CreditStore

log = get_logger(__name__)

TENANT_METADATA_KEY = "tenant_id"
PAID = "paid"


class CheckoutSessionSource(Protocol):
    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionRecord: ...


class CheckoutCompletedEvent(BaseModel):
    event_id: str
    session_id: str


@dataclass(frozen=True)
class ReconciliationResult:
    status: str  # credited | replayed | unresolved
    session_id: str
    tenant_id: UUID | None = None
    transaction_id: str | None = None
    amount: Decimal | None = None
    balance: Decimal | None = None
    reason: UnresolvedReason | None = None


class PaymentReconciler:
    def __init__(self, credits: CreditService, gateway: CheckoutSessionSource, store: CreditStore | None = None):
        self.credits = credits
        self.gateway = gateway
        self.store = store or credits.store

    async def reconcile(self, event: CheckoutCompletedEvent) -> ReconciliationResult:
        session = await self.gateway.retrieve_checkout_session(event.session_id)
        transaction_id = session.payment_intent_id or session.id
        amount = from_minor_units(session.amount_total or 0)

        raw_tenant = (session.metadata.get(TENANT_METADATA_KEY) or "").strip()
        if not raw_tenant:
            return await self._unresolved(event, session, transaction_id, UnresolvedReason.MISSING_TENANT)
        try:
            tenant_id = UUID(raw_tenant)
        except ValueError:
            return await self._unresolved(
                event, session, transaction_id, UnresolvedReason.MALFORMED_TENANT, {"tenant_id": raw_tenant}
            )
        if not await self.store.tenant_exists(tenant_id):
            return await self._unresolved(
                event, session, transaction_id, UnresolvedReason.UNKNOWN_TENANT, {"tenant_id": raw_tenant}
            )
        if session.payment_status != PAID:
            # Delayed methods (boleto) complete the session before the money settles.
            return await self._unresolved(
                event, session, transaction_id, UnresolvedReason.NOT_PAID,
                {"tenant_id": raw_tenant, "payment_status": session.payment_status},
            )
        if amount <= ZERO:
            return await self._unresolved(
                event, session, transaction_id, UnresolvedReason.NON_POSITIVE_AMOUNT,
                {"tenant_id": raw_tenant, "amount_total": session.amount_total},
            )

        grant = await self.credits.issue_credit(
            tenant_id,
            amount,
            CreditSource.EXTERNAL_PAYMENT,
            description=f"Stripe checkout {session.id} ({transaction_id})",
            external_reference=transaction_id,
        )
        status = "replayed" if grant.replayed else "credited"
        log.info(
            "payment_reconciled",
            status=status,
            event_id=event.event_id,
            session_id=session.id,
            tenant_id=str(tenant_id),
            transaction_id=transaction_id,
            amount=str(amount),
        )
        return ReconciliationResult(
            status=status,
            session_id=session.id,
            tenant_id=tenant_id,
            transaction_id=transaction_id,
            amount=grant.entry.amount,
            balance=grant.balance,
        )

    async def _unresolved(
        self,
        event: CheckoutCompletedEvent,
        session: CheckoutSessionRecord,
        transaction_id: str,
        reason: UnresolvedReason,
        details: dict[str, Any] | None = None,
    ) -> ReconciliationResult:
        await self.store.record_unresolved(
            UnresolvedPayment(
                event_id=event.event_id,
                session_id=session.id,
                transaction_id=transaction_id,
                reason=reason,
                details=details or {},
            )
        )
        log.warning(
            "payment_unresolved",
            event_id=event.event_id,
            session_id=session.id,
            transaction_id=transaction_id,
            reason=reason.value,
            **(details or {}),
        )
        return ReconciliationResult(
            status="unresolved",
            session_id=session.id,
            transaction_id=transaction_id,
            reason=reason,
        )

"""Stripe checkout creation and webhook intake."""

from decimal import Decimal
from typing import Any
from uuid import UUID

import orjson
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from tenant_credits.core.config import get_settings
from tenant_credits.core.exceptions import NotFoundError, ServiceMisconfigured, SignatureInvalid, ValidationError
from tenant_credits.core.logging import get_logger
from tenant_credits.core.money import format_amount, quantize_amount
from tenant_credits.core.security import verify_stripe_signature
from tenant_credits.services.reconciliation import CheckoutCompletedEvent, PaymentReconciler
from tenant_credits.services.stripe_gateway import StripeGateway
from tenant_credits.storage.base import CreditStore

log = get_logger(__name__)

PRODUCT_NAME = "Tenant credits"
CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
# Both carry the checkout session; the reconciler credits it once Stripe reports it paid.
CHECKOUT_SETTLEMENT_EVENTS = (CHECKOUT_COMPLETED, CHECKOUT_ASYNC_PAYMENT_SUCCEEDED)


class StripeEventObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    object: str | None = None


class StripeEventData(BaseModel):
    object: StripeEventObject


class StripeEventEnvelope(BaseModel):
    """Only the fields reconciliation needs; the embedded object is never trusted for amounts."""

    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    api_version: str | None = None
    data: StripeEventData


def parse_webhook(payload: bytes, signature: str | None) -> StripeEventEnvelope | None:
    """
    Verify the signature and parse the event envelope.
    Raises SignatureInvalid on an authenticity failure. Returns None for a
    correctly signed body that is not a usable event (quarantined, not credited).
    """
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        raise ServiceMisconfigured("Webhook secret not configured")
    try:
        verify_stripe_signature(
            payload,
            signature or "",
            settings.stripe_webhook_secret,
            settings.stripe_webhook_tolerance_seconds,
        )
    except SignatureInvalid:
        log.warning("webhook_signature_invalid", signature_present=bool(signature))
        raise
    try:
        envelope = StripeEventEnvelope.model_validate(orjson.loads(payload))
    except (orjson.JSONDecodeError, PydanticValidationError) as e:
        log.warning("webhook_event_quarantined", error=str(e)[:500])
        return None
    prefix = settings.stripe_api_version_prefix
    if envelope.api_version and prefix and not envelope.api_version.startswith(prefix):
        log.warning(
            "webhook_api_version_mismatch",
            event_id=envelope.id,
            api_version=envelope.api_version,
            expected_prefix=prefix,
        )
    return envelope


async def handle_webhook(payload: bytes, signature: str | None, reconciler: PaymentReconciler) -> dict[str, Any]:
    """Verify and dispatch one webhook delivery. Acknowledged whenever the signature is valid."""
    envelope = parse_webhook(payload, signature)
    if envelope is None:
        return {"received": True}
    if envelope.type not in CHECKOUT_SETTLEMENT_EVENTS:
        log.info("webhook_event_ignored", event_id=envelope.id, event_type=envelope.type)
        return {"received": True}
    result = await reconciler.reconcile(
        CheckoutCompletedEvent(event_id=envelope.id, session_id=envelope.data.object.id)
    )
    return {"received": True, "status": result.status}


async def create_checkout(
    tenant_id: UUID,
    amount: Decimal | int | float | str,
    origin: str,
    store: CreditStore,
    gateway: StripeGateway,
) -> dict[str, str]:
    """Open a Stripe checkout for a credit purchase; its completion is credited by the webhook."""
    settings = get_settings()
    amount = quantize_amount(amount)
    if amount < settings.checkout_min_amount:
        raise ValidationError(
            f"Minimum purchase amount is {format_amount(settings.checkout_min_amount)}",
            code="INVALID_MINIMUM_AMOUNT",
            details={"minimum": format_amount(settings.checkout_min_amount)},
        )
    tenant = await store.get_tenant(tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found", code="TENANT_NOT_FOUND")
    origin = origin.rstrip("/")
    session = await gateway.create_checkout_session(
        tenant_id,
        amount,
        currency=settings.checkout_currency,
        success_url=f"{origin}/v1/payments/success?sid={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{origin}/v1/payments/cancel",
        product_name=f"{PRODUCT_NAME} - {tenant.name}" if tenant.name else PRODUCT_NAME,
        customer_email=tenant.email,
    )
    log.info("checkout_created", tenant_id=str(tenant_id), session_id=session.id, amount=str(amount))
    return {"checkout_url": session.url or "", "session_id": session.id}

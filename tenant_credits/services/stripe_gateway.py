"""Stripe checkout sessions: create for purchases, re-fetch for reconciliation."""

import asyncio
from decimal import Decimal
from typing import Any
from uuid import UUID

import stripe
from fastapi import status
from pydantic import BaseModel, Field
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from tenant_credits.core.config import get_settings
from tenant_credits.core.exceptions import AppError, ServiceMisconfigured
from tenant_credits.core.logging import get_logger
from tenant_credits.core.money import minor_units

log = get_logger(__name__)

_RETRYABLE = (stripe.APIConnectionError, stripe.RateLimitError)


class PaymentProcessorError(AppError):
    def __init__(self, message: str = "Payment processor error"):
        super().__init__(message, code="PAYMENT_PROCESSOR_ERROR", status_code=status.HTTP_502_BAD_GATEWAY)


class CheckoutSessionRecord(BaseModel):
    """Authoritative view of a checkout session as reported by Stripe."""

    id: str
    payment_intent_id: str | None = None
    amount_total: int | None = None  # minor units
    currency: str | None = None
    payment_status: str | None = None
    url: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


def _plain(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict", None)
    return dict(to_dict() if callable(to_dict) else obj)


def _record(session: Any) -> CheckoutSessionRecord:
    intent = getattr(session, "payment_intent", None)
    intent_id = intent if isinstance(intent, str) or intent is None else getattr(intent, "id", None)
    return CheckoutSessionRecord(
        id=session.id,
        payment_intent_id=intent_id,
        amount_total=getattr(session, "amount_total", None),
        currency=getattr(session, "currency", None),
        payment_status=getattr(session, "payment_status", None),
        url=getattr(session, "url", None),
        metadata={str(k): str(v) for k, v in _plain(getattr(session, "metadata", None)).items()},
    )


class StripeGateway:
    def __init__(self, api_key: str | None = None, max_attempts: int = 3):
        self.api_key = api_key if api_key is not None else get_settings().stripe_secret_key
        self.max_attempts = max_attempts

    def _require_key(self) -> str:
        if not self.api_key:
            raise ServiceMisconfigured("Stripe secret key not configured")
        return self.api_key

    async def _call(self, fn, *args, **kwargs):
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=0.5, max=4),
                retry=retry_if_exception_type(_RETRYABLE),
                reraise=True,
            ):
                with attempt:
                    return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.StripeError as e:
            log.error("stripe_call_failed", call=getattr(fn, "__qualname__", str(fn)), error=str(e))
            raise PaymentProcessorError(f"Stripe error: {e.user_message or e}") from e

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionRecord:
        session = await self._call(
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["payment_intent"],
            api_key=self._require_key(),
        )
        return _record(session)

    async def create_checkout_session(
        self,
        tenant_id: UUID,
        amount: Decimal,
        currency: str,
        success_url: str,
        cancel_url: str,
        product_name: str = "Tenant credits",
        customer_email: str | None = None,
    ) -> CheckoutSessionRecord:
        extra: dict[str, Any] = {}
        if customer_email:
            extra["customer_email"] = customer_email
        session = await self._call(
            stripe.checkout.Session.create,
            mode="payment",
            success_url=success_url,
            cancel_url=cancel_url,
            line_items=[
                {
                    "price_data": {
                        "currency": currency,
                        "unit_amount": minor_units(amount),
                        "product_data": {"name": product_name},
                    },
                    "quantity": 1,
                }
            ],
            metadata={"tenant_id": str(tenant_id), "amount": str(amount)},
            api_key=self._require_key(),
            **extra,
        )
        return _record(session)

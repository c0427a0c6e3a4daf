import hashlib
from typing import Any
from uuid import UUID

import stripe
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from tenant_credits.core.authz import CallerContext
from tenant_credits.core.config import get_settings
from tenant_credits.core.exceptions import SignatureInvalid

ACCESS_LEVEL_ADMIN = "adm"
ACCESS_LEVEL_TENANT = "tenant"


def get_session_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="tenant-credits-session",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_session_token(access_level: str, tenant_id: UUID | None = None) -> str:
    payload: dict[str, Any] = {"access_level": access_level}
    if tenant_id is not None:
        payload["tenant_id"] = str(tenant_id)
    return get_session_serializer().dumps(payload)


def load_session_token(token: str) -> dict[str, Any] | None:
    serializer = get_session_serializer()
    try:
        return serializer.loads(token, max_age=get_settings().session_max_age_seconds)
    except (BadSignature, SignatureExpired):
        return None


def caller_from_payload(payload: dict[str, Any]) -> CallerContext | None:
    """Map a decoded session payload to a caller context; None if unusable."""
    level = payload.get("access_level")
    if level == ACCESS_LEVEL_ADMIN:
        return CallerContext.admin()
    if level != ACCESS_LEVEL_TENANT:
        return None
    try:
        return CallerContext.tenant(UUID(str(payload.get("tenant_id"))))
    except ValueError:
        return None


def verify_stripe_signature(payload: bytes, signature: str, secret: str, tolerance: int) -> None:
    """Check a Stripe-Signature header (t=...,v1=...) within the clock-skew tolerance."""
    if not signature:
        raise SignatureInvalid("Missing webhook signature")
    try:
        stripe.WebhookSignature.verify_header(payload.decode("utf-8"), signature, secret, tolerance)
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
        raise SignatureInvalid(f"Invalid webhook signature: {e}") from e

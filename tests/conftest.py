import hashlib
import hmac
import os
import time
from decimal import Decimal
from typing import AsyncGenerator
from uuid import UUID

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-memory store and fixed secrets; must be set before settings are first read
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")

from tenant_credits.core.security import create_session_token  # noqa: E402
from tenant_credits.models.tenant import TenantProfile  # noqa: E402
from tenant_credits.services.credits import CreditService  # noqa: E402
from tenant_credits.services.stripe_gateway import CheckoutSessionRecord  # noqa: E402
from tenant_credits.storage.memory import MemoryCreditStore  # noqa: E402

TENANT_A = UUID("550e8400-e29b-41d4-a716-446655440000")
TENANT_B = UUID("660e8400-e29b-41d4-a716-446655440001")
UNKNOWN_TENANT = UUID("770e8400-e29b-41d4-a716-446655440002")
WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]


class FakeGateway:
    """Stands in for Stripe: sessions are registered up front and re-fetched by id."""

    def __init__(self) -> None:
        self.sessions: dict[str, CheckoutSessionRecord] = {}
        self.retrieved: list[str] = []
        self.created: list[dict] = []

    def add_session(
        self,
        session_id: str,
        tenant_id: UUID | str | None,
        amount_total: int | None,
        payment_intent_id: str | None = "pi_default",
        payment_status: str | None = "paid",
    ) -> CheckoutSessionRecord:
        metadata = {} if tenant_id is None else {"tenant_id": str(tenant_id)}
        record = CheckoutSessionRecord(
            id=session_id,
            payment_intent_id=payment_intent_id,
            amount_total=amount_total,
            currency="brl",
            payment_status=payment_status,
            metadata=metadata,
        )
        self.sessions[session_id] = record
        return record

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionRecord:
        self.retrieved.append(session_id)
        return self.sessions[session_id]

    async def create_checkout_session(
        self, tenant_id, amount, currency, success_url, cancel_url, product_name="Tenant credits", customer_email=None
    ):
        self.created.append(
            {
                "tenant_id": tenant_id,
                "amount": amount,
                "currency": currency,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "product_name": product_name,
                "customer_email": customer_email,
            }
        )
        return CheckoutSessionRecord(
            id="cs_test_new",
            amount_total=int(amount * 100),
            currency=currency,
            url="https://checkout.stripe.test/cs_test_new",
            metadata={"tenant_id": str(tenant_id), "amount": str(amount)},
        )


def stripe_signature(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhook deliveries."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


async def ledger_total(store: MemoryCreditStore, tenant_id: UUID) -> Decimal:
    return await store.ledger.total_for_tenant(tenant_id)


@pytest.fixture
def store() -> MemoryCreditStore:
    return MemoryCreditStore(
        tenants=[TenantProfile(tenant_id=TENANT_A, name="Acme Bistro", email="billing@acme.test"), TENANT_B]
    )


@pytest.fixture
def credit_service(store: MemoryCreditStore) -> CreditService:
    return CreditService(store, retry_attempts=3, retry_wait_seconds=0)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Session-Token": create_session_token("adm")}


@pytest.fixture
def tenant_headers() -> dict[str, str]:
    return {"X-Session-Token": create_session_token("tenant", TENANT_A)}


@pytest_asyncio.fixture
async def client(store, credit_service, gateway) -> AsyncGenerator[AsyncClient, None]:
    from tenant_credits.deps import get_credit_service, get_gateway
    from tenant_credits.main import app
    from tenant_credits.storage.base import get_store

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_credit_service] = lambda: credit_service
    app.dependency_overrides[get_gateway] = lambda: gateway
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()

import time
from decimal import Decimal

import orjson
import pytest

from conftest import TENANT_A, TENANT_B, UNKNOWN_TENANT, stripe_signature
from tenant_credits.services import payments

pytestmark = pytest.mark.asyncio


def checkout_completed(
    session_id: str,
    event_id: str = "evt_1",
    embedded_amount: int = 999999,
    event_type: str = "checkout.session.completed",
    api_version: str = "2025-01-27.acacia",
) -> bytes:
    # The embedded snapshot amount is deliberately wrong; only the re-fetched session counts.
    return orjson.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "api_version": api_version,
            "data": {"object": {"id": session_id, "object": "checkout.session", "amount_total": embedded_amount}},
        }
    )


async def post_webhook(client, payload: bytes, signature: str | None):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["Stripe-Signature"] = signature
    return await client.post("/v1/payments/webhook", content=payload, headers=headers)


async def test_webhook_credits_once_per_payment_intent(client, gateway, store):
    gateway.add_session("cs_1", TENANT_A, amount_total=2550, payment_intent_id="pi_abc")
    payload = checkout_completed("cs_1")

    r = await post_webhook(client, payload, stripe_signature(payload))
    assert r.status_code == 200
    assert r.json() == {"received": True, "status": "credited"}
    assert await store.balances.get(TENANT_A) == Decimal("25.50")

    r = await post_webhook(client, payload, stripe_signature(payload))
    assert r.status_code == 200
    assert r.json()["status"] == "replayed"
    assert await store.balances.get(TENANT_A) == Decimal("25.50")
    assert len(await store.ledger.list_for_tenant(TENANT_A)) == 1


async def test_webhook_rejects_bad_signature(client, gateway, store):
    gateway.add_session("cs_1", TENANT_A, amount_total=2550, payment_intent_id="pi_abc")
    payload = checkout_completed("cs_1")

    for signature in [None, "garbage", stripe_signature(payload, secret="whsec_other")]:
        r = await post_webhook(client, payload, signature)
        assert r.status_code == 401
        assert r.json()["error"]["code"] == "INVALID_SIGNATURE"

    assert gateway.retrieved == []
    assert await store.balances.get(TENANT_A) == Decimal("0.00")


async def test_webhook_rejects_stale_timestamp(client, gateway, store):
    gateway.add_session("cs_1", TENANT_A, amount_total=2550)
    payload = checkout_completed("cs_1")

    r = await post_webhook(client, payload, stripe_signature(payload, timestamp=int(time.time()) - 3600))

    assert r.status_code == 401
    assert await store.balances.get(TENANT_A) == Decimal("0.00")


async def test_webhook_rejects_tampered_body(client, gateway, store):
    gateway.add_session("cs_1", TENANT_A, amount_total=2550)
    payload = checkout_completed("cs_1")
    signature = stripe_signature(payload)

    r = await post_webhook(client, checkout_completed("cs_1", event_id="evt_forged"), signature)

    assert r.status_code == 401


async def test_webhook_acknowledges_other_event_types(client, gateway):
    payload = orjson.dumps(
        {"id": "evt_2", "type": "payment_intent.created", "data": {"object": {"id": "pi_1"}}}
    )
    r = await post_webhook(client, payload, stripe_signature(payload))
    assert r.status_code == 200
    assert r.json() == {"received": True}
    assert gateway.retrieved == []


async def test_webhook_quarantines_malformed_event(client, gateway):
    payload = b'{"type": "checkout.session.completed", "data": {}}'
    r = await post_webhook(client, payload, stripe_signature(payload))
    assert r.status_code == 200
    assert r.json() == {"received": True}
    assert gateway.retrieved == []


async def test_webhook_acknowledges_unresolved_tenant(client, gateway, store):
    gateway.add_session("cs_orphan", None, amount_total=5000, payment_intent_id="pi_orphan")
    payload = checkout_completed("cs_orphan")

    r = await post_webhook(client, payload, stripe_signature(payload))

    assert r.status_code == 200
    assert r.json() == {"received": True, "status": "unresolved"}
    assert len(await store.list_unresolved()) == 1


async def test_create_checkout_session(client, gateway, tenant_headers):
    r = await client.post(
        "/v1/payments/checkout-session",
        json={"tenant_id": str(TENANT_A), "amount": "75.00"},
        headers=tenant_headers,
    )
    assert r.status_code == 200
    assert r.json() == {"checkout_url": "https://checkout.stripe.test/cs_test_new", "session_id": "cs_test_new"}
    created = gateway.created[0]
    assert created["tenant_id"] == TENANT_A
    assert created["amount"] == Decimal("75.00")
    assert created["currency"] == "brl"
    assert created["success_url"] == "http://test/v1/payments/success?sid={CHECKOUT_SESSION_ID}"
    assert created["cancel_url"] == "http://test/v1/payments/cancel"
    assert created["product_name"] == "Tenant credits - Acme Bistro"
    assert created["customer_email"] == "billing@acme.test"


async def test_create_checkout_enforces_minimum(client, gateway, admin_headers):
    r = await client.post(
        "/v1/payments/checkout-session",
        json={"tenant_id": str(TENANT_A), "amount": "49.99"},
        headers=admin_headers,
    )
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "INVALID_MINIMUM_AMOUNT"
    assert gateway.created == []


async def test_create_checkout_scoping_and_unknown_tenant(client, tenant_headers, admin_headers):
    r = await client.post(
        "/v1/payments/checkout-session",
        json={"tenant_id": str(TENANT_B), "amount": "60.00"},
        headers=tenant_headers,
    )
    assert r.status_code == 403

    r = await client.post(
        "/v1/payments/checkout-session",
        json={"tenant_id": str(UNKNOWN_TENANT), "amount": "60.00"},
        headers=admin_headers,
    )
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "TENANT_NOT_FOUND"


async def test_success_and_cancel_pages(client):
    r = await client.get("/v1/payments/success", params={"sid": "cs_1"})
    assert r.json()["session_id"] == "cs_1"
    r = await client.get("/v1/payments/cancel")
    assert r.json()["status"] == "canceled"


async def test_create_checkout_without_tenant_details(client, gateway, admin_headers):
    r = await client.post(
        "/v1/payments/checkout-session",
        json={"tenant_id": str(TENANT_B), "amount": "50.00"},
        headers=admin_headers,
    )
    assert r.status_code == 200
    created = gateway.created[0]
    assert created["product_name"] == "Tenant credits"
    assert created["customer_email"] is None


async def test_delayed_payment_is_credited_on_async_success(client, gateway, store):
    gateway.add_session("cs_boleto", TENANT_A, amount_total=6000, payment_intent_id="pi_boleto", payment_status="unpaid")
    payload = checkout_completed("cs_boleto", event_id="evt_completed")

    r = await post_webhook(client, payload, stripe_signature(payload))
    assert r.json() == {"received": True, "status": "unresolved"}
    assert await store.balances.get(TENANT_A) == Decimal("0.00")

    gateway.add_session("cs_boleto", TENANT_A, amount_total=6000, payment_intent_id="pi_boleto", payment_status="paid")
    payload = checkout_completed(
        "cs_boleto", event_id="evt_settled", event_type="checkout.session.async_payment_succeeded"
    )

    r = await post_webhook(client, payload, stripe_signature(payload))
    assert r.json() == {"received": True, "status": "credited"}
    assert await store.balances.get(TENANT_A) == Decimal("60.00")


class RecordingLog:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def info(self, event: str, **kw) -> None:
        self.events.append((event, kw))

    warning = info


async def test_old_api_version_is_logged_and_processed(client, gateway, store, monkeypatch):
    log = RecordingLog()
    monkeypatch.setattr(payments, "log", log)
    gateway.add_session("cs_1", TENANT_A, amount_total=2550, payment_intent_id="pi_abc")
    payload = checkout_completed("cs_1", api_version="2023-10-16")

    r = await post_webhook(client, payload, stripe_signature(payload))

    assert r.json() == {"received": True, "status": "credited"}
    assert (
        "webhook_api_version_mismatch",
        {"event_id": "evt_1", "api_version": "2023-10-16", "expected_prefix": "2025"},
    ) in log.events


async def test_current_api_version_is_not_flagged(client, gateway, monkeypatch):
    log = RecordingLog()
    monkeypatch.setattr(payments, "log", log)
    gateway.add_session("cs_1", TENANT_A, amount_total=2550, payment_intent_id="pi_abc")
    payload = checkout_completed("cs_1")

    await post_webhook(client, payload, stripe_signature(payload))

    assert [e for e, _ in log.events if e == "webhook_api_version_mismatch"] == []

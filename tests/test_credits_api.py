import pytest

from conftest import TENANT_A, TENANT_B, UNKNOWN_TENANT
from tenant_credits.core.security import create_session_token

pytestmark = pytest.mark.asyncio


async def grant(client, headers, tenant_id=TENANT_A, **extra):
    return await client.post("/v1/credits/courtesy", json={"tenant_id": str(tenant_id), **extra}, headers=headers)


async def test_courtesy_grant_and_balance(client, admin_headers):
    r = await grant(client, admin_headers, amount="10.00")
    assert r.status_code == 200
    assert r.json() == {"status": "credited", "amount": "10.00", "new_balance": "10.00"}

    r = await grant(client, admin_headers, amount="10.005")
    assert r.json() == {"status": "credited", "amount": "10.01", "new_balance": "20.01"}

    r = await client.get(f"/v1/credits/{TENANT_A}/balance", headers=admin_headers)
    assert r.status_code == 200
    assert r.json() == {"balance": "20.01"}


@pytest.mark.parametrize("extra", [{}, {"amount": None}, {"amount": "0"}, {"amount": "-3"}])
async def test_courtesy_default_amount(client, admin_headers, extra):
    r = await grant(client, admin_headers, **extra)
    assert r.status_code == 200
    assert r.json()["amount"] == "10.00"


async def test_courtesy_requires_admin(client, tenant_headers, store):
    r = await grant(client, tenant_headers, amount="10.00")
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "ACCESS_DENIED"
    assert await store.ledger.list_for_tenant(TENANT_A) == []


async def test_courtesy_unknown_tenant(client, admin_headers):
    r = await grant(client, admin_headers, tenant_id=UNKNOWN_TENANT, amount="10.00")
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "TENANT_NOT_FOUND"


async def test_requests_without_valid_session_are_rejected(client):
    r = await client.get(f"/v1/credits/{TENANT_A}/balance")
    assert r.status_code == 401
    r = await client.get(f"/v1/credits/{TENANT_A}/balance", headers={"X-Session-Token": "forged"})
    assert r.status_code == 401
    r = await client.get(
        f"/v1/credits/{TENANT_A}/balance",
        headers={"X-Session-Token": create_session_token("tenant")},
    )
    assert r.status_code == 401


async def test_balance_scoping(client, admin_headers, tenant_headers):
    await grant(client, admin_headers, tenant_id=TENANT_B, amount="5.00")

    r = await client.get(f"/v1/credits/{TENANT_B}/balance", headers=tenant_headers)
    assert r.status_code == 403

    r = await client.get(f"/v1/credits/{TENANT_A}/balance", headers=tenant_headers)
    assert r.json() == {"balance": "0.00"}

    r = await client.get(f"/v1/credits/{TENANT_B}/balance", headers=admin_headers)
    assert r.json() == {"balance": "5.00"}


async def test_malformed_tenant_id_is_a_validation_error(client, admin_headers):
    r = await client.get("/v1/credits/not-a-uuid/balance", headers=admin_headers)
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"


async def test_ledger_listing(client, admin_headers, tenant_headers):
    await grant(client, admin_headers, amount="1.00")
    await grant(client, admin_headers, amount="2.00", description="apology")

    r = await client.get(f"/v1/credits/{TENANT_A}/ledger", headers=tenant_headers, params={"limit": 1})
    assert r.status_code == 200
    body = r.json()
    assert body["limit"] == 1
    assert [(e["amount"], e["source"], e["description"]) for e in body["entries"]] == [
        ("2.00", "courtesy", "apology")
    ]


async def test_admin_endpoints(client, admin_headers, tenant_headers, store, credit_service):
    await credit_service.grant_credit(TENANT_A, "4.00", "courtesy")

    r = await client.get("/v1/admin/balance-audit", headers=admin_headers)
    assert r.status_code == 200
    assert r.json() == {"consistent": True, "drifts": []}

    r = await client.get("/v1/admin/unresolved-payments", headers=admin_headers)
    assert r.json()["items"] == []

    r = await client.get("/v1/admin/balance-audit", headers=tenant_headers)
    assert r.status_code == 403

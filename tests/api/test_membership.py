"""Membership endpoint tests."""

import pytest

from tests.conftest import set_membership


@pytest.mark.asyncio
async def test_unknown_user_is_nonmember(client):
    response = await client.get("/membership/status", params={"userId": "stranger"})

    assert response.status_code == 200
    data = response.json()
    assert data["userId"] == "stranger"
    assert data["role"] == "nonmember"
    assert data["status"] == "none"
    assert data["customerRef"] is None


@pytest.mark.asyncio
async def test_member_status(client, db):
    await set_membership(db, "m1", "medium", email="m1@example.com", customer_ref="cus_1")

    data = (await client.get("/membership/status", params={"userId": "m1"})).json()

    assert data["role"] == "medium"
    assert data["status"] == "active"
    assert data["email"] == "m1@example.com"
    assert data["customerRef"] == "cus_1"


@pytest.mark.asyncio
async def test_status_requires_user_id(client):
    response = await client.get("/membership/status")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_REQUEST"


@pytest.mark.asyncio
async def test_checkout_for_tier(client, gateway):
    response = await client.post(
        "/membership/checkout",
        json={"userId": "m1", "tier": "Medium", "email": "m1@example.com"},
        headers={"X-Request-ID": "req-42"},
    )

    assert response.status_code == 200
    assert response.json()["url"].startswith("https://checkout.test/sub/")
    request = gateway.subscriptions[-1]
    assert request.price_ref == "price_medium"
    assert request.tier == "medium"
    assert request.payer_contact == "m1@example.com"
    assert request.request_id == "req-42"


@pytest.mark.asyncio
async def test_checkout_reuses_stored_customer(client, db, gateway):
    await set_membership(db, "m1", "small", customer_ref="cus_7")

    await client.post("/membership/checkout", json={"userId": "m1", "tier": "large"})

    assert gateway.subscriptions[-1].customer_ref == "cus_7"


@pytest.mark.asyncio
async def test_checkout_unknown_tier_is_400(client, gateway):
    response = await client.post("/membership/checkout", json={"userId": "m1", "tier": "mega"})

    assert response.status_code == 400
    assert gateway.subscriptions == []


@pytest.mark.asyncio
async def test_portal_requires_billing_account(client):
    response = await client.post("/membership/portal", json={"userId": "m1"})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_portal_link(client, db, gateway):
    await set_membership(db, "m1", "large", customer_ref="cus_9")

    response = await client.post("/membership/portal", json={"userId": "m1"})

    assert response.status_code == 200
    assert response.json()["url"] == "https://billing.test/portal/cus_9"
    assert gateway.portals == [("cus_9", "https://app.test/billing")]

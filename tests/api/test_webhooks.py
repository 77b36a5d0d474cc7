"""Payment webhook endpoint tests."""

from unittest.mock import patch

import pytest

from entry_engine.models import ProcessedGatewayEvent
from entry_engine.services.entries import EntryStore

from tests.conftest import checkout_completed_event, make_event, sign_payload


async def post_event(client, payload: bytes, signature: str | None = None):
    headers = {"Content-Type": "application/json"}
    headers["Stripe-Signature"] = signature if signature is not None else sign_payload(payload)
    return await client.post("/webhooks/payment-events", content=payload, headers=headers)


async def pending_entry(client, db, user_id: str = "u1"):
    response = await client.post("/entries", json={"userId": user_id, "tournamentId": "spring-open"})
    assert response.status_code == 200
    return await EntryStore(db).get("spring-open", user_id)


@pytest.mark.asyncio
async def test_bad_signature_is_400(client):
    payload = make_event("checkout.session.completed", {"id": "cs_1"})

    response = await post_event(client, payload, signature="t=1,v1=deadbeef")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "GATEWAY_SIGNATURE_INVALID"


@pytest.mark.asyncio
async def test_missing_signature_is_400(client):
    payload = make_event("checkout.session.completed", {"id": "cs_1"})

    response = await client.post("/webhooks/payment-events", content=payload)

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_payment_event_is_acknowledged(client, db, admin_headers):
    entry = await pending_entry(client, db)
    payload = checkout_completed_event(entry, event_id="evt_api_paid")

    response = await post_event(client, payload)

    assert response.status_code == 200
    assert response.json() == {
        "received": True,
        "eventId": "evt_api_paid",
        "kind": "entry_checkout_completed",
        "outcome": "applied",
    }
    snapshot = (await client.get("/admin/tournaments/spring-open", headers=admin_headers)).json()
    assert snapshot["confirmed"] == 1
    assert snapshot["held"] == 1


@pytest.mark.asyncio
async def test_redelivery_is_acknowledged_as_duplicate(client, db):
    entry = await pending_entry(client, db)
    payload = checkout_completed_event(entry, event_id="evt_api_dup")

    await post_event(client, payload)
    response = await post_event(client, payload)

    assert response.status_code == 200
    assert response.json()["outcome"] == "duplicate"


@pytest.mark.asyncio
async def test_conflict_is_acknowledged(client):
    payload = make_event(
        "checkout.session.completed",
        {
            "id": "cs_orphan",
            "mode": "payment",
            "payment_status": "paid",
            "metadata": {"type": "tournament_entry", "tournamentId": "spring-open", "userId": "ghost"},
        },
    )

    response = await post_event(client, payload)

    assert response.status_code == 200
    assert response.json()["outcome"] == "conflict"


@pytest.mark.asyncio
async def test_partial_failure_is_500_and_retried(client, db):
    entry = await pending_entry(client, db)
    payload = checkout_completed_event(entry, event_id="evt_api_retry")

    with patch.object(EntryStore, "mark_paid", side_effect=RuntimeError("connection lost")):
        failed = await post_event(client, payload)

    assert failed.status_code == 500
    assert failed.json()["error"]["code"] == "INTERNAL_ERROR"
    assert failed.json()["error"]["message"] == "Internal server error"
    assert await db.get(ProcessedGatewayEvent, "evt_api_retry", populate_existing=True) is None

    retried = await post_event(client, payload)

    assert retried.status_code == 200
    assert retried.json()["outcome"] == "applied"
    paid = await EntryStore(db).get("spring-open", "u1")
    assert paid.status == "paid"


@pytest.mark.asyncio
async def test_malformed_event_is_400(client):
    payload = b'{"id": "evt_bad"}'

    response = await post_event(client, payload)

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_REQUEST"

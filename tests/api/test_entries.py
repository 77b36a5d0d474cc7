"""Entry and waitlist endpoint tests."""

import pytest

from entry_engine.utils.errors import GatewayCallFailure

from tests.conftest import set_membership


async def configure(client, admin_headers, tournament_id: str, max_slots: int) -> None:
    response = await client.put(
        f"/admin/tournaments/{tournament_id}",
        json={"maxSlots": max_slots},
        headers=admin_headers,
    )
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_entry_returns_checkout(client):
    response = await client.post(
        "/entries",
        json={"userId": "u1", "tournamentId": "spring-open", "payerContact": "u1@example.com"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["checkoutUrl"].startswith("https://checkout.test/pay/")
    assert data["amountCents"] == 3000
    assert data["entry"]["status"] == "pending"
    assert data["entry"]["tournamentId"] == "spring-open"
    assert data["entry"]["holdExpiresAt"] is not None
    assert "alreadyRegistered" not in data
    assert "comped" not in data


@pytest.mark.asyncio
async def test_repeat_entry_is_already_registered(client):
    body = {"userId": "u1", "tournamentId": "spring-open"}
    first = (await client.post("/entries", json=body)).json()

    response = await client.post("/entries", json=body)

    assert response.status_code == 200
    data = response.json()
    assert data["alreadyRegistered"] is True
    assert data["checkoutUrl"] == first["checkoutUrl"]
    assert data["entry"]["id"] == first["entry"]["id"]


@pytest.mark.asyncio
async def test_comped_entry(client, db, gateway):
    await set_membership(db, "vip", "large")

    response = await client.post("/entries", json={"userId": "vip", "tournamentId": "spring-open"})

    assert response.status_code == 200
    data = response.json()
    assert data["comped"] is True
    assert data["amountCents"] == 0
    assert data["entry"]["status"] == "comped"
    assert "checkoutUrl" not in data
    assert gateway.checkouts == []


@pytest.mark.asyncio
async def test_full_tournament_returns_409(client, admin_headers):
    await configure(client, admin_headers, "tiny", 1)
    await client.post("/entries", json={"userId": "u1", "tournamentId": "tiny"})

    response = await client.post("/entries", json={"userId": "u2", "tournamentId": "tiny"})

    assert response.status_code == 409
    assert response.json() == {
        "capacityFull": True,
        "maxSlots": 1,
        "current": 1,
        "waitlistAvailable": True,
    }


@pytest.mark.asyncio
async def test_full_tournament_with_opt_in_returns_202(client, admin_headers):
    await configure(client, admin_headers, "tiny", 1)
    await client.post("/entries", json={"userId": "u1", "tournamentId": "tiny"})

    response = await client.post(
        "/entries",
        json={"userId": "u2", "tournamentId": "tiny", "joinWaitlistIfFull": True},
    )

    assert response.status_code == 202
    data = response.json()
    assert data["waitlisted"] is True
    assert data["position"] == 1
    assert isinstance(data["rowId"], int)


@pytest.mark.asyncio
async def test_missing_user_is_400(client):
    response = await client.post(
        "/entries",
        json={"tournamentId": "spring-open"},
        headers={"X-Request-ID": "trace-123"},
    )

    assert response.status_code == 400
    data = response.json()
    assert data["error"]["code"] == "INVALID_REQUEST"
    assert data["error"]["details"]["errors"][0]["field"] == "userId"
    assert data["traceId"] == "trace-123"
    assert response.headers["X-Request-ID"] == "trace-123"


@pytest.mark.asyncio
async def test_blank_identifier_is_400(client):
    response = await client.post("/entries", json={"userId": "   ", "tournamentId": "spring-open"})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_gateway_failure_is_502(client, gateway, admin_headers):
    gateway.fail_with = GatewayCallFailure("create_one_off_checkout", "connection reset")

    response = await client.post("/entries", json={"userId": "u1", "tournamentId": "spring-open"})

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "GATEWAY_UNAVAILABLE"

    snapshot = await client.get("/admin/tournaments/spring-open", headers=admin_headers)
    assert snapshot.json()["held"] == 0


@pytest.mark.asyncio
async def test_busy_tournament_is_503(client, lock_manager):
    held = await lock_manager.acquire("busy-cup")
    try:
        response = await client.post("/entries", json={"userId": "u1", "tournamentId": "busy-cup"})
    finally:
        await lock_manager.release(held)

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "LOCK_UNAVAILABLE"


# =============================================================================
# Waitlist
# =============================================================================


@pytest.mark.asyncio
async def test_join_and_leave_waitlist(client):
    joined = await client.post("/tournaments/spring-open/waitlist", json={"userId": "a"})
    second = await client.post("/tournaments/spring-open/waitlist", json={"userId": "b"})

    assert joined.status_code == 202
    assert joined.json()["position"] == 1
    assert second.json()["position"] == 2

    left = await client.delete("/tournaments/spring-open/waitlist/a")

    assert left.status_code == 200
    assert left.json()["status"] == "canceled"
    assert left.json()["cancelReason"] == "withdrawn"


@pytest.mark.asyncio
async def test_leave_without_row_is_404(client):
    response = await client.delete("/tournaments/spring-open/waitlist/nobody")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "WAITLIST_ROW_NOT_FOUND"


@pytest.mark.asyncio
async def test_liveness(client):
    response = await client.get("/health/live")

    assert response.status_code == 200
    assert response.json() == {"status": "alive"}

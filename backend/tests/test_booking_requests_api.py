import pytest

from booking_requests.services.payment_gateway import CardDeclined


@pytest.mark.anyio
async def test_approve_endpoint_returns_confirmed(async_client, seed_booking):
    await seed_booking(42)

    resp = await async_client.post(
        "/api/booking-requests/approve",
        json={"booking_id": 42, "action": "approve", "admin_id": "admin-1"},
        headers={"X-Correlation-Id": "cid-approve-42"},
    )

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["success"] is True
    assert body["booking_id"] == 42
    assert body["status"] == "CONFIRMED"
    assert body["message"] == "Booking request approved and payment processed successfully"
    assert body["correlation_id"] == "cid-approve-42"
    assert resp.headers["X-Correlation-Id"] == "cid-approve-42"


@pytest.mark.anyio
async def test_reject_endpoint_uses_default_reason(async_client, seed_booking, test_db):
    await seed_booking(44)

    resp = await async_client.post(
        "/api/booking-requests/reject",
        json={"booking_id": 44, "action": "reject", "admin_id": "admin-1"},
    )

    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "REJECTED"
    booking = await test_db.bookings.find_one({"_id": 44})
    assert booking["rejection_reason"] == "No specific reason provided"
    assert resp.headers.get("X-Correlation-Id")


@pytest.mark.anyio
async def test_payment_failure_is_400_with_should_retry(async_client, seed_booking, gateway):
    await seed_booking(43)
    gateway.outcomes = [CardDeclined()]

    resp = await async_client.post(
        "/api/booking-requests/approve",
        json={"booking_id": 43, "action": "approve", "admin_id": "admin-1"},
    )

    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["should_retry"] is True
    assert body["status"] == "PENDING_CONFIRMATION"
    assert body["error"].startswith("Payment processing failed")
    assert body["code"] == "payment_failed"


@pytest.mark.anyio
async def test_already_confirmed_is_400_invalid_state(async_client, seed_booking, test_db):
    await seed_booking(45, status="CONFIRMED")

    resp = await async_client.post(
        "/api/booking-requests/approve",
        json={"booking_id": 45, "action": "approve", "admin_id": "admin-1"},
    )

    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["code"] == "invalid_state"
    assert body["error"] == "Booking is not in PENDING_CONFIRMATION status. Current status: CONFIRMED"
    assert body["correlation_id"]
    assert await test_db.payment_attempts.count_documents({"booking_id": 45}) == 0


@pytest.mark.anyio
async def test_unknown_booking_is_404(async_client):
    resp = await async_client.post(
        "/api/booking-requests/approve",
        json={"booking_id": 404404, "action": "approve", "admin_id": "admin-1"},
    )

    assert resp.status_code == 404
    body = resp.json()
    assert body["success"] is False
    assert body["error"] == "Booking not found"
    assert body["code"] == "booking_not_found"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "payload",
    [
        {"booking_id": 0, "action": "approve", "admin_id": "admin-1"},
        {"booking_id": -3, "action": "approve", "admin_id": "admin-1"},
        {"booking_id": 42, "action": "approve", "admin_id": ""},
        {"booking_id": 42, "action": "approve", "admin_id": "   "},
        {"booking_id": 42, "action": "cancel", "admin_id": "admin-1"},
        {"action": "approve", "admin_id": "admin-1"},
    ],
)
async def test_invalid_payloads_are_400(async_client, payload, gateway):
    resp = await async_client.post("/api/booking-requests/approve", json=payload)

    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["code"] == "validation_error"
    assert gateway.calls == []


@pytest.mark.anyio
async def test_path_and_body_action_must_match(async_client, seed_booking, gateway, test_db):
    await seed_booking(42)

    resp = await async_client.post(
        "/api/booking-requests/reject",
        json={"booking_id": 42, "action": "approve", "admin_id": "admin-1"},
    )

    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"
    assert gateway.calls == []
    booking = await test_db.bookings.find_one({"_id": 42})
    assert booking["status"] == "PENDING_CONFIRMATION"


@pytest.mark.anyio
async def test_events_endpoint_lists_timeline_and_attempts(async_client, seed_booking):
    await seed_booking(42)
    await async_client.post(
        "/api/booking-requests/approve",
        json={"booking_id": 42, "action": "approve", "admin_id": "admin-1"},
    )

    resp = await async_client.get("/api/booking-requests/42/events")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "CONFIRMED"
    types = [e["event_type"] for e in body["events"]]
    assert types[0] == "submitted"
    assert "approved" in types
    assert "email_sent" in types
    assert [a["status"] for a in body["payment_attempts"]] == ["success"]


@pytest.mark.anyio
async def test_events_endpoint_unknown_booking(async_client):
    resp = await async_client.get("/api/booking-requests/777/events")
    assert resp.status_code == 404


@pytest.mark.anyio
async def test_health(async_client):
    resp = await async_client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True


@pytest.mark.anyio
async def test_api_health_uses_request_database(async_client):
    resp = await async_client.get("/api/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["service"] == "booking-requests"
    assert isinstance(body["ok"], bool)

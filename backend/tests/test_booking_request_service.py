import anyio
import pytest
from pymongo.errors import AutoReconnect

from booking_requests.domain.booking_state_machine import ApproveAction, RejectAction
from booking_requests.errors import BookingNotFound, BookingStoreError, InvalidBookingState
from booking_requests.services.payment_gateway import CardDeclined, TransientGatewayError
from conftest import LostResponse


async def _events(test_db, booking_id, event_type=None):
    flt = {"booking_id": booking_id}
    if event_type:
        flt["event_type"] = event_type
    return await test_db.booking_request_events.find(flt).to_list(length=100)


@pytest.mark.anyio
async def test_approve_charges_and_confirms(services, seed_booking, test_db, gateway, email_service):
    await seed_booking(42, total_amount=13000)

    result = await services.machine.process(42, ApproveAction(), "admin-1")

    assert result.success is True
    assert result.status == "CONFIRMED"
    assert result.message == "Booking request approved and payment processed successfully"

    booking = await test_db.bookings.find_one({"_id": 42})
    assert booking["status"] == "CONFIRMED"
    assert booking["paid_amount"] == 13000
    assert booking["charge_id"] == result.charge_id
    assert booking["payment_provider"] == "fake"
    assert booking["admin_reviewed_by"] == "admin-1"
    assert "review_claim" not in booking

    assert len(gateway.calls) == 1
    assert gateway.calls[0]["amount"] == 13000
    assert gateway.calls[0]["idempotency_key"] == "booking-request-42-approval-1"

    assert len(await _events(test_db, 42, "approved")) == 1
    approval_emails = [m for m in email_service.calls if m["template_id"] == "booking-request-approved"]
    assert len(approval_emails) == 1
    assert approval_emails[0]["recipients"] == ["hanako@example.com"]


@pytest.mark.anyio
async def test_card_declined_keeps_booking_pending_and_escalates(services, seed_booking, test_db, gateway, email_service):
    await seed_booking(43)
    gateway.outcomes = [CardDeclined(), CardDeclined(), CardDeclined()]

    result = await services.machine.process(43, ApproveAction(), "admin-1")

    assert result.success is False
    assert result.should_retry is True
    assert result.status == "PENDING_CONFIRMATION"
    assert result.error.startswith("Payment processing failed:")

    # Declines are terminal: one gateway call per approval
    assert len(gateway.calls) == 1

    booking = await test_db.bookings.find_one({"_id": 43})
    assert booking["status"] == "PENDING_CONFIRMATION"
    assert booking.get("charge_id") is None
    assert "review_claim" not in booking

    failed = await _events(test_db, 43, "payment_failed")
    assert len(failed) == 1
    assert failed[0]["event_data"]["error_code"] == "card_declined"
    assert failed[0]["event_data"]["attempts"] == 1

    templates = [m["template_id"] for m in email_service.calls]
    assert "booking-request-payment-failed" in templates
    admin_alerts = [m for m in email_service.calls if m["template_id"] == "booking-request-admin-payment-failed"]
    assert len(admin_alerts) == 1
    assert admin_alerts[0]["recipients"] == ["contact@example.com", "operations@example.com"]


@pytest.mark.anyio
async def test_transient_gateway_exhaustion_retries_then_fails(services, seed_booking, test_db, gateway):
    await seed_booking(47)
    gateway.outcomes = [TransientGatewayError("503")] * 3

    result = await services.machine.process(47, ApproveAction(), "admin-1")

    assert result.success is False
    assert result.payment_attempts == 3
    assert len(gateway.calls) == 3
    assert await test_db.payment_attempts.count_documents({"booking_id": 47}) == 3


@pytest.mark.anyio
async def test_reapproval_after_payment_failure_uses_next_round_key(services, seed_booking, gateway):
    await seed_booking(48)
    gateway.outcomes = [CardDeclined()]

    first = await services.machine.process(48, ApproveAction(), "admin-1")
    second = await services.machine.process(48, ApproveAction(), "admin-1")

    assert first.success is False
    assert second.success is True
    assert [c["idempotency_key"] for c in gateway.calls] == [
        "booking-request-48-approval-1",
        "booking-request-48-approval-2",
    ]


@pytest.mark.anyio
async def test_reject_stores_reason_and_never_charges(services, seed_booking, test_db, gateway, email_service):
    await seed_booking(44)

    result = await services.machine.process(44, RejectAction(reason="fully booked"), "admin-2")

    assert result.success is True
    assert result.status == "REJECTED"
    assert result.message == "Booking request rejected successfully"

    booking = await test_db.bookings.find_one({"_id": 44})
    assert booking["status"] == "REJECTED"
    assert booking["rejection_reason"] == "fully booked"
    assert booking["admin_reviewed_by"] == "admin-2"
    assert booking.get("charge_id") is None

    assert gateway.calls == []
    assert await test_db.payment_attempts.count_documents({"booking_id": 44}) == 0
    assert len(await _events(test_db, 44, "rejected")) == 1
    rejection = [m for m in email_service.calls if m["template_id"] == "booking-request-rejected"]
    assert rejection[0]["data"]["rejectionReason"] == "fully booked"


@pytest.mark.anyio
async def test_approve_already_confirmed_is_invalid_state(services, seed_booking, test_db, gateway):
    await seed_booking(45, status="CONFIRMED")

    with pytest.raises(InvalidBookingState) as excinfo:
        await services.machine.process(45, ApproveAction(), "admin-1")

    assert excinfo.value.status_code == 400
    assert "Current status: CONFIRMED" in excinfo.value.message
    assert gateway.calls == []
    assert await test_db.payment_attempts.count_documents({"booking_id": 45}) == 0


@pytest.mark.anyio
@pytest.mark.parametrize("status", ["CONFIRMED", "REJECTED"])
async def test_terminal_bookings_are_immutable(services, seed_booking, test_db, status):
    await seed_booking(50, status=status)
    before = await test_db.bookings.find_one({"_id": 50})

    for action in (ApproveAction(), RejectAction(reason="late")):
        with pytest.raises(InvalidBookingState):
            await services.machine.process(50, action, "admin-1")

    after = await test_db.bookings.find_one({"_id": 50})
    assert after == before


@pytest.mark.anyio
async def test_missing_booking(services):
    with pytest.raises(BookingNotFound):
        await services.machine.process(999, ApproveAction(), "admin-1")


@pytest.mark.anyio
async def test_concurrent_approvals_charge_once(services, seed_booking, test_db, gateway):
    await seed_booking(51)
    results = []
    errors = []

    async def _approve(admin_id):
        try:
            results.append(await services.machine.process(51, ApproveAction(), admin_id))
        except InvalidBookingState as exc:
            errors.append(exc)

    async with anyio.create_task_group() as tg:
        tg.start_soon(_approve, "admin-1")
        tg.start_soon(_approve, "admin-2")

    assert len(results) == 1
    assert results[0].status == "CONFIRMED"
    assert len(errors) == 1
    assert len(gateway.calls) == 1
    assert len(await _events(test_db, 51, "approved")) == 1


@pytest.mark.anyio
async def test_reject_while_approval_in_flight_is_refused(services, seed_booking, test_db, gateway):
    await seed_booking(52)
    outcomes = {}

    async def _approve():
        outcomes["approve"] = await services.machine.process(52, ApproveAction(), "admin-1")

    async def _reject():
        try:
            outcomes["reject"] = await services.machine.process(52, RejectAction(reason="no"), "admin-2")
        except InvalidBookingState as exc:
            outcomes["reject"] = exc

    async with anyio.create_task_group() as tg:
        tg.start_soon(_approve)
        tg.start_soon(_reject)

    booking = await test_db.bookings.find_one({"_id": 52})
    if booking["status"] == "CONFIRMED":
        assert isinstance(outcomes["reject"], InvalidBookingState)
        assert len(gateway.calls) == 1
    else:
        # Reject won before the claim: nothing was charged
        assert booking["status"] == "REJECTED"
        assert gateway.calls == []


@pytest.mark.anyio
async def test_email_outage_does_not_undo_confirmation(services, seed_booking, test_db, email_service):
    await seed_booking(53)
    email_service.fail()

    result = await services.machine.process(53, ApproveAction(), "admin-1")

    assert result.success is True
    booking = await test_db.bookings.find_one({"_id": 53})
    assert booking["status"] == "CONFIRMED"
    failures = await test_db.email_failures.find({"booking_id": 53}).to_list(length=10)
    assert [f["email_type"] for f in failures] == ["request_approved"]
    assert len(await _events(test_db, 53, "email_failed")) == 1


@pytest.mark.anyio
async def test_store_failure_after_charge_pages_operators(services, seed_booking, test_db, gateway, email_service, monkeypatch, caplog):
    await seed_booking(54)

    async def _down(*args, **kwargs):
        raise AutoReconnect("primary unavailable")

    monkeypatch.setattr(services.machine.bookings, "mark_confirmed", _down)

    with caplog.at_level("CRITICAL"):
        with pytest.raises(BookingStoreError) as excinfo:
            await services.machine.process(54, ApproveAction(), "admin-1")

    assert excinfo.value.status_code == 500
    charge_id = excinfo.value.details["charge_id"]
    assert len(gateway.calls) == 1

    critical = await _events(test_db, 54, "system_error")
    assert len(critical) == 1
    assert critical[0]["severity"] == "CRITICAL"
    assert critical[0]["event_data"]["charge_id"] == charge_id

    assert "booking-request-critical-alert" in [m["template_id"] for m in email_service.calls]
    assert any(r.levelname == "CRITICAL" for r in caplog.records)


@pytest.mark.anyio
async def test_store_write_retried_before_escalating(services, seed_booking, test_db, monkeypatch, fake_sleep):
    await seed_booking(55)
    real_confirm = services.machine.bookings.mark_confirmed
    calls = []

    async def _flaky(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise AutoReconnect("blip")
        return await real_confirm(*args, **kwargs)

    monkeypatch.setattr(services.machine.bookings, "mark_confirmed", _flaky)

    result = await services.machine.process(55, ApproveAction(), "admin-1")

    assert result.success is True
    assert len(calls) == 2
    assert await test_db.booking_request_events.count_documents({"booking_id": 55, "event_type": "system_error"}) == 0


@pytest.mark.anyio
async def test_stale_review_claim_is_taken_over(services, seed_booking, test_db, gateway):
    from datetime import timedelta

    from booking_requests.utils import now_utc

    await seed_booking(56)
    await test_db.bookings.update_one(
        {"_id": 56},
        {"$set": {"review_claim": {"claim_id": "dead", "admin_id": "crashed", "claimed_at": now_utc() - timedelta(hours=1)}}},
    )

    result = await services.machine.process(56, ApproveAction(), "admin-1")

    assert result.success is True
    assert len(gateway.calls) == 1


@pytest.mark.anyio
async def test_live_review_claim_blocks_second_reviewer(services, seed_booking, test_db, gateway):
    from booking_requests.utils import now_utc

    await seed_booking(57)
    await test_db.bookings.update_one(
        {"_id": 57},
        {"$set": {"review_claim": {"claim_id": "busy", "admin_id": "admin-1", "claimed_at": now_utc()}}},
    )

    with pytest.raises(InvalidBookingState) as excinfo:
        await services.machine.process(57, RejectAction(reason="x"), "admin-2")

    assert "already being processed" in excinfo.value.message
    assert gateway.calls == []


@pytest.mark.anyio
async def test_confirm_that_landed_before_connection_dropped_completes_approval(
    services, seed_booking, test_db, gateway, email_service, monkeypatch
):
    await seed_booking(58)
    real_confirm = services.machine.bookings.mark_confirmed
    calls = []

    async def _ack_lost(*args, **kwargs):
        calls.append(1)
        doc = await real_confirm(*args, **kwargs)
        if len(calls) == 1:
            raise AutoReconnect("connection reset after write")
        return doc

    monkeypatch.setattr(services.machine.bookings, "mark_confirmed", _ack_lost)

    result = await services.machine.process(58, ApproveAction(), "admin-1")

    assert result.success is True
    assert result.status == "CONFIRMED"
    assert len(calls) == 2
    assert len(gateway.calls) == 1

    booking = await test_db.bookings.find_one({"_id": 58})
    assert booking["status"] == "CONFIRMED"
    assert booking["charge_id"] == result.charge_id

    approved = await _events(test_db, 58, "approved")
    assert len(approved) == 1
    assert approved[0]["event_data"]["charge_id"] == result.charge_id
    assert await _events(test_db, 58, "system_error") == []
    assert "booking-request-approved" in email_service.sent_templates()


@pytest.mark.anyio
async def test_reapproval_after_unacknowledged_charge_replays_it(services, seed_booking, test_db, gateway):
    await seed_booking(59)
    # The first call goes through at the gateway but the response never arrives
    gateway.outcomes = [LostResponse(TransientGatewayError("502"))] + [TransientGatewayError("503")] * 2

    first = await services.machine.process(59, ApproveAction(), "admin-1")
    second = await services.machine.process(59, ApproveAction(), "admin-1")

    assert first.success is False
    assert second.success is True
    assert {c["idempotency_key"] for c in gateway.calls} == {"booking-request-59-approval-1"}
    assert gateway.distinct_charge_ids() == [second.charge_id]

    failed = await _events(test_db, 59, "payment_failed")
    assert failed[0]["event_data"]["error_class"] == "retryable"
    assert failed[0]["event_data"]["declined"] is False


@pytest.mark.anyio
async def test_decline_is_recorded_as_terminal_round(services, seed_booking, test_db, gateway):
    await seed_booking(61)
    gateway.outcomes = [CardDeclined()]

    await services.machine.process(61, ApproveAction(), "admin-1")

    failed = await _events(test_db, 61, "payment_failed")
    assert failed[0]["event_data"]["error_class"] == "terminal"
    assert failed[0]["event_data"]["declined"] is True


@pytest.mark.anyio
async def test_unreadable_event_log_does_not_block_approval(services, seed_booking, test_db, gateway, monkeypatch):
    await seed_booking(60)

    async def _down(*args, **kwargs):
        raise AutoReconnect("events unavailable")

    monkeypatch.setattr(services.machine.audit, "count_events", _down)

    result = await services.machine.process(60, ApproveAction(), "admin-1")

    assert result.success is True
    assert gateway.calls[0]["idempotency_key"] == "booking-request-60-approval-1"
    booking = await test_db.bookings.find_one({"_id": 60})
    assert booking["status"] == "CONFIRMED"


@pytest.mark.anyio
async def test_claim_released_after_decline_with_unreadable_event_log(services, seed_booking, test_db, gateway, monkeypatch):
    await seed_booking(62)
    gateway.outcomes = [CardDeclined()]

    async def _down(*args, **kwargs):
        raise AutoReconnect("events unavailable")

    monkeypatch.setattr(services.machine.audit, "count_events", _down)

    result = await services.machine.process(62, ApproveAction(), "admin-1")

    assert result.success is False
    booking = await test_db.bookings.find_one({"_id": 62})
    assert booking["status"] == "PENDING_CONFIRMATION"
    assert booking.get("review_claim") is None

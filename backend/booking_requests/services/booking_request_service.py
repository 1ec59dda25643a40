"""Approve/reject orchestration for booking requests.

Side effects always run in the same order: payment, booking write, audit,
notifications. Audit and notification failures never undo a decision that
has already been written; a charge that cannot be recorded on the booking is
escalated as CRITICAL.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, assert_never

from motor.motor_asyncio import AsyncIOMotorDatabase

from booking_requests import config
from booking_requests.domain.booking_state_machine import (
    CONFIRMED,
    PENDING_CONFIRMATION,
    REJECTED,
    ApproveAction,
    BookingStateTransitionError,
    RejectAction,
    ReviewAction,
    validate_transition,
)
from booking_requests.domain.models import BookingRequest, ReviewResult
from booking_requests.errors import (
    BookingNotFound,
    BookingRequestErrorCode,
    BookingStoreError,
    InvalidBookingState,
)
from booking_requests.repositories.booking_repository import BookingRepository, PreconditionFailed
from booking_requests.services import audit as audit_events
from booking_requests.services.admin_escalation import AdminEscalationNotifier
from booking_requests.services.audit import AuditLogger
from booking_requests.services.notification_dispatcher import NotificationDispatcher
from booking_requests.services.payment_gateway import (
    ChargeFailed,
    ChargeResult,
    GatewayError,
    PaymentGatewayClient,
    approval_idempotency_key,
)
from booking_requests.services.retry_policy import RetryPolicy, Sleeper, classify_store_error, retry, store_policy

logger = logging.getLogger("booking_requests")

T = TypeVar("T")

APPROVED_MESSAGE = "Booking request approved and payment processed successfully"
REJECTED_MESSAGE = "Booking request rejected successfully"
IN_PROGRESS_MESSAGE = "Booking request is already being processed by another reviewer"
CHARGED_NOT_CONFIRMED = "Payment captured but booking could not be confirmed"


class BookingRequestStateMachine:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        *,
        payments: PaymentGatewayClient,
        dispatcher: NotificationDispatcher,
        escalation: AdminEscalationNotifier,
        audit: AuditLogger,
        store_retry: Optional[RetryPolicy] = None,
        sleep: Optional[Sleeper] = None,
        claim_ttl_seconds: Optional[int] = None,
    ) -> None:
        self.bookings = BookingRepository(db)
        self.payments = payments
        self.dispatcher = dispatcher
        self.escalation = escalation
        self.audit = audit
        self.store_retry = store_retry or store_policy()
        self._sleep = sleep
        self.claim_ttl_seconds = claim_ttl_seconds or config.REVIEW_CLAIM_TTL_SECONDS

    async def _store(self, op: Callable[[], Awaitable[T]]) -> T:
        """Run a booking store call under the store retry policy; re-raise the last error."""

        async def _attempt(_attempt_order: int) -> T:
            return await op()

        outcome = await retry(_attempt, classify_store_error, self.store_retry, sleep=self._sleep)
        if not outcome.ok:
            if outcome.error is None:
                raise RuntimeError("store call failed without an error")
            raise outcome.error
        return outcome.value  # type: ignore[return-value]

    async def process(self, booking_id: int, action: ReviewAction, admin_id: str) -> ReviewResult:
        """Apply an admin decision to a PENDING_CONFIRMATION booking.

        Raises BookingNotFound, InvalidBookingState or BookingStoreError.
        A payment failure is not an exception: it comes back as an
        unsuccessful ReviewResult with should_retry set.
        """

        doc = await self._store(lambda: self.bookings.get_by_id(booking_id))
        if doc is None:
            raise BookingNotFound(booking_id)

        status = doc.get("status")
        try:
            validate_transition(status, action.target_status)
        except BookingStateTransitionError:
            raise InvalidBookingState(booking_id, status) from None

        match action:
            case ApproveAction():
                return await self._approve(doc, admin_id)
            case RejectAction(reason=reason):
                return await self._reject(doc, reason, admin_id)
            case _:
                assert_never(action)

    async def _refresh_status(self, booking_id: int) -> Optional[Dict[str, Any]]:
        try:
            return await self._store(lambda: self.bookings.get_by_id(booking_id))
        except Exception:
            logger.exception("Could not re-read booking %s", booking_id)
            return None

    async def _lost_race(self, booking_id: int, exc: PreconditionFailed) -> InvalidBookingState:
        current = await self._refresh_status(booking_id)
        current_status = current.get("status") if current else None
        if exc.reason == "review_in_progress" or (
            current_status == PENDING_CONFIRMATION and current and current.get("review_claim")
        ):
            return InvalidBookingState(booking_id, current_status, IN_PROGRESS_MESSAGE)
        return InvalidBookingState(booking_id, current_status)

    # Reject

    async def _reject(self, doc: Dict[str, Any], reason: str, admin_id: str) -> ReviewResult:
        booking = BookingRequest.from_doc(doc)

        try:
            await self._store(
                lambda: self.bookings.mark_rejected(
                    doc,
                    admin_id=admin_id,
                    reason=reason,
                    ttl_seconds=self.claim_ttl_seconds,
                )
            )
        except PreconditionFailed as exc:
            raise await self._lost_race(booking.id, exc)
        except Exception as exc:
            logger.error("Rejecting booking %s failed: %s", booking.id, exc, exc_info=True)
            raise BookingStoreError(booking.id, "Failed to update booking status") from exc

        logger.info("Booking %s rejected by %s", booking.id, admin_id)
        await self.audit.append(
            booking.id,
            audit_events.REJECTED,
            {"rejection_reason": reason, "previous_status": PENDING_CONFIRMATION, "admin_id": admin_id},
            admin_id,
        )
        await self.dispatcher.send_rejection_notice(booking, reason, actor_id=admin_id)

        return ReviewResult(success=True, booking_id=booking.id, status=REJECTED, message=REJECTED_MESSAGE)

    # Approve

    async def _approve(self, doc: Dict[str, Any], admin_id: str) -> ReviewResult:
        booking = BookingRequest.from_doc(doc)

        try:
            claim_id = await self._store(
                lambda: self.bookings.claim_for_review(
                    doc,
                    admin_id=admin_id,
                    ttl_seconds=self.claim_ttl_seconds,
                )
            )
        except PreconditionFailed as exc:
            raise await self._lost_race(booking.id, exc)
        except Exception as exc:
            logger.error("Claiming booking %s failed: %s", booking.id, exc, exc_info=True)
            raise BookingStoreError(booking.id, "Failed to update booking status") from exc

        idempotency_key = approval_idempotency_key(booking.id, await self._approval_round(booking.id))

        if not booking.payment_method_id:
            failure = ChargeFailed(GatewayError("No payment method on file", code="missing_payment_method"), 0)
            return await self._payment_failed(booking, claim_id, failure, admin_id, idempotency_key)

        try:
            charge = await self.payments.charge(
                amount=booking.total_amount,
                booking_id=booking.id,
                payment_method_id=booking.payment_method_id,
                idempotency_key=idempotency_key,
            )
        except ChargeFailed as failure:
            return await self._payment_failed(booking, claim_id, failure, admin_id, idempotency_key)

        try:
            await self._store(
                lambda: self.bookings.mark_confirmed(
                    booking.id,
                    claim_id=claim_id,
                    admin_id=admin_id,
                    charge_id=charge.charge_id,
                    paid_amount=charge.amount,
                    provider=charge.provider,
                )
            )
        except Exception as exc:
            await self._confirm_failed(booking, claim_id, charge, exc, admin_id, idempotency_key)

        logger.info("Booking %s confirmed by %s (charge_id=%s)", booking.id, admin_id, charge.charge_id)
        await self.audit.append(
            booking.id,
            audit_events.APPROVED,
            {
                "charge_id": charge.charge_id,
                "amount": charge.amount,
                "payment_provider": charge.provider,
                "idempotency_key": idempotency_key,
                "previous_status": PENDING_CONFIRMATION,
                "admin_id": admin_id,
            },
            admin_id,
        )
        await self.dispatcher.send_approval_confirmation(booking, actor_id=admin_id)

        return ReviewResult(
            success=True,
            booking_id=booking.id,
            status=CONFIRMED,
            message=APPROVED_MESSAGE,
            charge_id=charge.charge_id,
        )

    async def _approval_round(self, booking_id: int) -> int:
        """1 + earlier declines. Unacknowledged or timed-out rounds are replayed, not restarted."""

        try:
            declines = await self._store(
                lambda: self.audit.count_events(booking_id, audit_events.PAYMENT_FAILED, data={"declined": True})
            )
        except Exception:
            # Round 1 can only replay an earlier outcome, never take a second charge
            logger.exception("Could not count payment declines for booking %s; using round 1", booking_id)
            return 1
        return 1 + declines

    async def _confirm_failed(
        self,
        booking: BookingRequest,
        claim_id: str,
        charge: ChargeResult,
        exc: Exception,
        admin_id: str,
        idempotency_key: str,
    ) -> None:
        """The confirm write reported an error after the charge went through.

        Returns when the write actually landed under our claim (its
        acknowledgement was lost); raises otherwise.
        """

        current = await self._refresh_status(booking.id)
        if current is not None and current.get("status") == CONFIRMED:
            if current.get("confirmed_claim_id") == claim_id:
                logger.warning("Confirm of booking %s reported %r but the write landed", booking.id, exc)
                return
            if current.get("charge_id") == charge.charge_id:
                # A takeover of our stale claim replayed the same charge and confirmed first
                raise InvalidBookingState(booking.id, CONFIRMED) from exc

        details = {
            "charge_id": charge.charge_id,
            "amount": charge.amount,
            "payment_provider": charge.provider,
            "idempotency_key": idempotency_key,
            "current_status": current.get("status") if current else None,
            "error": str(exc),
        }
        await self.escalation.notify_critical(
            booking.id,
            title=CHARGED_NOT_CONFIRMED,
            details=details,
            actor_id=admin_id,
        )
        raise BookingStoreError(
            booking.id,
            "Payment was processed but the booking could not be confirmed. Operators have been alerted.",
            {"charge_id": charge.charge_id},
        ) from exc

    async def _payment_failed(
        self,
        booking: BookingRequest,
        claim_id: str,
        failure: ChargeFailed,
        admin_id: str,
        idempotency_key: str,
    ) -> ReviewResult:
        logger.warning(
            "Payment failed for booking %s after %s attempt(s): %s (%s)",
            booking.id,
            failure.attempts,
            failure.message,
            failure.code,
        )
        # Recorded while the claim is still held so the next reviewer counts this round
        await self.audit.append(
            booking.id,
            audit_events.PAYMENT_FAILED,
            {
                "error_message": failure.message,
                "error_code": failure.code,
                "error_class": "retryable" if failure.exhausted else "terminal",
                "declined": failure.declined,
                "attempts": failure.attempts,
                "amount": booking.total_amount,
                "idempotency_key": idempotency_key,
                "admin_id": admin_id,
            },
            admin_id,
        )

        try:
            await self._store(lambda: self.bookings.release_claim(booking.id, claim_id))
        except Exception:
            # The claim expires on its own after the TTL
            logger.exception("Could not release review claim on booking %s", booking.id)
        await self.dispatcher.send_payment_failure(booking, failure.message, actor_id=admin_id)
        await self.escalation.notify_payment_failure(
            booking,
            error_message=failure.message,
            error_code=failure.code,
            attempts=failure.attempts,
            admin_id=admin_id,
        )

        message = f"Payment processing failed: {failure.message}"
        return ReviewResult(
            success=False,
            booking_id=booking.id,
            status=PENDING_CONFIRMATION,
            message=message,
            should_retry=True,
            error=message,
            error_code=BookingRequestErrorCode.PAYMENT_FAILED.value,
            payment_attempts=failure.attempts,
        )


async def record_submitted_request(
    db: AsyncIOMotorDatabase,
    audit: AuditLogger,
    booking_id: int,
    payload: Dict[str, Any],
) -> Dict[str, Any]:
    """Persist a request the way the booking creation flow hands it over.

    The payment method has already been captured; the request waits for an
    admin decision in PENDING_CONFIRMATION.
    """

    doc = await BookingRepository(db).insert_pending(booking_id, payload)
    await audit.append(
        booking_id,
        audit_events.SUBMITTED,
        {
            "tour_type": doc.get("tour_type"),
            "booking_date": doc.get("booking_date"),
            "total_amount": doc.get("total_amount"),
            "customer_email": doc.get("customer_email"),
        },
        doc.get("customer_email"),
    )
    return doc

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence

from booking_requests import config
from booking_requests.domain.models import BookingRequest
from booking_requests.repositories.email_failure_repository import EmailFailureRepository
from booking_requests.services import audit as audit_events
from booking_requests.services.audit import AuditLogger
from booking_requests.services.email import EmailService, classify_email_error
from booking_requests.services.retry_policy import RetryPolicy, Sleeper, email_policy, retry
from booking_requests.utils import as_utc, now_utc

logger = logging.getLogger("notification_dispatcher")


class NotificationKind(str, Enum):
    REQUEST_APPROVED = "request_approved"
    REQUEST_REJECTED = "request_rejected"
    PAYMENT_FAILED = "payment_failed"
    ADMIN_PAYMENT_FAILED = "admin_payment_failed"
    ADMIN_CRITICAL_ALERT = "admin_critical_alert"
    ADMIN_REMINDER = "admin_reminder"
    ADMIN_AUTO_REJECTION = "admin_auto_rejection"
    CUSTOMER_DELAY_NOTIFICATION = "customer_delay_notification"


class NotificationDispatcher:
    """Sends templated emails through the email retry policy.

    `send` never raises. A message that cannot be delivered ends up as an
    email failure record (plus an `email_failed` event) for manual follow-up.
    """

    def __init__(
        self,
        email: EmailService,
        audit: AuditLogger,
        failures: EmailFailureRepository,
        *,
        policy: Optional[RetryPolicy] = None,
        sleep: Optional[Sleeper] = None,
        templates: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.email = email
        self.audit = audit
        self.failures = failures
        self.policy = policy or email_policy()
        self.sleep = sleep
        self.templates = dict(templates or config.EMAIL_TEMPLATES)

    def template_for(self, kind: NotificationKind) -> str:
        return self.templates[kind.value]

    async def send(
        self,
        kind: NotificationKind,
        recipients: Sequence[str],
        data: Dict[str, Any],
        *,
        booking_id: Optional[int] = None,
        booking_details: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> bool:
        template_id = self.template_for(kind)
        recipients = [r for r in recipients if r]

        async def _attempt(_attempt_order: int) -> str:
            return await self.email.send_templated(template_id, recipients, data)

        outcome = await retry(_attempt, classify_email_error, self.policy, sleep=self.sleep)

        if outcome.ok:
            if booking_id is not None:
                await self.audit.append(
                    booking_id,
                    audit_events.EMAIL_SENT,
                    {
                        "email_type": kind.value,
                        "template_id": template_id,
                        "recipients": recipients,
                        "message_id": outcome.value,
                        "attempts": outcome.attempts,
                    },
                    actor_id,
                )
            return True

        reason = str(outcome.error) if outcome.error is not None else "unknown error"
        logger.error(
            "Email %s for booking %s failed after %s attempt(s): %s",
            kind.value,
            booking_id,
            outcome.attempts,
            reason,
        )
        await self._record_failure(
            kind,
            template_id,
            recipients,
            data,
            booking_id=booking_id,
            booking_details=booking_details,
            reason=reason,
            attempts=outcome.attempts,
            actor_id=actor_id,
        )
        return False

    async def _record_failure(
        self,
        kind: NotificationKind,
        template_id: str,
        recipients: Sequence[str],
        data: Dict[str, Any],
        *,
        booking_id: Optional[int],
        booking_details: Optional[Dict[str, Any]],
        reason: str,
        attempts: int,
        actor_id: Optional[str],
    ) -> None:
        is_admin = kind.value.startswith("admin_")
        doc: Dict[str, Any] = {
            "booking_id": booking_id,
            "customer_email": None if is_admin else (recipients[0] if recipients else None),
            "email_type": kind.value,
            "template_id": template_id,
            "recipients": list(recipients),
            "failure_reason": reason,
            "attempts": attempts,
            "booking_details": booking_details or {},
            "template_data": data,
            "created_at": now_utc(),
        }
        failure_id = None
        try:
            failure_id = await self.failures.insert(doc)
        except Exception:
            # Nothing left to persist to: the log line is the follow-up record
            logger.critical(
                "EMAIL FAILURE NOT RECORDED booking_id=%s email_type=%s recipients=%s reason=%s details=%s",
                booking_id,
                kind.value,
                list(recipients),
                reason,
                booking_details,
                exc_info=True,
            )

        if booking_id is not None:
            await self.audit.append(
                booking_id,
                audit_events.EMAIL_FAILED,
                {
                    "email_type": kind.value,
                    "recipients": list(recipients),
                    "failure_reason": reason,
                    "attempts": attempts,
                    "email_failure_id": str(failure_id) if failure_id is not None else None,
                },
                actor_id,
            )

    # Customer-facing messages

    async def send_approval_confirmation(self, booking: BookingRequest, *, actor_id: Optional[str] = None) -> bool:
        details = booking.email_details()
        return await self.send(
            NotificationKind.REQUEST_APPROVED,
            [booking.customer_email],
            details,
            booking_id=booking.id,
            booking_details=details,
            actor_id=actor_id,
        )

    async def send_rejection_notice(
        self,
        booking: BookingRequest,
        reason: str,
        *,
        actor_id: Optional[str] = None,
    ) -> bool:
        details = {**booking.email_details(), "rejectionReason": reason}
        return await self.send(
            NotificationKind.REQUEST_REJECTED,
            [booking.customer_email],
            details,
            booking_id=booking.id,
            booking_details=details,
            actor_id=actor_id,
        )

    async def send_payment_failure(
        self,
        booking: BookingRequest,
        error_message: str,
        *,
        actor_id: Optional[str] = None,
    ) -> bool:
        details = {**booking.email_details(), "paymentError": error_message}
        return await self.send(
            NotificationKind.PAYMENT_FAILED,
            [booking.customer_email],
            details,
            booking_id=booking.id,
            booking_details=details,
            actor_id=actor_id,
        )

    async def send_delay_notice(self, booking: BookingRequest, *, hours_pending: int) -> bool:
        details = {**booking.email_details(), "hoursPending": hours_pending}
        if booking.request_submitted_at is not None:
            details["requestSubmittedAt"] = as_utc(booking.request_submitted_at).isoformat()
        return await self.send(
            NotificationKind.CUSTOMER_DELAY_NOTIFICATION,
            [booking.customer_email],
            details,
            booking_id=booking.id,
            booking_details=details,
            actor_id="system",
        )

from __future__ import annotations

import logging
from typing import Any, Dict

from booking_requests.errors import EmailFailureAlreadyResolved, EmailFailureNotFound, EmailResendFailed
from booking_requests.repositories.email_failure_repository import EMAIL_FAILURE_PENDING
from booking_requests.services import audit as audit_events
from booking_requests.services.container import BookingRequestServices
from booking_requests.services.email import classify_email_error
from booking_requests.services.retry_policy import retry

logger = logging.getLogger("email_failure_resend")


async def resend_email_failure(
    services: BookingRequestServices,
    failure_id: str,
    *,
    admin_id: str,
) -> Dict[str, Any]:
    """Resend a failed email from its stored template data.

    The record flips to `resent` only when the transport accepted the message.
    """

    record = await services.email_failures.get(failure_id)
    if record is None:
        raise EmailFailureNotFound(failure_id)
    if record.get("status") != EMAIL_FAILURE_PENDING:
        raise EmailFailureAlreadyResolved(failure_id, record.get("status"))

    template_id = record["template_id"]
    recipients = record.get("recipients") or []
    data = record.get("template_data") or record.get("booking_details") or {}

    async def _attempt(_attempt_order: int) -> str:
        return await services.email.send_templated(template_id, recipients, data)

    outcome = await retry(_attempt, classify_email_error, services.dispatcher.policy, sleep=services.dispatcher.sleep)
    if not outcome.ok:
        reason = str(outcome.error)
        logger.warning("Resend of email failure %s failed: %s", failure_id, reason)
        await services.email_failures.record_resend_failure(failure_id, reason)
        raise EmailResendFailed(failure_id, reason)

    updated = await services.email_failures.mark_resent(failure_id, resolved_by=admin_id)
    if updated is None:
        # Resolved by someone else while we were sending
        current = await services.email_failures.get(failure_id)
        raise EmailFailureAlreadyResolved(failure_id, current.get("status") if current else None)

    booking_id = record.get("booking_id")
    if booking_id is not None:
        await services.audit.append(
            booking_id,
            audit_events.EMAIL_SENT,
            {
                "email_type": record.get("email_type"),
                "template_id": template_id,
                "recipients": recipients,
                "message_id": outcome.value,
                "attempts": outcome.attempts,
                "resent_from": failure_id,
            },
            admin_id,
        )
    return updated

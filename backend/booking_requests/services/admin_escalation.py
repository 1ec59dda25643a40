from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from booking_requests import config
from booking_requests.domain.models import BookingRequest
from booking_requests.services import audit as audit_events
from booking_requests.services.audit import AuditLogger
from booking_requests.services.notification_dispatcher import NotificationDispatcher, NotificationKind
from booking_requests.utils import now_utc

logger = logging.getLogger("admin_escalation")


class AdminEscalationNotifier:
    """Operational alerts to the fixed admin distribution list."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        audit: AuditLogger,
        *,
        recipients: Optional[Sequence[str]] = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.audit = audit
        self.recipients: List[str] = list(recipients if recipients is not None else config.ADMIN_NOTIFICATION_EMAILS)

    async def notify_payment_failure(
        self,
        booking: BookingRequest,
        *,
        error_message: str,
        error_code: Optional[str],
        attempts: int,
        admin_id: Optional[str] = None,
    ) -> bool:
        data = {
            **booking.email_details(),
            "customerEmail": booking.customer_email,
            "customerPhone": booking.customer_phone or "",
            "paymentError": error_message,
            "errorCode": error_code or "",
            "attempts": attempts,
            "reviewedBy": admin_id or "",
        }
        return await self.dispatcher.send(
            NotificationKind.ADMIN_PAYMENT_FAILED,
            self.recipients,
            data,
            booking_id=booking.id,
            booking_details=data,
            actor_id=admin_id,
        )

    async def notify_critical(
        self,
        booking_id: int,
        *,
        title: str,
        details: Dict[str, Any],
        actor_id: Optional[str] = None,
    ) -> bool:
        """Page operators: a state that needs a human (e.g. charged but not confirmed)."""

        logger.critical("CRITICAL booking_id=%s %s details=%s", booking_id, title, details)
        await self.audit.append(
            booking_id,
            audit_events.SYSTEM_ERROR,
            {"title": title, **details},
            actor_id,
            severity=audit_events.CRITICAL,
        )
        data = {
            "bookingId": str(booking_id),
            "title": title,
            "details": details,
            "occurredAt": now_utc().isoformat(),
        }
        return await self.dispatcher.send(
            NotificationKind.ADMIN_CRITICAL_ALERT,
            self.recipients,
            data,
            booking_id=booking_id,
            booking_details=data,
            actor_id=actor_id,
        )

    async def send_reminder(self, booking: BookingRequest, *, hours_pending: int) -> bool:
        data = {
            **booking.email_details(),
            "customerEmail": booking.customer_email,
            "hoursPending": hours_pending,
        }
        return await self.dispatcher.send(
            NotificationKind.ADMIN_REMINDER,
            self.recipients,
            data,
            booking_id=booking.id,
            booking_details=data,
            actor_id="system",
        )

    async def notify_auto_rejection(self, booking: BookingRequest, *, hours_pending: int) -> bool:
        data = {
            **booking.email_details(),
            "customerEmail": booking.customer_email,
            "customerPhone": booking.customer_phone or "",
            "hoursPending": hours_pending,
            "autoRejectedAt": now_utc().isoformat(),
        }
        return await self.dispatcher.send(
            NotificationKind.ADMIN_AUTO_REJECTION,
            self.recipients,
            data,
            booking_id=booking.id,
            booking_details=data,
            actor_id="system",
        )

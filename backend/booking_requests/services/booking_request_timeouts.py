"""Follow-up for requests that sit in PENDING_CONFIRMATION too long.

After REMINDER_HOURS the admins get one reminder, after
CUSTOMER_NOTIFICATION_HOURS the customer hears that the request is still
being reviewed, and after AUTO_REJECT_HOURS the request is rejected on the
admins' behalf through the regular state machine. Rejected bookings later
drop their stored payment method reference.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import anyio
from pymongo.errors import PyMongoError

from booking_requests import config
from booking_requests.domain.booking_state_machine import RejectAction
from booking_requests.domain.models import BookingRequest
from booking_requests.errors import AppError
from booking_requests.repositories.booking_repository import PreconditionFailed
from booking_requests.services import audit as audit_events
from booking_requests.services.container import BookingRequestServices
from booking_requests.utils import as_utc, now_utc

logger = logging.getLogger("booking_request_timeouts")

SYSTEM_ACTOR = "system"


def auto_reject_reason(hours: int) -> str:
    return f"Automatically rejected after {hours} hours without admin review"


def _hours_pending(doc: Dict[str, Any], now: datetime) -> Optional[float]:
    submitted = doc.get("request_submitted_at")
    if not isinstance(submitted, datetime):
        return None
    return (now - as_utc(submitted)).total_seconds() / 3600


async def _pending_older_than(services: BookingRequestServices, hours: int, now: datetime) -> List[Dict[str, Any]]:
    pending = await services.machine.bookings.list_pending()
    out = []
    for doc in pending:
        age = _hours_pending(doc, now)
        if age is not None and age >= hours:
            out.append(doc)
    return out


async def send_admin_reminders(
    services: BookingRequestServices,
    *,
    now: Optional[datetime] = None,
    reminder_hours: Optional[int] = None,
) -> int:
    """One reminder per request; returns how many were sent."""

    now = now or now_utc()
    hours = reminder_hours if reminder_hours is not None else config.REMINDER_HOURS
    sent = 0

    for doc in await _pending_older_than(services, hours, now):
        booking = BookingRequest.from_doc(doc)
        if await services.audit.has_event(booking.id, audit_events.TIMEOUT_REMINDER):
            continue

        hours_pending = int(_hours_pending(doc, now) or 0)
        delivered = await services.escalation.send_reminder(booking, hours_pending=hours_pending)
        await services.audit.append(
            booking.id,
            audit_events.TIMEOUT_REMINDER,
            {"hours_pending": hours_pending, "reminder_delivered": delivered},
            SYSTEM_ACTOR,
        )
        sent += 1

    if sent:
        logger.info("Sent %s pending-request reminder(s)", sent)
    return sent


async def auto_reject_expired_requests(
    services: BookingRequestServices,
    *,
    now: Optional[datetime] = None,
    auto_reject_hours: Optional[int] = None,
) -> int:
    """Reject requests nobody reviewed in time; returns how many were rejected."""

    now = now or now_utc()
    hours = auto_reject_hours if auto_reject_hours is not None else config.AUTO_REJECT_HOURS
    reason = auto_reject_reason(hours)
    rejected = 0

    for doc in await _pending_older_than(services, hours, now):
        booking_id = int(doc["_id"])
        try:
            await services.machine.process(booking_id, RejectAction(reason=reason), SYSTEM_ACTOR)
        except AppError as exc:
            # Reviewed (or being reviewed) since the scan
            logger.info("Skipping auto-reject of booking %s: %s", booking_id, exc.message)
            continue

        hours_pending = int(_hours_pending(doc, now) or 0)
        await services.audit.append(
            booking_id,
            audit_events.AUTO_REJECTED,
            {"hours_pending": hours_pending, "rejection_reason": reason},
            SYSTEM_ACTOR,
        )
        await services.escalation.notify_auto_rejection(BookingRequest.from_doc(doc), hours_pending=hours_pending)
        rejected += 1

    if rejected:
        logger.warning("Auto-rejected %s expired booking request(s)", rejected)
    return rejected


async def send_customer_delay_notifications(
    services: BookingRequestServices,
    *,
    now: Optional[datetime] = None,
    notification_hours: Optional[int] = None,
) -> int:
    """Tell customers their request is still being reviewed, once per request."""

    now = now or now_utc()
    hours = notification_hours if notification_hours is not None else config.CUSTOMER_NOTIFICATION_HOURS
    sent = 0

    for doc in await _pending_older_than(services, hours, now):
        booking = BookingRequest.from_doc(doc)
        if await services.audit.has_event(booking.id, audit_events.CUSTOMER_DELAY_NOTIFICATION):
            continue

        hours_pending = int(_hours_pending(doc, now) or 0)
        delivered = await services.dispatcher.send_delay_notice(booking, hours_pending=hours_pending)
        await services.audit.append(
            booking.id,
            audit_events.CUSTOMER_DELAY_NOTIFICATION,
            {"hours_pending": hours_pending, "notice_delivered": delivered},
            SYSTEM_ACTOR,
        )
        sent += 1

    if sent:
        logger.info("Sent %s customer delay notice(s)", sent)
    return sent


async def cleanup_payment_methods(
    services: BookingRequestServices,
    *,
    now: Optional[datetime] = None,
    after_hours: Optional[int] = None,
    enabled: Optional[bool] = None,
) -> int:
    """Clear the payment method reference on bookings rejected long enough ago.

    Only our reference is dropped; nothing is detached at the gateway.
    """

    if not (config.CLEANUP_PAYMENT_METHODS if enabled is None else enabled):
        return 0

    now = now or now_utc()
    hours = after_hours if after_hours is not None else config.PAYMENT_METHOD_CLEANUP_HOURS
    cleaned = 0

    for doc in await services.machine.bookings.list_rejected_holding_payment_method():
        reviewed_at = doc.get("admin_reviewed_at")
        if not isinstance(reviewed_at, datetime) or now - as_utc(reviewed_at) < timedelta(hours=hours):
            continue

        booking_id = int(doc["_id"])
        payment_method_id = doc["payment_method_id"]
        try:
            await services.machine.bookings.clear_payment_method(booking_id, payment_method_id)
        except PreconditionFailed:
            continue
        except PyMongoError:
            logger.exception("Failed to clear payment method for booking %s", booking_id)
            continue

        await services.audit.append(
            booking_id,
            audit_events.PAYMENT_METHOD_CLEANUP,
            {"payment_method_id": payment_method_id, "cleaned_at": now.isoformat()},
            SYSTEM_ACTOR,
        )
        cleaned += 1

    if cleaned:
        logger.info("Cleared %s payment method reference(s)", cleaned)
    return cleaned


async def _run_step(name: str, step: Callable[[], Awaitable[int]]) -> int:
    try:
        return await step()
    except Exception:
        logger.exception("Timeout step %s failed", name)
        return -1


async def run_timeout_pass(services: BookingRequestServices, *, now: Optional[datetime] = None) -> Dict[str, int]:
    """One pass over every timeout rule; a failed step reports -1."""

    now = now or now_utc()
    # Auto-reject first so a request past every threshold gets no stale reminder
    return {
        "auto_rejected": await _run_step("auto_reject", lambda: auto_reject_expired_requests(services, now=now)),
        "reminders_sent": await _run_step("admin_reminders", lambda: send_admin_reminders(services, now=now)),
        "customer_notifications": await _run_step(
            "customer_notifications", lambda: send_customer_delay_notifications(services, now=now)
        ),
        "payment_cleanups": await _run_step("payment_cleanup", lambda: cleanup_payment_methods(services, now=now)),
    }


async def timeout_loop(build_services, *, interval_seconds: Optional[int] = None) -> None:
    """Background loop started from server.py when ENABLE_TIMEOUT_WORKER is on.

    `build_services` is an async callable returning a fresh services bundle.
    """

    interval = interval_seconds or config.TIMEOUT_WORKER_INTERVAL_SECONDS
    while True:
        try:
            services = await build_services()
            result = await run_timeout_pass(services)
            logger.debug("Timeout pass finished: %s", result)
        except Exception:
            logger.exception("Booking request timeout pass failed")
        await anyio.sleep(interval)

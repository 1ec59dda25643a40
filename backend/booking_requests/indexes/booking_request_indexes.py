"""
Indexes for the booking request approval collections.
"""
from __future__ import annotations

import logging

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

logger = logging.getLogger(__name__)


async def ensure_booking_request_indexes(db):
    """Ensure indexes for bookings, events, payment attempts and email failures.

    An index that already exists with different options is kept as is and
    logged, so startup is never blocked by a legacy definition.
    """

    async def _safe_create(collection, *args, **kwargs):
        try:
            await collection.create_index(*args, **kwargs)
        except OperationFailure as e:
            msg = str(e).lower()
            if (
                "indexoptionsconflict" in msg
                or "indexkeyspecsconflict" in msg
                or "already exists" in msg
            ):
                logger.warning(
                    "[booking_request_indexes] Keeping legacy index for %s (name=%s): %s",
                    collection.name,
                    kwargs.get("name"),
                    msg,
                )
                return
            raise

    # bookings: pending queue scanned by the timeout worker
    await _safe_create(
        db.bookings,
        [("status", ASCENDING), ("request_submitted_at", ASCENDING)],
        name="bookings_by_status_submitted",
    )

    # booking_request_events (append-only)
    await _safe_create(
        db.booking_request_events,
        [("booking_id", ASCENDING), ("created_at", ASCENDING)],
        name="events_by_booking",
    )
    await _safe_create(
        db.booking_request_events,
        [("booking_id", ASCENDING), ("event_type", ASCENDING)],
        name="events_by_booking_type",
    )

    # payment_attempts (append-only)
    await _safe_create(
        db.payment_attempts,
        [("booking_id", ASCENDING), ("created_at", ASCENDING)],
        name="payment_attempts_by_booking",
    )
    await _safe_create(
        db.payment_attempts,
        [("idempotency_key", ASCENDING), ("attempt_order", ASCENDING)],
        name="payment_attempts_by_key",
    )

    # email_failures: follow-up queue
    await _safe_create(
        db.email_failures,
        [("status", ASCENDING), ("created_at", DESCENDING)],
        name="email_failures_by_status",
    )
    await _safe_create(
        db.email_failures,
        [("booking_id", ASCENDING)],
        name="email_failures_by_booking",
    )

    logger.info("Booking request indexes ensured")

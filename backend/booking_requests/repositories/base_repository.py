from __future__ import annotations

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase


BOOKINGS = "bookings"
BOOKING_REQUEST_EVENTS = "booking_request_events"
PAYMENT_ATTEMPTS = "payment_attempts"
EMAIL_FAILURES = "email_failures"


def get_collection(db: AsyncIOMotorDatabase, name: str) -> AsyncIOMotorCollection:
    """Return a Motor collection from the given database.

    This is the only place where services should obtain collections.
    """

    return db[name]

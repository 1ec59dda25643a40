from __future__ import annotations

from fastapi import Depends, Request
from motor.motor_asyncio import AsyncIOMotorDatabase

from booking_requests.db import get_db
from booking_requests.services.container import BookingRequestServices, build_services


async def get_booking_request_services(
    request: Request,
    db: AsyncIOMotorDatabase = Depends(get_db),
) -> BookingRequestServices:
    """Bind the app-wide gateway and email transport to this request's database."""

    state = request.app.state
    return build_services(
        db,
        gateway=state.payment_gateway,
        email=state.email_service,
        sleep=getattr(state, "retry_sleep", None),
    )

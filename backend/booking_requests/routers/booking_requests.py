from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from booking_requests.config import API_PREFIX
from booking_requests.domain.booking_state_machine import parse_action
from booking_requests.errors import AppError, BookingNotFound, BookingRequestErrorCode
from booking_requests.dependencies import get_booking_request_services
from booking_requests.services.booking_request_timeouts import run_timeout_pass
from booking_requests.services.container import BookingRequestServices
from booking_requests.services.email_failure_resend import resend_email_failure
from booking_requests.utils import serialize_doc

router = APIRouter(prefix=f"{API_PREFIX}/booking-requests", tags=["booking-requests"])


class BookingRequestReviewIn(BaseModel):
    booking_id: int = Field(..., gt=0)
    action: Literal["approve", "reject"]
    admin_id: str = Field(..., min_length=1)
    rejection_reason: Optional[str] = None

    @field_validator("admin_id")
    @classmethod
    def _admin_id_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("admin_id must not be blank")
        return v


class EmailFailureResendIn(BaseModel):
    admin_id: str = Field(..., min_length=1)


def _correlated(request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    cid = getattr(request.state, "correlation_id", None)
    if cid:
        body["correlation_id"] = cid
    return body


@router.get("/email-failures")
async def list_email_failures(
    request: Request,
    status: Optional[Literal["pending", "resent"]] = Query(None),
    booking_id: Optional[int] = Query(None, gt=0),
    limit: int = Query(100, ge=1, le=500),
    services: BookingRequestServices = Depends(get_booking_request_services),
):
    items = await services.email_failures.list(status=status, booking_id=booking_id, limit=limit)
    return _correlated(request, {"success": True, "items": serialize_doc(items)})


@router.post("/email-failures/{failure_id}/resend")
async def resend_failed_email(
    failure_id: str,
    payload: EmailFailureResendIn,
    request: Request,
    services: BookingRequestServices = Depends(get_booking_request_services),
):
    record = await resend_email_failure(services, failure_id, admin_id=payload.admin_id.strip())
    return _correlated(request, {"success": True, "email_failure": serialize_doc(record)})


@router.post("/timeouts/run")
async def run_timeouts(
    request: Request,
    services: BookingRequestServices = Depends(get_booking_request_services),
):
    """Run one timeout pass now (the worker does this periodically)."""
    result = await run_timeout_pass(services)
    return _correlated(request, {"success": True, **result})


@router.get("/{booking_id}/events")
async def list_booking_request_events(
    booking_id: int,
    request: Request,
    services: BookingRequestServices = Depends(get_booking_request_services),
):
    booking = await services.machine.bookings.get_by_id(booking_id)
    if booking is None:
        raise BookingNotFound(booking_id)

    events = await services.audit.list_events(booking_id)
    attempts = await services.audit.list_payment_attempts(booking_id)
    return _correlated(
        request,
        {
            "success": True,
            "booking_id": booking_id,
            "status": booking.get("status"),
            "events": serialize_doc(events),
            "payment_attempts": serialize_doc(attempts),
        },
    )


@router.post("/{action}")
async def review_booking_request(
    action: str,
    payload: BookingRequestReviewIn,
    request: Request,
    services: BookingRequestServices = Depends(get_booking_request_services),
):
    """Approve (charge + confirm) or reject a PENDING_CONFIRMATION booking request."""

    if action != payload.action:
        raise AppError(
            400,
            BookingRequestErrorCode.VALIDATION_ERROR.value,
            "Action in path does not match action in body",
            {"path_action": action, "body_action": payload.action},
        )

    review_action = parse_action(payload.action, payload.rejection_reason)
    result = await services.machine.process(payload.booking_id, review_action, payload.admin_id)

    body = _correlated(request, result.to_response())
    return JSONResponse(status_code=200 if result.success else 400, content=body)

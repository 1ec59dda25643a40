from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


@dataclass
class AppError(Exception):
    status_code: int
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None
    retryable: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = error_response(self.code, self.message, self.details)
        if self.retryable is not None:
            payload["should_retry"] = self.retryable
        return payload


class BookingRequestErrorCode(str, Enum):
    VALIDATION_ERROR = "validation_error"
    BOOKING_NOT_FOUND = "booking_not_found"
    INVALID_STATE = "invalid_state"
    PAYMENT_FAILED = "payment_failed"
    STORE_WRITE_FAILED = "store_write_failed"
    EMAIL_FAILURE_NOT_FOUND = "email_failure_not_found"
    EMAIL_FAILURE_RESOLVED = "email_failure_resolved"
    EMAIL_RESEND_FAILED = "email_resend_failed"
    INTERNAL_ERROR = "internal_error"


class BookingNotFound(AppError):
    def __init__(self, booking_id: int) -> None:
        super().__init__(
            404,
            BookingRequestErrorCode.BOOKING_NOT_FOUND.value,
            "Booking not found",
            {"booking_id": booking_id},
        )


class InvalidBookingState(AppError):
    """Booking is not (or no longer) PENDING_CONFIRMATION.

    Client-correctable: the admin UI should refresh, nothing is retried.
    """

    def __init__(self, booking_id: int, status: Optional[str], reason: Optional[str] = None) -> None:
        message = f"Booking is not in PENDING_CONFIRMATION status. Current status: {status}"
        if reason:
            message = reason
        super().__init__(
            400,
            BookingRequestErrorCode.INVALID_STATE.value,
            message,
            {"booking_id": booking_id, "status": status},
            retryable=False,
        )


class BookingStoreError(AppError):
    """The booking store could not be written; operators have been alerted."""

    def __init__(self, booking_id: int, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            500,
            BookingRequestErrorCode.STORE_WRITE_FAILED.value,
            message,
            {"booking_id": booking_id, **(details or {})},
        )


def error_response(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "success": False,
        "error": message,
        "code": code,
        "details": details or {},
    }


class EmailFailureNotFound(AppError):
    def __init__(self, failure_id: str) -> None:
        super().__init__(
            404,
            BookingRequestErrorCode.EMAIL_FAILURE_NOT_FOUND.value,
            "Email failure record not found",
            {"email_failure_id": failure_id},
        )


class EmailFailureAlreadyResolved(AppError):
    def __init__(self, failure_id: str, status: Optional[str]) -> None:
        super().__init__(
            409,
            BookingRequestErrorCode.EMAIL_FAILURE_RESOLVED.value,
            f"Email failure is not pending. Current status: {status}",
            {"email_failure_id": failure_id, "status": status},
        )


class EmailResendFailed(AppError):
    def __init__(self, failure_id: str, reason: str) -> None:
        super().__init__(
            502,
            BookingRequestErrorCode.EMAIL_RESEND_FAILED.value,
            "Email could not be resent",
            {"email_failure_id": failure_id, "reason": reason},
            retryable=True,
        )

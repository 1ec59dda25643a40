from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from booking_requests.utils import format_tour_name, format_yen


@dataclass
class BookingRequest:
    """Read-only snapshot of a `bookings` document under review."""

    id: int
    status: str
    tour_type: str
    booking_date: str
    booking_time: str
    adults: int
    children: int
    infants: int
    customer_name: str
    customer_email: str
    total_amount: int
    payment_method_id: Optional[str]
    customer_phone: Optional[str] = None
    tour_name: Optional[str] = None
    request_submitted_at: Optional[datetime] = None
    charge_id: Optional[str] = None
    paid_amount: Optional[int] = None
    rejection_reason: Optional[str] = None

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "BookingRequest":
        return cls(
            id=int(doc["_id"]),
            status=doc.get("status") or "",
            tour_type=doc.get("tour_type") or "",
            booking_date=str(doc.get("booking_date") or ""),
            booking_time=str(doc.get("booking_time") or ""),
            adults=int(doc.get("adults") or 0),
            children=int(doc.get("children") or 0),
            infants=int(doc.get("infants") or 0),
            customer_name=doc.get("customer_name") or "",
            customer_email=doc.get("customer_email") or "",
            total_amount=int(doc.get("total_amount") or 0),
            payment_method_id=doc.get("payment_method_id"),
            customer_phone=doc.get("customer_phone"),
            tour_name=doc.get("tour_name"),
            request_submitted_at=doc.get("request_submitted_at"),
            charge_id=doc.get("charge_id"),
            paid_amount=doc.get("paid_amount"),
            rejection_reason=doc.get("rejection_reason"),
        )

    @property
    def display_tour_name(self) -> str:
        return self.tour_name or format_tour_name(self.tour_type)

    def email_details(self) -> Dict[str, Any]:
        """Customer-facing booking summary used by every email template.

        Also stored verbatim on email failure records so a resend never
        needs the booking row.
        """

        return {
            "bookingId": str(self.id),
            "tourName": self.display_tour_name,
            "tourDate": self.booking_date,
            "tourTime": self.booking_time,
            "adults": self.adults,
            "children": self.children,
            "infants": self.infants,
            "totalAmount": format_yen(self.total_amount),
            "customerName": self.customer_name,
        }


@dataclass
class ReviewResult:
    """Outcome of one approve/reject invocation that reached a decision."""

    success: bool
    booking_id: int
    status: str
    message: str
    should_retry: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None
    payment_attempts: int = 0
    charge_id: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        if self.success:
            return {
                "success": True,
                "booking_id": self.booking_id,
                "status": self.status,
                "message": self.message,
            }
        return {
            "success": False,
            "booking_id": self.booking_id,
            "status": self.status,
            "error": self.error or self.message,
            "code": self.error_code,
            "should_retry": self.should_retry,
            "payment_attempts": self.payment_attempts,
        }

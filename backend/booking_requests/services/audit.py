from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from booking_requests.repositories.booking_event_repository import BookingEventRepository
from booking_requests.repositories.payment_attempt_repository import PaymentAttemptRepository
from booking_requests.request_context import get_correlation_id
from booking_requests.utils import now_utc

logger = logging.getLogger("audit")


# Event types
SUBMITTED = "submitted"
APPROVED = "approved"
REJECTED = "rejected"
PAYMENT_FAILED = "payment_failed"
EMAIL_SENT = "email_sent"
EMAIL_FAILED = "email_failed"
TIMEOUT_REMINDER = "timeout_reminder"
AUTO_REJECTED = "auto_rejected"
CUSTOMER_DELAY_NOTIFICATION = "customer_delay_notification"
PAYMENT_METHOD_CLEANUP = "payment_method_cleanup"
SYSTEM_ERROR = "system_error"

# Severities
INFO = "INFO"
WARNING = "WARNING"
ERROR = "ERROR"
CRITICAL = "CRITICAL"

_DEFAULT_SEVERITY = {
    PAYMENT_FAILED: ERROR,
    EMAIL_FAILED: WARNING,
    TIMEOUT_REMINDER: WARNING,
    AUTO_REJECTED: WARNING,
    SYSTEM_ERROR: CRITICAL,
}


def _safe_json(v: Any, max_len: int = 2000) -> Any:
    """Make sure audit payload stays light; truncate long strings."""
    if v is None:
        return None
    if isinstance(v, (int, float, bool)):
        return v
    if isinstance(v, str):
        return v if len(v) <= max_len else v[:max_len] + "…"
    if isinstance(v, list):
        return [_safe_json(x, max_len=max_len) for x in v][:200]
    if isinstance(v, dict):
        out: dict[str, Any] = {}
        for k, val in list(v.items())[:200]:
            out[str(k)] = _safe_json(val, max_len=max_len)
        return out

    # fallback to string
    s = str(v)
    return s if len(s) <= max_len else s[:max_len] + "…"


class AuditLogger:
    """Append-only audit trail for booking requests.

    Writes never raise: a failed audit write is reported on the operational
    log and the business flow continues.
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._events = BookingEventRepository(db)
        self._attempts = PaymentAttemptRepository(db)

    async def append(
        self,
        booking_id: int,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
        *,
        severity: Optional[str] = None,
    ) -> bool:
        doc: Dict[str, Any] = {
            "booking_id": booking_id,
            "event_type": event_type,
            "event_data": _safe_json(payload or {}),
            "severity": severity or _DEFAULT_SEVERITY.get(event_type, INFO),
            "correlation_id": get_correlation_id(),
            "created_by": actor_id,
            "created_at": now_utc(),
        }
        try:
            await self._events.append(doc)
            return True
        except Exception:
            logger.exception(
                "audit_append_failed booking_id=%s event_type=%s payload=%s",
                booking_id,
                event_type,
                doc["event_data"],
            )
            return False

    async def record_payment_attempt(
        self,
        *,
        booking_id: int,
        provider: str,
        amount: int,
        status: str,
        attempt_order: int,
        idempotency_key: str,
        charge_id: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        doc: Dict[str, Any] = {
            "booking_id": booking_id,
            "provider": provider,
            "amount": amount,
            "status": status,
            "attempt_order": attempt_order,
            "idempotency_key": idempotency_key,
            "charge_id": charge_id,
            "error_code": error_code,
            "error_message": _safe_json(error_message, max_len=500),
            "correlation_id": get_correlation_id(),
            "created_at": now_utc(),
        }
        try:
            await self._attempts.insert(doc)
            return True
        except Exception:
            logger.exception(
                "payment_attempt_log_failed booking_id=%s attempt=%s status=%s charge_id=%s",
                booking_id,
                attempt_order,
                status,
                charge_id,
            )
            return False

    async def count_events(
        self,
        booking_id: int,
        event_type: str,
        *,
        data: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Count events of one type, optionally matching fields of their payload."""
        return await self._events.count(booking_id, event_type, data=data)

    async def has_event(self, booking_id: int, event_type: str) -> bool:
        return await self._events.exists(booking_id, event_type)

    async def list_events(self, booking_id: int) -> List[Dict[str, Any]]:
        return await self._events.list_for_booking(booking_id)

    async def list_payment_attempts(self, booking_id: int) -> List[Dict[str, Any]]:
        return await self._attempts.list_for_booking(booking_id)

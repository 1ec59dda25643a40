from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from booking_requests.repositories.email_failure_repository import EmailFailureRepository
from booking_requests.services.admin_escalation import AdminEscalationNotifier
from booking_requests.services.audit import AuditLogger
from booking_requests.services.booking_request_service import BookingRequestStateMachine
from booking_requests.services.email import EmailService
from booking_requests.services.notification_dispatcher import NotificationDispatcher
from booking_requests.services.payment_gateway import PaymentGateway, PaymentGatewayClient
from booking_requests.services.retry_policy import Sleeper


@dataclass
class BookingRequestServices:
    """Everything one request needs, bound to one database handle."""

    audit: AuditLogger
    payments: PaymentGatewayClient
    dispatcher: NotificationDispatcher
    escalation: AdminEscalationNotifier
    machine: BookingRequestStateMachine
    email_failures: EmailFailureRepository
    email: EmailService


def build_services(
    db: AsyncIOMotorDatabase,
    *,
    gateway: PaymentGateway,
    email: EmailService,
    sleep: Optional[Sleeper] = None,
) -> BookingRequestServices:
    audit = AuditLogger(db)
    failures = EmailFailureRepository(db)
    payments = PaymentGatewayClient(gateway, audit, sleep=sleep)
    dispatcher = NotificationDispatcher(email, audit, failures, sleep=sleep)
    escalation = AdminEscalationNotifier(dispatcher, audit)
    machine = BookingRequestStateMachine(
        db,
        payments=payments,
        dispatcher=dispatcher,
        escalation=escalation,
        audit=audit,
        sleep=sleep,
    )
    return BookingRequestServices(
        audit=audit,
        payments=payments,
        dispatcher=dispatcher,
        escalation=escalation,
        machine=machine,
        email_failures=failures,
        email=email,
    )

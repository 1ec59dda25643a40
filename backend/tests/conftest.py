"""Shared test configuration and fixtures for backend tests.

Key principles:
- All HTTP calls go through the local ASGI app (httpx + ASGITransport).
- Each test gets its own in-process Motor-compatible database (mongomock-motor).
- Payment gateway and email transport are scripted fakes; retry waits are recorded, not slept.
- AnyIO is the single async runner via pytest-anyio (@pytest.mark.anyio).
"""

from typing import Any, AsyncGenerator, Dict, List, Optional

import sys
import uuid
from pathlib import Path

import anyio
import httpx
import pytest
from httpx import ASGITransport
from mongomock_motor import AsyncMongoMockClient

# Ensure backend root is on sys.path so that `server` module is importable
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from server import app
from booking_requests.db import get_db
from booking_requests.services.audit import AuditLogger
from booking_requests.services.booking_request_service import record_submitted_request
from booking_requests.services.container import BookingRequestServices, build_services
from booking_requests.services.email import DeliveryError
from booking_requests.services.payment_gateway import ChargeResult


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Force pytest-anyio to use asyncio event loop."""

    return "asyncio"


class LostResponse:
    """Script entry: the gateway takes the charge but the caller only sees `error`."""

    def __init__(self, error: BaseException) -> None:
        self.error = error


class ScriptedGateway:
    """Payment gateway fake.

    `outcomes` is consumed one entry per call: an exception instance is
    raised, a LostResponse charges and then raises, anything else means
    success. When the script runs out every call succeeds. A repeated
    idempotency key replays the first successful charge.
    """

    provider_name = "fake"

    def __init__(self, outcomes: Optional[List[Any]] = None, *, yield_first: bool = True) -> None:
        self.outcomes = list(outcomes or [])
        self.calls: List[Dict[str, Any]] = []
        self.charges: Dict[str, ChargeResult] = {}
        self.yield_first = yield_first

    async def charge(self, *, amount, currency, payment_method_id, idempotency_key, metadata) -> ChargeResult:
        self.calls.append(
            {
                "amount": amount,
                "currency": currency,
                "payment_method_id": payment_method_id,
                "idempotency_key": idempotency_key,
                "metadata": metadata,
            }
        )
        if self.yield_first:
            # Let concurrent invocations interleave here, like a network call
            await anyio.sleep(0)

        lost: Optional[BaseException] = None
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, LostResponse):
                lost = outcome.error
            elif isinstance(outcome, BaseException):
                raise outcome

        result = self.charges.get(idempotency_key)
        if result is None:
            result = ChargeResult(
                charge_id=f"pi_test_{uuid.uuid4().hex[:12]}",
                status="succeeded",
                amount=amount,
                provider=self.provider_name,
            )
            self.charges[idempotency_key] = result
        if lost is not None:
            raise lost
        return result

    def distinct_charge_ids(self) -> List[str]:
        return sorted({c.charge_id for c in self.charges.values()})


class FakeEmailService:
    """Email transport fake; `failures` maps template id (or "*") to the error raised."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.calls: List[Dict[str, Any]] = []
        self.failures: Dict[str, BaseException] = {}

    def fail(self, template_id: str = "*", error: Optional[BaseException] = None) -> None:
        self.failures[template_id] = error or DeliveryError("SES unavailable", retryable=True, code="ServiceUnavailable")

    def heal(self) -> None:
        self.failures.clear()

    async def send_templated(self, template_id, recipients, data) -> str:
        call = {"template_id": template_id, "recipients": list(recipients), "data": dict(data)}
        self.calls.append(call)
        error = self.failures.get(template_id) or self.failures.get("*")
        if error is not None:
            raise error
        self.sent.append(call)
        return f"msg-{len(self.sent)}"

    def sent_templates(self) -> List[str]:
        return [m["template_id"] for m in self.sent]


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture(scope="function")
async def test_db() -> AsyncGenerator[Any, None]:
    """Function-scoped in-memory database."""

    client = AsyncMongoMockClient()
    db = client[f"booking_requests_test_{uuid.uuid4().hex}"]
    yield db


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def email_service() -> FakeEmailService:
    return FakeEmailService()


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def services(test_db, gateway, email_service, fake_sleep) -> BookingRequestServices:
    return build_services(test_db, gateway=gateway, email=email_service, sleep=fake_sleep)


def booking_payload(**overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "tour_type": "uji-tea-ceremony",
        "booking_date": "2026-11-20",
        "booking_time": "10:00",
        "adults": 2,
        "children": 1,
        "infants": 0,
        "customer_name": "Hanako Tanaka",
        "customer_email": "hanako@example.com",
        "customer_phone": "+81-90-0000-0000",
        "payment_method_id": "pm_card_visa",
        "total_amount": 13000,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def seed_booking(test_db):
    """Factory: store a PENDING_CONFIRMATION request (and its `submitted` event)."""

    async def _seed(booking_id: int, **overrides: Any) -> Dict[str, Any]:
        status = overrides.pop("status", None)
        doc = await record_submitted_request(test_db, AuditLogger(test_db), booking_id, booking_payload(**overrides))
        if status is not None:
            await test_db.bookings.update_one({"_id": booking_id}, {"$set": {"status": status}})
            doc["status"] = status
        return doc

    return _seed


@pytest.fixture
async def async_client(test_db, gateway, email_service, fake_sleep) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client bound to the app with the test database and fakes."""

    async def _override_get_db():
        return test_db

    app.dependency_overrides[get_db] = _override_get_db
    previous = (app.state.payment_gateway, app.state.email_service, app.state.retry_sleep)
    app.state.payment_gateway = gateway
    app.state.email_service = email_service
    app.state.retry_sleep = fake_sleep

    transport = ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        app.dependency_overrides.clear()
        app.state.payment_gateway, app.state.email_service, app.state.retry_sleep = previous

"""Payment gateway client used by the approval flow.

Concrete gateways (Stripe, mock) implement a single `charge` call. The
`PaymentGatewayClient` wraps one of them with the payment retry policy and
records every call as a payment attempt.
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Protocol

import anyio
import stripe  # type: ignore

from booking_requests import config
from booking_requests.services.audit import AuditLogger
from booking_requests.services.retry_policy import ErrorClass, RetryPolicy, Sleeper, payment_policy, retry

logger = logging.getLogger("payment_gateway")


class GatewayError(Exception):
    """Base class for charge failures. Not retryable unless a subclass says so."""

    retryable = False

    def __init__(self, message: str, *, code: str = "gateway_error", decline_code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.decline_code = decline_code


class CardDeclined(GatewayError):
    def __init__(self, message: str = "Your card was declined.", *, code: str = "card_declined", decline_code: Optional[str] = None) -> None:
        super().__init__(message, code=code, decline_code=decline_code)


class RequiresAction(GatewayError):
    """Off-session charge needs customer authentication (3-D Secure)."""

    def __init__(self, message: str = "Payment requires customer authentication", *, code: str = "requires_action") -> None:
        super().__init__(message, code=code)


class TransientGatewayError(GatewayError):
    retryable = True

    def __init__(self, message: str, *, code: str = "gateway_unavailable") -> None:
        super().__init__(message, code=code)


class ChargeFailed(Exception):
    """The charge did not go through after the retry policy was applied."""

    def __init__(self, error: BaseException, attempts: int, *, exhausted: bool = False) -> None:
        self.error = error
        self.attempts = attempts
        # Retries ran out on a retryable error; the gateway may still have taken the charge
        self.exhausted = exhausted
        if isinstance(error, GatewayError):
            self.code = error.code
            self.message = error.message
        elif isinstance(error, TimeoutError):
            self.code = "gateway_timeout"
            self.message = "Payment gateway timed out"
        else:
            self.code = "gateway_error"
            self.message = str(error) or error.__class__.__name__
        super().__init__(self.message)

    @property
    def declined(self) -> bool:
        """The gateway answered with a definite no for this payment method."""
        return isinstance(self.error, (CardDeclined, RequiresAction))


@dataclass
class ChargeResult:
    charge_id: str
    status: str
    amount: int
    provider: str
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    provider_name: str

    async def charge(
        self,
        *,
        amount: int,
        currency: str,
        payment_method_id: str,
        idempotency_key: str,
        metadata: Dict[str, str],
    ) -> ChargeResult:  # pragma: no cover - interface
        ...


def approval_idempotency_key(booking_id: int, approval_round: int = 1) -> str:
    """Key shared by every gateway call of one approval round of one booking."""
    return f"booking-request-{booking_id}-approval-{approval_round}"


def classify_payment_error(exc: BaseException) -> ErrorClass:
    if isinstance(exc, GatewayError) and exc.retryable:
        return ErrorClass.RETRYABLE
    return ErrorClass.TERMINAL


def _stripe_client() -> stripe.StripeClient:  # type: ignore[name-defined]
    api_key = os.environ.get("STRIPE_API_KEY")
    if not api_key:
        raise RuntimeError("STRIPE_API_KEY is not configured")
    # Retries are driven by the payment retry policy, not the SDK
    return stripe.StripeClient(api_key, max_network_retries=0)  # type: ignore[attr-defined]


def map_stripe_error(exc: Exception) -> GatewayError:
    if isinstance(exc, stripe.CardError):
        code = getattr(exc, "code", None) or "card_declined"
        message = getattr(exc, "user_message", None) or str(exc)
        if code == "authentication_required":
            return RequiresAction(message, code=code)
        return CardDeclined(message, code=code, decline_code=getattr(exc, "decline_code", None))
    if isinstance(exc, (stripe.RateLimitError, stripe.APIConnectionError, stripe.APIError)):
        return TransientGatewayError(str(exc), code=exc.__class__.__name__)
    if isinstance(exc, stripe.StripeError):
        return GatewayError(str(exc), code=getattr(exc, "code", None) or exc.__class__.__name__)
    return GatewayError(str(exc))


class StripePaymentGateway:
    """Off-session PaymentIntent create+confirm with the stored payment method."""

    provider_name = "stripe"

    def __init__(self, client: Optional[Any] = None) -> None:
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = _stripe_client()
        return self._client

    async def charge(
        self,
        *,
        amount: int,
        currency: str,
        payment_method_id: str,
        idempotency_key: str,
        metadata: Dict[str, str],
    ) -> ChargeResult:
        if amount <= 0:
            raise GatewayError("Charge amount must be positive", code="invalid_amount")

        client = self._get_client()

        def _create() -> Dict[str, Any]:  # pragma: no cover - thin sync wrapper
            params: Dict[str, Any] = {
                "amount": amount,
                "currency": currency.lower(),
                "payment_method": payment_method_id,
                "confirm": True,
                "off_session": True,
                "metadata": metadata,
            }
            pi = client.payment_intents.create(params=params, options={"idempotency_key": idempotency_key})
            return pi.to_dict() if hasattr(pi, "to_dict") else dict(pi)

        try:
            pi = await anyio.to_thread.run_sync(_create, abandon_on_cancel=True)
        except stripe.StripeError as exc:
            raise map_stripe_error(exc) from exc

        status = pi.get("status")
        if status == "succeeded":
            return ChargeResult(
                charge_id=pi["id"],
                status=status,
                amount=int(pi.get("amount") or amount),
                provider=self.provider_name,
                raw={"payment_intent_id": pi["id"], "latest_charge": pi.get("latest_charge")},
            )
        if status == "requires_action":
            raise RequiresAction()
        if status == "requires_payment_method":
            raise CardDeclined("Payment method was declined")
        if status == "processing":
            raise TransientGatewayError("Payment is still processing", code="processing")
        raise GatewayError(f"Payment not completed. Status: {status}", code=f"status_{status}")


class MockPaymentGateway:
    """In-process gateway for local runs.

    Replays the same charge for a repeated idempotency key, the way Stripe
    does. `decline=True` turns every new charge into a card decline.
    """

    provider_name = "mock"

    def __init__(self, *, decline: bool = False) -> None:
        self.decline = decline
        self._charges: Dict[str, ChargeResult] = {}

    async def charge(
        self,
        *,
        amount: int,
        currency: str,
        payment_method_id: str,
        idempotency_key: str,
        metadata: Dict[str, str],
    ) -> ChargeResult:
        existing = self._charges.get(idempotency_key)
        if existing is not None:
            return existing
        if self.decline or not payment_method_id:
            raise CardDeclined(decline_code="generic_decline")

        result = ChargeResult(
            charge_id=f"mock_pi_{uuid.uuid4().hex[:16]}",
            status="succeeded",
            amount=amount,
            provider=self.provider_name,
            raw={"metadata": dict(metadata), "currency": currency},
        )
        self._charges[idempotency_key] = result
        return result


def build_payment_gateway(provider: Optional[str] = None) -> PaymentGateway:
    provider = (provider or config.PAYMENT_PROVIDER).lower()
    if provider == "stripe":
        return StripePaymentGateway()
    if provider == "mock":
        return MockPaymentGateway()
    raise RuntimeError(f"Unknown PAYMENT_PROVIDER: {provider}")


class PaymentGatewayClient:
    def __init__(
        self,
        gateway: PaymentGateway,
        audit: AuditLogger,
        *,
        currency: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        self.gateway = gateway
        self.audit = audit
        self.currency = currency or config.PAYMENT_CURRENCY
        self.policy = policy or payment_policy()
        self._sleep = sleep

    @property
    def provider_name(self) -> str:
        return self.gateway.provider_name

    async def charge(
        self,
        *,
        amount: int,
        booking_id: int,
        payment_method_id: str,
        idempotency_key: str,
    ) -> ChargeResult:
        """Charge with retries; raises ChargeFailed carrying the last error."""

        metadata = {"booking_id": str(booking_id), "original_amount": str(amount)}

        async def _attempt(attempt_order: int) -> ChargeResult:
            try:
                with anyio.fail_after(self.policy.timeout):
                    result = await self.gateway.charge(
                        amount=amount,
                        currency=self.currency,
                        payment_method_id=payment_method_id,
                        idempotency_key=idempotency_key,
                        metadata=metadata,
                    )
            except Exception as exc:
                failure = ChargeFailed(exc, attempt_order)
                await self.audit.record_payment_attempt(
                    booking_id=booking_id,
                    provider=self.provider_name,
                    amount=amount,
                    status="failed",
                    attempt_order=attempt_order,
                    idempotency_key=idempotency_key,
                    error_code=failure.code,
                    error_message=failure.message,
                )
                raise
            await self.audit.record_payment_attempt(
                booking_id=booking_id,
                provider=self.provider_name,
                amount=amount,
                status="success",
                attempt_order=attempt_order,
                idempotency_key=idempotency_key,
                charge_id=result.charge_id,
            )
            return result

        # The deadline is applied per gateway call above so timed-out attempts are recorded too
        policy = replace(self.policy, timeout=None)
        outcome = await retry(_attempt, classify_payment_error, policy, sleep=self._sleep)
        if outcome.ok and outcome.value is not None:
            logger.info(
                "Charged booking %s: %s %s (charge_id=%s, attempts=%s)",
                booking_id,
                amount,
                self.currency,
                outcome.value.charge_id,
                outcome.attempts,
            )
            return outcome.value

        error = outcome.error if outcome.error is not None else GatewayError("Charge returned no result")
        logger.warning(
            "Charge failed for booking %s after %s attempt(s): %s",
            booking_id,
            outcome.attempts,
            error,
        )
        raise ChargeFailed(error, outcome.attempts, exhausted=outcome.exhausted)

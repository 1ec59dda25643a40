"""Bounded retry with exponential backoff.

Every flaky collaborator (payment gateway, booking store, email transport) is
called through `retry`. The caller supplies a classifier that decides whether
an error is worth another attempt; timeouts are always retryable.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Generic, Optional, TypeVar

import anyio
from pymongo.errors import DuplicateKeyError, PyMongoError

from booking_requests import config
from booking_requests.repositories.booking_repository import PreconditionFailed

logger = logging.getLogger("retry_policy")

T = TypeVar("T")


class ErrorClass(str, Enum):
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class RetryPolicy:
    name: str
    max_attempts: int
    base_delay: float
    max_delay: float
    multiplier: float = 2.0
    jitter: float = 0.25
    # Per-attempt deadline in seconds; None disables it
    timeout: Optional[float] = None

    def delay_for(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Wait before attempt `attempt + 1`.

        base_delay * multiplier**(attempt-1), capped at max_delay, then scaled
        down by up to `jitter` so concurrent callers spread out.
        """

        raw = min(self.base_delay * (self.multiplier ** max(attempt - 1, 0)), self.max_delay)
        if self.jitter <= 0:
            return raw
        return raw * (1.0 - self.jitter * rand())


@dataclass
class RetryOutcome(Generic[T]):
    ok: bool
    attempts: int
    value: Optional[T] = None
    error: Optional[BaseException] = None
    error_class: Optional[ErrorClass] = None

    @property
    def exhausted(self) -> bool:
        return not self.ok and self.error_class == ErrorClass.RETRYABLE


Classifier = Callable[[BaseException], ErrorClass]
Sleeper = Callable[[float], Awaitable[None]]


async def retry(
    operation: Callable[[int], Awaitable[T]],
    classify: Classifier,
    policy: RetryPolicy,
    *,
    sleep: Optional[Sleeper] = None,
) -> RetryOutcome[T]:
    """Run `operation(attempt_number)` until it succeeds or the policy gives up.

    Never raises for errors produced by `operation`; the outcome carries the
    last error and how many attempts were made.
    """

    sleep = sleep or anyio.sleep
    attempts = max(policy.max_attempts, 1)

    for attempt in range(1, attempts + 1):
        try:
            if policy.timeout:
                with anyio.fail_after(policy.timeout):
                    value = await operation(attempt)
            else:
                value = await operation(attempt)
            return RetryOutcome(ok=True, attempts=attempt, value=value)
        except Exception as exc:
            error_class = ErrorClass.RETRYABLE if isinstance(exc, TimeoutError) else classify(exc)

            if error_class == ErrorClass.TERMINAL or attempt == attempts:
                logger.warning(
                    "[%s] giving up after attempt %s/%s (%s): %s",
                    policy.name,
                    attempt,
                    attempts,
                    error_class.value,
                    exc,
                )
                return RetryOutcome(ok=False, attempts=attempt, error=exc, error_class=error_class)

            delay = policy.delay_for(attempt)
            logger.info(
                "[%s] attempt %s/%s failed, retrying in %.2fs: %s",
                policy.name,
                attempt,
                attempts,
                delay,
                exc,
            )
            await sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover


def classify_store_error(exc: BaseException) -> ErrorClass:
    """Lost races and constraint violations will not fix themselves."""

    if isinstance(exc, (PreconditionFailed, DuplicateKeyError)):
        return ErrorClass.TERMINAL
    if isinstance(exc, PyMongoError):
        return ErrorClass.RETRYABLE
    return ErrorClass.TERMINAL


def payment_policy() -> RetryPolicy:
    return RetryPolicy(
        name="payment",
        max_attempts=config.PAYMENT_RETRY_MAX_ATTEMPTS,
        base_delay=config.PAYMENT_RETRY_BASE_DELAY_SECONDS,
        max_delay=config.PAYMENT_RETRY_MAX_DELAY_SECONDS,
        jitter=config.RETRY_JITTER,
        timeout=config.PAYMENT_TIMEOUT_SECONDS,
    )


def store_policy() -> RetryPolicy:
    return RetryPolicy(
        name="store",
        max_attempts=config.STORE_RETRY_MAX_ATTEMPTS,
        base_delay=config.STORE_RETRY_BASE_DELAY_SECONDS,
        max_delay=config.STORE_RETRY_MAX_DELAY_SECONDS,
        jitter=config.RETRY_JITTER,
        timeout=config.STORE_TIMEOUT_SECONDS,
    )


def email_policy() -> RetryPolicy:
    return RetryPolicy(
        name="email",
        max_attempts=config.EMAIL_RETRY_MAX_ATTEMPTS,
        base_delay=config.EMAIL_RETRY_BASE_DELAY_SECONDS,
        max_delay=config.EMAIL_RETRY_MAX_DELAY_SECONDS,
        jitter=config.RETRY_JITTER,
        timeout=config.EMAIL_TIMEOUT_SECONDS,
    )

"""Application configuration.

Everything is read from the environment once at import time. Defaults are
safe for local development: mock payment gateway and mock email transport,
so the service boots without Stripe/AWS credentials.
"""

from __future__ import annotations

import os


def _env_flag(name: str, default: bool = True) -> bool:
    """Read a boolean-like flag from environment.

    Accepted falsy values: "0", "false", "off", "no" (case-insensitive).
    Anything else (or unset) falls back to `default`.
    """

    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"0", "false", "off", "no"}:
        return False
    if value in {"1", "true", "on", "yes"}:
        return True
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# Application constants
API_PREFIX = "/api"
APP_NAME = "Booking Request Approvals API"
APP_VERSION = "1.0.0"
CORS_ORIGINS = _env_list("CORS_ORIGINS", ["*"])

# Storage
DB_NAME = os.environ.get("DB_NAME", "booking_requests").strip()

# Providers
PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "mock").strip().lower()
PAYMENT_CURRENCY = os.environ.get("PAYMENT_CURRENCY", "jpy").strip().lower()
EMAIL_PROVIDER = os.environ.get("EMAIL_PROVIDER", "mock").strip().lower()

# Fixed distribution list for operational alerts (payment failures, critical errors)
ADMIN_NOTIFICATION_EMAILS = _env_list(
    "ADMIN_NOTIFICATION_EMAILS",
    ["contact@example.com", "operations@example.com"],
)

# SES template names, one per message kind
EMAIL_TEMPLATES = {
    "request_approved": os.environ.get("EMAIL_TEMPLATE_REQUEST_APPROVED", "booking-request-approved"),
    "request_rejected": os.environ.get("EMAIL_TEMPLATE_REQUEST_REJECTED", "booking-request-rejected"),
    "payment_failed": os.environ.get("EMAIL_TEMPLATE_PAYMENT_FAILED", "booking-request-payment-failed"),
    "admin_payment_failed": os.environ.get(
        "EMAIL_TEMPLATE_ADMIN_PAYMENT_FAILED", "booking-request-admin-payment-failed"
    ),
    "admin_critical_alert": os.environ.get("EMAIL_TEMPLATE_ADMIN_CRITICAL_ALERT", "booking-request-critical-alert"),
    "admin_reminder": os.environ.get("EMAIL_TEMPLATE_ADMIN_REMINDER", "booking-request-admin-reminder"),
    "admin_auto_rejection": os.environ.get(
        "EMAIL_TEMPLATE_ADMIN_AUTO_REJECTION", "booking-request-admin-auto-rejection"
    ),
    "customer_delay_notification": os.environ.get(
        "EMAIL_TEMPLATE_CUSTOMER_DELAY_NOTIFICATION", "booking-request-customer-delay"
    ),
}

# Retry policies (attempts include the first call)
PAYMENT_RETRY_MAX_ATTEMPTS = _env_int("PAYMENT_RETRY_MAX_ATTEMPTS", 3)
PAYMENT_RETRY_BASE_DELAY_SECONDS = _env_float("PAYMENT_RETRY_BASE_DELAY_SECONDS", 2.0)
PAYMENT_RETRY_MAX_DELAY_SECONDS = _env_float("PAYMENT_RETRY_MAX_DELAY_SECONDS", 10.0)
PAYMENT_TIMEOUT_SECONDS = _env_float("PAYMENT_TIMEOUT_SECONDS", 30.0)

STORE_RETRY_MAX_ATTEMPTS = _env_int("STORE_RETRY_MAX_ATTEMPTS", 3)
STORE_RETRY_BASE_DELAY_SECONDS = _env_float("STORE_RETRY_BASE_DELAY_SECONDS", 0.5)
STORE_RETRY_MAX_DELAY_SECONDS = _env_float("STORE_RETRY_MAX_DELAY_SECONDS", 5.0)
STORE_TIMEOUT_SECONDS = _env_float("STORE_TIMEOUT_SECONDS", 10.0)

EMAIL_RETRY_MAX_ATTEMPTS = _env_int("EMAIL_RETRY_MAX_ATTEMPTS", 4)
EMAIL_RETRY_BASE_DELAY_SECONDS = _env_float("EMAIL_RETRY_BASE_DELAY_SECONDS", 1.0)
EMAIL_RETRY_MAX_DELAY_SECONDS = _env_float("EMAIL_RETRY_MAX_DELAY_SECONDS", 15.0)
EMAIL_TIMEOUT_SECONDS = _env_float("EMAIL_TIMEOUT_SECONDS", 15.0)

RETRY_JITTER = _env_float("RETRY_JITTER", 0.25)

# An approval that crashed mid-flight frees the booking after this long
REVIEW_CLAIM_TTL_SECONDS = _env_int("REVIEW_CLAIM_TTL_SECONDS", 300)

# Pending request timeouts
ENABLE_TIMEOUT_WORKER: bool = _env_flag("ENABLE_TIMEOUT_WORKER", default=False)
TIMEOUT_WORKER_INTERVAL_SECONDS = _env_int("TIMEOUT_WORKER_INTERVAL_SECONDS", 900)
REMINDER_HOURS = _env_int("BOOKING_REQUEST_REMINDER_HOURS", 12)
CUSTOMER_NOTIFICATION_HOURS = _env_int("BOOKING_REQUEST_CUSTOMER_NOTIFICATION_HOURS", 24)
AUTO_REJECT_HOURS = _env_int("BOOKING_REQUEST_AUTO_REJECT_HOURS", 48)

# Rejected bookings drop their stored payment method reference after this long
CLEANUP_PAYMENT_METHODS: bool = _env_flag("CLEANUP_PAYMENT_METHODS", default=True)
PAYMENT_METHOD_CLEANUP_HOURS = _env_int("PAYMENT_METHOD_CLEANUP_HOURS", 24)

DEFAULT_REJECTION_REASON = "No specific reason provided"

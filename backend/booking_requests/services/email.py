from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

import anyio
import boto3
from botocore.exceptions import BotoCoreError, ClientError

from booking_requests import config
from booking_requests.services.retry_policy import ErrorClass
from booking_requests.utils import require_env

logger = logging.getLogger("email")

# SES error codes worth another attempt
_RETRYABLE_SES_CODES = {
    "Throttling",
    "ThrottlingException",
    "ServiceUnavailable",
    "InternalFailure",
    "RequestTimeout",
}


class DeliveryError(Exception):
    """Raised when an email could not be handed to the transport."""

    def __init__(self, message: str, *, retryable: bool = True, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.code = code


def classify_email_error(exc: BaseException) -> ErrorClass:
    if isinstance(exc, DeliveryError):
        return ErrorClass.RETRYABLE if exc.retryable else ErrorClass.TERMINAL
    return ErrorClass.RETRYABLE


class EmailService(Protocol):
    async def send_templated(
        self,
        template_id: str,
        recipients: Sequence[str],
        data: Dict[str, Any],
    ) -> str:  # pragma: no cover - interface
        ...


def _get_ses_client():
    region = require_env("AWS_REGION")
    return boto3.client("ses", region_name=region)


class SesEmailService:
    """AWS SES templated sends, run in a worker thread."""

    def __init__(self, client: Optional[Any] = None, *, source: Optional[str] = None) -> None:
        self._client = client
        self._source = source

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = _get_ses_client()
        return self._client

    async def send_templated(
        self,
        template_id: str,
        recipients: Sequence[str],
        data: Dict[str, Any],
    ) -> str:
        to_clean = sorted({a.strip() for a in recipients if a and "@" in a})
        if not to_clean:
            raise DeliveryError("No valid recipients", retryable=False, code="no_recipients")

        source = self._source or require_env("AWS_SES_FROM_EMAIL")
        client = self._get_client()

        def _send() -> Dict[str, Any]:  # pragma: no cover - thin sync wrapper
            return client.send_templated_email(
                Source=source,
                Destination={"ToAddresses": to_clean},
                Template=template_id,
                TemplateData=json.dumps(data, ensure_ascii=False, default=str),
            )

        try:
            resp = await anyio.to_thread.run_sync(_send, abandon_on_cancel=True)
        except ClientError as e:
            code = (e.response.get("Error") or {}).get("Code") or "ClientError"
            logger.error("SES ClientError (%s): %s", code, e, exc_info=True)
            raise DeliveryError(str(e), retryable=code in _RETRYABLE_SES_CODES, code=code)
        except BotoCoreError as e:
            logger.error("SES BotoCoreError: %s", e, exc_info=True)
            raise DeliveryError(str(e), retryable=True, code=e.__class__.__name__)

        message_id = resp.get("MessageId") or ""
        logger.info("SES send_templated_email ok: template=%s MessageId=%s", template_id, message_id)
        return message_id


@dataclass
class SentEmail:
    template_id: str
    recipients: List[str]
    data: Dict[str, Any]


@dataclass
class MockEmailService:
    """Logs instead of sending; keeps what it 'sent' for inspection."""

    sent: List[SentEmail] = field(default_factory=list)

    async def send_templated(
        self,
        template_id: str,
        recipients: Sequence[str],
        data: Dict[str, Any],
    ) -> str:
        self.sent.append(SentEmail(template_id=template_id, recipients=list(recipients), data=dict(data)))
        logger.info("[mock email] template=%s to=%s", template_id, ",".join(recipients))
        return f"mock-{len(self.sent)}"


def build_email_service(provider: Optional[str] = None) -> EmailService:
    provider = (provider or config.EMAIL_PROVIDER).lower()
    if provider == "ses":
        return SesEmailService()
    if provider == "mock":
        return MockEmailService()
    raise RuntimeError(f"Unknown EMAIL_PROVIDER: {provider}")

"""Structured JSON access log.

One line per request:
{
  correlation_id,
  path,
  method,
  status_code,
  latency_ms
}
"""
from __future__ import annotations

import json
import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger("structured_access")

SLOW_REQUEST_MS = 1000


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """Log structured JSON for every request."""

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        path = request.url.path
        method = request.method

        try:
            response = await call_next(request)
        except Exception:
            latency_ms = round((time.monotonic() - start) * 1000, 2)
            logger.error(
                json.dumps(
                    {
                        "correlation_id": getattr(request.state, "correlation_id", None),
                        "path": path,
                        "method": method,
                        "status_code": 500,
                        "latency_ms": latency_ms,
                    }
                )
            )
            raise

        latency_ms = round((time.monotonic() - start) * 1000, 2)
        status_code = response.status_code

        log_entry = {
            "correlation_id": getattr(request.state, "correlation_id", None),
            "path": path,
            "method": method,
            "status_code": status_code,
            "latency_ms": latency_ms,
        }

        if status_code >= 500:
            logger.error(json.dumps(log_entry))
        elif status_code >= 400:
            logger.warning(json.dumps(log_entry))
        else:
            logger.info(json.dumps(log_entry))

        if latency_ms > SLOW_REQUEST_MS and not path.startswith("/health"):
            logger.warning("Slow request %s %s took %sms", method, path, latency_ms)

        return response

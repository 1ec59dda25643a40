from __future__ import annotations

import logging
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from booking_requests.request_context import set_correlation_id

logger = logging.getLogger("correlation_id")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        # 1) Read or generate correlation id
        incoming = request.headers.get("X-Correlation-Id")
        if incoming and isinstance(incoming, str) and incoming.strip():
            cid = incoming.strip()
        else:
            cid = str(uuid.uuid4())

        # 2) Attach to state for handlers, and to the context var for loggers
        request.state.correlation_id = cid
        set_correlation_id(cid)

        # 3) Process request
        try:
            response: Response = await call_next(request)
        except Exception:
            # Exception handlers normally format the body; this only runs if one of them failed
            from fastapi.responses import JSONResponse
            from booking_requests.errors import error_response

            logger.exception("Unhandled error escaped exception handlers")
            body = error_response("internal_error", "Unexpected server error")
            body["correlation_id"] = cid
            response = JSONResponse(status_code=500, content=body)

        # 4) Always set response header
        response.headers["X-Correlation-Id"] = cid
        return response

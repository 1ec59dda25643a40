from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from booking_requests.errors import AppError, BookingRequestErrorCode, error_response

logger = logging.getLogger("exception_handlers")


def _with_correlation(request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    cid = getattr(request.state, "correlation_id", None)
    if cid:
        body["correlation_id"] = cid
        if isinstance(body.get("details"), dict) and "correlation_id" not in body["details"]:
            body["details"]["correlation_id"] = cid
    return body


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:  # type: ignore[override]
        body = exc.to_dict()
        body["details"] = exc.details.copy() if isinstance(exc.details, dict) else {}
        return JSONResponse(status_code=exc.status_code, content=_with_correlation(request, body))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:  # type: ignore[override]
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"Invalid request: {field} {first.get('msg', '')}".strip() if field else "Request validation failed"
        body = error_response(
            BookingRequestErrorCode.VALIDATION_ERROR.value,
            message,
            {"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errors]},
        )
        return JSONResponse(status_code=400, content=_with_correlation(request, body))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:  # type: ignore[override]
        code = "not_found" if exc.status_code == 404 else "http_error"
        detail: Any = exc.detail
        if isinstance(detail, str):
            message = detail
            details: Any = {}
        elif isinstance(detail, dict):
            message = detail.get("message", "HTTP error")
            details = detail
        else:
            message = "HTTP error"
            details = {}
        body = error_response(code, message, details)
        return JSONResponse(status_code=exc.status_code, content=_with_correlation(request, body))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # type: ignore[override]
        logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        body = error_response(BookingRequestErrorCode.INTERNAL_ERROR.value, "Unexpected server error")
        return JSONResponse(status_code=500, content=_with_correlation(request, body))

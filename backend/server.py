from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI
from motor.motor_asyncio import AsyncIOMotorDatabase
from starlette.middleware.cors import CORSMiddleware

ROOT_DIR = Path(__file__).parent

# Load .env only if exists (development fallback)
# Production: secrets are injected as env vars directly
env_path = ROOT_DIR / ".env"
if env_path.exists():
    load_dotenv(env_path)

from booking_requests import config  # noqa: E402
from booking_requests.db import close_mongo, connect_mongo, get_db, ping_db  # noqa: E402
from booking_requests.exception_handlers import register_exception_handlers  # noqa: E402
from booking_requests.indexes.booking_request_indexes import ensure_booking_request_indexes  # noqa: E402
from booking_requests.middleware.correlation_id import CorrelationIdMiddleware  # noqa: E402
from booking_requests.middleware.structured_logging_middleware import StructuredLoggingMiddleware  # noqa: E402
from booking_requests.request_context import CorrelationIdFilter  # noqa: E402
from booking_requests.routers.booking_requests import router as booking_requests_router  # noqa: E402
from booking_requests.services.booking_request_timeouts import timeout_loop  # noqa: E402
from booking_requests.services.container import build_services  # noqa: E402
from booking_requests.services.email import build_email_service  # noqa: E402
from booking_requests.services.payment_gateway import build_payment_gateway  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(CorrelationIdFilter())
logger = logging.getLogger("booking-requests-api")

app = FastAPI(title=config.APP_NAME, version=config.APP_VERSION)

# Transports are app-wide; repositories are bound per request
app.state.payment_gateway = build_payment_gateway()
app.state.email_service = build_email_service()
app.state.retry_sleep = None

# Middleware added last runs first: correlation id wraps the access log
app.add_middleware(StructuredLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Routers (/api prefix is on each router)
app.include_router(booking_requests_router)

_timeout_task: Optional[asyncio.Task] = None


@app.get("/api/health")
async def health(db: AsyncIOMotorDatabase = Depends(get_db)) -> dict[str, Any]:
    """Main health check with database ping"""
    return {"ok": await ping_db(db), "service": "booking-requests"}


# Deployment health check aliases
@app.get("/health")
@app.get("/health/")
async def deployment_health() -> dict[str, Any]:
    """Simple health check for deployment platforms"""
    return {"ok": True, "service": "booking-requests", "status": "healthy"}


async def _timeout_services():
    db = await get_db()
    return build_services(
        db,
        gateway=app.state.payment_gateway,
        email=app.state.email_service,
        sleep=app.state.retry_sleep,
    )


@app.on_event("startup")
async def _startup() -> None:
    global _timeout_task

    await connect_mongo()
    await ensure_booking_request_indexes(await get_db())
    logger.info(
        "Startup complete (payment_provider=%s, email_provider=%s)",
        config.PAYMENT_PROVIDER,
        config.EMAIL_PROVIDER,
    )

    if config.ENABLE_TIMEOUT_WORKER:
        _timeout_task = asyncio.create_task(timeout_loop(_timeout_services))
        logger.info("Booking request timeout worker started")


@app.on_event("shutdown")
async def _shutdown() -> None:
    if _timeout_task is not None:
        _timeout_task.cancel()
    await close_mongo()
    logger.info("Shutdown complete")

from __future__ import annotations

import logging
import os
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from booking_requests import config

logger = logging.getLogger("db")

_mongo_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


def _mongo_url() -> str:
    url = os.environ.get("MONGO_URL")
    if not url:
        raise RuntimeError("MONGO_URL is not configured")
    return url


async def connect_mongo() -> None:
    """Open the shared client once; booking writes rely on tz-aware datetimes."""

    global _mongo_client, _db

    if _mongo_client is not None and _db is not None:
        return

    _mongo_client = AsyncIOMotorClient(
        _mongo_url(),
        tz_aware=True,
        serverSelectionTimeoutMS=int(config.STORE_TIMEOUT_SECONDS * 1000),
    )
    _db = _mongo_client[config.DB_NAME]
    logger.info("Connected to MongoDB database %s", config.DB_NAME)


async def close_mongo() -> None:
    global _mongo_client, _db

    if _mongo_client is not None:
        _mongo_client.close()

    _mongo_client = None
    _db = None


async def get_db() -> AsyncIOMotorDatabase:
    if _db is None:
        await connect_mongo()
    if _db is None:
        raise RuntimeError("MongoDB connection is not available")
    return _db


async def ping_db(db: AsyncIOMotorDatabase) -> bool:
    try:
        await db.command("ping")
    except Exception as exc:
        logger.warning("MongoDB ping failed: %s", exc)
        return False
    return True

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from booking_requests.repositories.base_repository import EMAIL_FAILURES, get_collection
from booking_requests.utils import now_utc


EMAIL_FAILURE_PENDING = "pending"
EMAIL_FAILURE_RESENT = "resent"


def _oid(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


class EmailFailureRepository:
    """Emails that exhausted their retries and wait for manual follow-up."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._col = get_collection(db, EMAIL_FAILURES)

    async def insert(self, doc: Dict[str, Any]) -> Any:
        doc.setdefault("status", EMAIL_FAILURE_PENDING)
        doc.setdefault("created_at", now_utc())
        res = await self._col.insert_one(doc)
        return res.inserted_id

    async def get(self, failure_id: str) -> Optional[Dict[str, Any]]:
        oid = _oid(failure_id)
        if oid is None:
            return None
        return await self._col.find_one({"_id": oid})

    async def list(
        self,
        *,
        status: Optional[str] = None,
        booking_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        flt: Dict[str, Any] = {}
        if status:
            flt["status"] = status
        if booking_id is not None:
            flt["booking_id"] = booking_id
        cursor = self._col.find(flt).sort("created_at", -1).limit(limit)
        return await cursor.to_list(length=limit)

    async def mark_resent(
        self,
        failure_id: str,
        *,
        resolved_by: str,
        resolved_at: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        """Flip a pending record to resent; None if it was already handled."""

        oid = _oid(failure_id)
        if oid is None:
            return None
        return await self._col.find_one_and_update(
            {"_id": oid, "status": EMAIL_FAILURE_PENDING},
            {
                "$set": {
                    "status": EMAIL_FAILURE_RESENT,
                    "resolved_at": resolved_at or now_utc(),
                    "resolved_by": resolved_by,
                }
            },
            return_document=ReturnDocument.AFTER,
        )

    async def record_resend_failure(self, failure_id: str, reason: str) -> None:
        oid = _oid(failure_id)
        if oid is None:
            return
        await self._col.update_one(
            {"_id": oid, "status": EMAIL_FAILURE_PENDING},
            {"$set": {"last_resend_error": reason, "last_resend_at": now_utc()}, "$inc": {"resend_attempts": 1}},
        )

from __future__ import annotations

from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from booking_requests.repositories.base_repository import BOOKING_REQUEST_EVENTS, get_collection


class BookingEventRepository:
    """Append-only timeline of a booking request; documents are never updated."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._col = get_collection(db, BOOKING_REQUEST_EVENTS)

    async def append(self, doc: Dict[str, Any]) -> Any:
        res = await self._col.insert_one(doc)
        return res.inserted_id

    async def list_for_booking(self, booking_id: int, *, limit: int = 500) -> List[Dict[str, Any]]:
        cursor = self._col.find({"booking_id": booking_id}).sort("created_at", 1).limit(limit)
        return await cursor.to_list(length=limit)

    async def count(self, booking_id: int, event_type: str, *, data: Optional[Dict[str, Any]] = None) -> int:
        flt: Dict[str, Any] = {"booking_id": booking_id, "event_type": event_type}
        for key, value in (data or {}).items():
            flt[f"event_data.{key}"] = value
        return await self._col.count_documents(flt)

    async def exists(self, booking_id: int, event_type: str) -> bool:
        return await self._col.find_one({"booking_id": booking_id, "event_type": event_type}) is not None

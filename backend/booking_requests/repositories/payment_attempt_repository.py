from __future__ import annotations

from typing import Any, Dict, List

from motor.motor_asyncio import AsyncIOMotorDatabase

from booking_requests.repositories.base_repository import PAYMENT_ATTEMPTS, get_collection


class PaymentAttemptRepository:
    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._col = get_collection(db, PAYMENT_ATTEMPTS)

    async def insert(self, doc: Dict[str, Any]) -> Any:
        res = await self._col.insert_one(doc)
        return res.inserted_id

    async def list_for_booking(self, booking_id: int, *, limit: int = 200) -> List[Dict[str, Any]]:
        cursor = self._col.find({"booking_id": booking_id}).sort("created_at", 1).limit(limit)
        return await cursor.to_list(length=limit)

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from booking_requests.domain.booking_state_machine import (
    CONFIRMED,
    PENDING_CONFIRMATION,
    REJECTED,
    validate_transition,
)
from booking_requests.repositories.base_repository import BOOKINGS, get_collection
from booking_requests.utils import as_utc, now_utc


class PreconditionFailed(Exception):
    """A conditional write found the row in a different state than expected."""

    def __init__(self, booking_id: int, expected_status: str, reason: str = "status_mismatch") -> None:
        super().__init__(f"Booking {booking_id} precondition failed ({reason}); expected {expected_status}")
        self.booking_id = booking_id
        self.expected_status = expected_status
        self.reason = reason


def claim_is_live(claim: Optional[Dict[str, Any]], now: datetime, ttl_seconds: int) -> bool:
    if not claim:
        return False
    claimed_at = claim.get("claimed_at")
    if not isinstance(claimed_at, datetime):
        return False
    return as_utc(claimed_at) + timedelta(seconds=ttl_seconds) > now


class BookingRepository:
    """Booking rows are only ever written through compare-and-swap updates.

    Every write names the status (and, where relevant, the review claim) it
    expects to find; a concurrent writer that got there first makes the
    update match nothing and `PreconditionFailed` is raised.
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db
        self._col = get_collection(db, BOOKINGS)

    async def get_by_id(self, booking_id: int) -> Optional[Dict[str, Any]]:
        return await self._col.find_one({"_id": booking_id})

    async def insert_pending(self, booking_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Store a request as the (external) creation flow leaves it."""

        now = now_utc()
        doc: Dict[str, Any] = {
            **payload,
            "_id": booking_id,
            "status": PENDING_CONFIRMATION,
            "request_submitted_at": payload.get("request_submitted_at") or now,
            "created_at": now,
            "updated_at": now,
        }
        await self._col.insert_one(doc)
        return doc

    async def conditional_update(
        self,
        booking_id: int,
        expected_status: str,
        patch: Dict[str, Any],
        *,
        extra_filter: Optional[Dict[str, Any]] = None,
        unset: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Apply `patch` only if the row still has `expected_status`.

        Returns the updated document; raises PreconditionFailed otherwise.
        """

        target = patch.get("status")
        if target is not None and target != expected_status:
            validate_transition(expected_status, target)

        flt: Dict[str, Any] = {"_id": booking_id, "status": expected_status}
        if extra_filter:
            flt.update(extra_filter)

        update: Dict[str, Any] = {"$set": {**patch, "updated_at": now_utc()}}
        if unset:
            update["$unset"] = {field: "" for field in unset}

        doc = await self._col.find_one_and_update(flt, update, return_document=ReturnDocument.AFTER)
        if doc is None:
            raise PreconditionFailed(booking_id, expected_status)
        return doc

    def _free_claim_filter(self, booking: Dict[str, Any], now: datetime, ttl_seconds: int) -> Dict[str, Any]:
        claim = booking.get("review_claim")
        if claim_is_live(claim, now, ttl_seconds):
            raise PreconditionFailed(booking["_id"], PENDING_CONFIRMATION, reason="review_in_progress")
        if claim:
            # Stale claim from a crashed invocation: swap on its exact id
            return {"review_claim.claim_id": claim.get("claim_id")}
        return {"review_claim": None}

    async def claim_for_review(
        self,
        booking: Dict[str, Any],
        *,
        admin_id: str,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> str:
        """Mark a pending booking as being approved by `admin_id`.

        Returns the claim id that the confirming write must present.
        """

        now = now or now_utc()
        claim_filter = self._free_claim_filter(booking, now, ttl_seconds)
        claim_id = uuid.uuid4().hex
        await self.conditional_update(
            booking["_id"],
            PENDING_CONFIRMATION,
            {"review_claim": {"claim_id": claim_id, "admin_id": admin_id, "claimed_at": now}},
            extra_filter=claim_filter,
        )
        return claim_id

    async def release_claim(self, booking_id: int, claim_id: str) -> bool:
        res = await self._col.update_one(
            {"_id": booking_id, "status": PENDING_CONFIRMATION, "review_claim.claim_id": claim_id},
            {"$unset": {"review_claim": ""}, "$set": {"updated_at": now_utc()}},
        )
        return res.modified_count == 1

    async def mark_confirmed(
        self,
        booking_id: int,
        *,
        claim_id: str,
        admin_id: str,
        charge_id: str,
        paid_amount: int,
        provider: str,
        reviewed_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        return await self.conditional_update(
            booking_id,
            PENDING_CONFIRMATION,
            {
                "status": CONFIRMED,
                "charge_id": charge_id,
                "payment_provider": provider,
                "paid_amount": paid_amount,
                "confirmed_claim_id": claim_id,
                "admin_reviewed_by": admin_id,
                "admin_reviewed_at": reviewed_at or now_utc(),
            },
            extra_filter={"review_claim.claim_id": claim_id},
            unset=["review_claim"],
        )

    async def mark_rejected(
        self,
        booking: Dict[str, Any],
        *,
        admin_id: str,
        reason: str,
        ttl_seconds: int,
        reviewed_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        reviewed_at = reviewed_at or now_utc()
        claim_filter = self._free_claim_filter(booking, reviewed_at, ttl_seconds)
        return await self.conditional_update(
            booking["_id"],
            PENDING_CONFIRMATION,
            {
                "status": REJECTED,
                "admin_reviewed_by": admin_id,
                "admin_reviewed_at": reviewed_at,
                "rejection_reason": reason,
            },
            extra_filter=claim_filter,
            unset=["review_claim"],
        )

    async def list_pending(self, *, limit: int = 500) -> List[Dict[str, Any]]:
        cursor = self._col.find({"status": PENDING_CONFIRMATION}).sort("request_submitted_at", 1).limit(limit)
        return await cursor.to_list(length=limit)

    async def list_rejected_holding_payment_method(self, *, limit: int = 500) -> List[Dict[str, Any]]:
        cursor = (
            self._col.find({"status": REJECTED, "payment_method_id": {"$nin": [None, ""]}})
            .sort("admin_reviewed_at", 1)
            .limit(limit)
        )
        return await cursor.to_list(length=limit)

    async def clear_payment_method(self, booking_id: int, payment_method_id: str) -> Dict[str, Any]:
        """Drop the stored payment method reference from a rejected booking."""

        return await self.conditional_update(
            booking_id,
            REJECTED,
            {"payment_method_id": None},
            extra_filter={"payment_method_id": payment_method_id},
        )

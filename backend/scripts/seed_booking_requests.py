import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict

# Make `booking_requests` importable when run as `python scripts/seed_booking_requests.py`
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from booking_requests.db import close_mongo, get_db  # noqa: E402
from booking_requests.services.audit import AuditLogger  # noqa: E402
from booking_requests.services.booking_request_service import record_submitted_request  # noqa: E402


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _request(tour_type: str, total_amount: int, submitted_hours_ago: int, **extra: Any) -> Dict[str, Any]:
    day = (_now() + timedelta(days=21)).date().isoformat()
    doc: Dict[str, Any] = {
        "tour_type": tour_type,
        "booking_date": day,
        "booking_time": "10:00",
        "adults": 2,
        "children": 0,
        "infants": 0,
        "customer_name": "Demo Customer",
        "customer_email": "demo.customer@example.com",
        "customer_phone": "+81-90-0000-0000",
        "payment_method_id": "pm_card_visa",
        "total_amount": total_amount,
        "request_submitted_at": _now() - timedelta(hours=submitted_hours_ago),
    }
    doc.update(extra)
    return doc


async def main() -> None:
    db = await get_db()
    audit = AuditLogger(db)

    requests = {
        42: _request("uji-tea-ceremony", 13000, 1),
        43: _request("gion-night-walk", 9000, 14),
        44: _request("morning-arashiyama-tour", 22000, 50, payment_method_id="pm_card_chargeDeclined"),
    }

    for booking_id, payload in requests.items():
        if await db.bookings.find_one({"_id": booking_id}):
            print(f"skip booking_id={booking_id} (exists)")
            continue
        await record_submitted_request(db, audit, booking_id, payload)
        print(f"seeded booking_id={booking_id} tour={payload['tour_type']}")

    await close_mongo()
    print("✅ Seed booking requests OK")


if __name__ == "__main__":
    asyncio.run(main())

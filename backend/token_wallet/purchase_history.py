"""
Purchase History

Append-only audit log of completed purchases. One immutable row per
order_id, each with a monthly sequential receipt number (DISC-YYYYMM-NNNN).
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from pymongo import ReturnDocument

from .config import PURCHASE_CONFIG, RECEIPT_PREFIX
from .models import PurchaseHistoryRecord, PurchaseStats

logger = logging.getLogger(__name__)


class PurchaseHistoryStore:
    """Writes and queries purchase_history."""

    def __init__(self, db):
        self.db = db

    async def next_receipt_number(self, now: Optional[datetime] = None) -> str:
        """Atomically allocate the next receipt number for the current month."""
        now = now or datetime.now(timezone.utc)
        year_month = now.strftime("%Y%m")

        counter = await self.db.receipt_counters.find_one_and_update(
            {"year_month": year_month},
            {
                "$inc": {"last_seq": 1},
                "$set": {"updated_at": now.isoformat()}
            },
            upsert=True,
            return_document=ReturnDocument.AFTER
        )

        return f"{RECEIPT_PREFIX}-{year_month}-{counter['last_seq']:04d}"

    async def record_purchase(
        self,
        purchase: Dict[str, Any],
        payment_id: str,
        payment_method: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Write the history row for a completed purchase.

        Safe to call again for the same order: the existing row is returned
        unchanged and no receipt number is consumed.
        """
        order_id = purchase["order_id"]
        existing = await self.db.purchase_history.find_one({"order_id": order_id}, {"_id": 0})
        if existing:
            logger.info(f"Purchase history for {order_id} already recorded")
            return existing

        now = datetime.now(timezone.utc)
        amount_minor = purchase["amount_minor"]
        record = PurchaseHistoryRecord(
            order_id=order_id,
            user_id=purchase["user_id"],
            token_amount=purchase["token_amount"],
            amount_minor=amount_minor,
            amount_major=amount_minor / 100,
            currency=purchase.get("currency", PURCHASE_CONFIG["currency"]),
            payment_id=payment_id,
            payment_method=payment_method,
            payment_provider=PURCHASE_CONFIG["provider"],
            receipt_number=await self.next_receipt_number(now),
            purchased_at=now.isoformat()
        ).model_dump()

        # $setOnInsert keeps the first writer's row if two owners ever overlap
        await self.db.purchase_history.update_one(
            {"order_id": order_id},
            {"$setOnInsert": record},
            upsert=True
        )

        logger.info(f"Purchase history recorded: {order_id} ({record['receipt_number']})")
        return await self.db.purchase_history.find_one({"order_id": order_id}, {"_id": 0})

    async def get_user_history(self, user_id: str, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        cursor = self.db.purchase_history.find(
            {"user_id": user_id},
            {"_id": 0}
        ).sort("purchased_at", -1).skip(offset).limit(limit)

        return await cursor.to_list(length=limit)

    async def get_user_stats(self, user_id: str) -> PurchaseStats:
        match = {"$match": {"user_id": user_id, "status": "completed"}}

        totals = await self.db.purchase_history.aggregate([
            match,
            {
                "$group": {
                    "_id": None,
                    "count": {"$sum": 1},
                    "tokens": {"$sum": "$token_amount"},
                    "spent": {"$sum": "$amount_major"},
                    "last": {"$max": "$purchased_at"}
                }
            }
        ]).to_list(1)

        if not totals or not totals[0]["count"]:
            return PurchaseStats()

        methods = await self.db.purchase_history.aggregate([
            match,
            {"$group": {"_id": "$payment_method", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}}
        ]).to_list(10)
        most_used = next((m["_id"] for m in methods if m["_id"]), "unknown")

        row = totals[0]
        return PurchaseStats(
            total_purchases=row["count"],
            total_tokens=row["tokens"],
            total_spent=round(row["spent"], 2),
            average_purchase=round(row["spent"] / row["count"], 2),
            last_purchase_date=row["last"],
            most_used_payment_method=most_used
        )

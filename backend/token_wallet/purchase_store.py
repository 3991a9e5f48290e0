"""
Pending Purchase Store

Persistence for pending_token_purchases. The claim is the only
serialization point of a purchase: a status-guarded find_one_and_update
that exactly one concurrent caller can win. Every later write is scoped to
the winner's claim_id.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Iterable

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .models import PendingPurchase, PurchaseStatus, FailureKind

logger = logging.getLogger(__name__)

_NO_ID = {"_id": 0}


class PurchaseStore:
    """Data access for purchase lifecycle records."""

    def __init__(self, db):
        self.db = db

    @property
    def collection(self):
        return self.db.pending_token_purchases

    async def create_pending_purchase(
        self,
        order_id: str,
        user_id: str,
        token_amount: int,
        amount_minor: int,
        currency: str = "INR"
    ) -> Dict[str, Any]:
        """
        Store a pending purchase for a gateway order.

        Idempotent on order_id: re-storing the same order returns the
        existing row.
        """
        now = datetime.now(timezone.utc).isoformat()
        purchase_doc = PendingPurchase(
            order_id=order_id,
            user_id=user_id,
            token_amount=token_amount,
            amount_minor=amount_minor,
            currency=currency,
            created_at=now,
            updated_at=now
        ).model_dump(mode="json")

        try:
            await self.collection.insert_one(purchase_doc)
        except DuplicateKeyError:
            logger.info(f"Pending purchase {order_id} already stored")

        return await self.get(order_id)

    async def get(self, order_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        query = {"order_id": order_id}
        if user_id:
            query["user_id"] = user_id
        return await self.collection.find_one(query, _NO_ID)

    async def claim(
        self,
        order_id: str,
        source: str,
        user_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Atomic pending -> processing transition.

        Returns the claimed row, or None if the caller lost (row not pending).
        """
        query = {"order_id": order_id, "status": PurchaseStatus.PENDING.value}
        if user_id:
            query["user_id"] = user_id
        return await self._take_ownership(query, source)

    async def reclaim_retryable(
        self,
        order_id: str,
        source: str,
        user_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Atomic failed(retryable) -> processing transition. Clears the error."""
        query = {
            "order_id": order_id,
            "status": PurchaseStatus.FAILED.value,
            "failure_kind": FailureKind.RETRYABLE.value
        }
        if user_id:
            query["user_id"] = user_id
        return await self._take_ownership(query, source)

    async def reclaim_stale(
        self,
        order_id: str,
        source: str,
        stale_before: str,
        user_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Take over a processing row whose claim was stamped before stale_before.

        The previous owner's later writes are scoped to its claim_id and
        become no-ops once the claim_id is replaced.
        """
        query = {
            "order_id": order_id,
            "status": PurchaseStatus.PROCESSING.value,
            "claimed_at": {"$lt": stale_before}
        }
        if user_id:
            query["user_id"] = user_id
        return await self._take_ownership(query, source)

    async def _take_ownership(self, query: Dict[str, Any], source: str) -> Optional[Dict[str, Any]]:
        now = datetime.now(timezone.utc).isoformat()
        # No projection: some drivers re-read AFTER documents with the original
        # filter, which the status change itself has just invalidated
        claimed = await self.collection.find_one_and_update(
            query,
            {
                "$set": {
                    "status": PurchaseStatus.PROCESSING.value,
                    "claim_id": str(uuid.uuid4()),
                    "claimed_by": source,
                    "claimed_at": now,
                    "failure_kind": None,
                    "error_message": None,
                    "updated_at": now
                }
            },
            return_document=ReturnDocument.AFTER
        )
        if claimed:
            claimed.pop("_id", None)
        return claimed

    async def mark_credited(self, order_id: str, claim_id: str) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        result = await self.collection.update_one(
            {"order_id": order_id, "claim_id": claim_id},
            {"$set": {"credited": True, "credited_at": now, "updated_at": now}}
        )
        return result.modified_count > 0

    async def mark_completed(self, order_id: str, claim_id: str, payment_id: str) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        result = await self.collection.update_one(
            {
                "order_id": order_id,
                "claim_id": claim_id,
                "status": PurchaseStatus.PROCESSING.value
            },
            {
                "$set": {
                    "status": PurchaseStatus.COMPLETED.value,
                    "payment_id": payment_id,
                    "completed_at": now,
                    "updated_at": now
                }
            }
        )
        return result.modified_count > 0

    async def mark_failed(
        self,
        order_id: str,
        error_message: str,
        failure_kind: FailureKind,
        claim_id: Optional[str] = None,
        user_id: Optional[str] = None,
        from_statuses: Optional[Iterable[PurchaseStatus]] = None,
        payment_id: Optional[str] = None
    ) -> bool:
        """
        Mark a purchase failed with a captured message.

        Owners pass their claim_id; non-owners must restrict from_statuses so
        a row owned by another handler, or already completed, is never touched.
        """
        query: Dict[str, Any] = {"order_id": order_id}
        if claim_id:
            query["claim_id"] = claim_id
            query["status"] = PurchaseStatus.PROCESSING.value
        if user_id:
            query["user_id"] = user_id
        if from_statuses is not None:
            query["status"] = {"$in": [PurchaseStatus(s).value for s in from_statuses]}

        fields = {
            "status": PurchaseStatus.FAILED.value,
            "failure_kind": FailureKind(failure_kind).value,
            "error_message": error_message,
            "updated_at": datetime.now(timezone.utc).isoformat()
        }
        if payment_id:
            fields["payment_id"] = payment_id

        result = await self.collection.update_one(query, {"$set": fields})
        if result.modified_count:
            logger.warning(f"Purchase {order_id} marked failed ({fields['failure_kind']}): {error_message}")
        return result.modified_count > 0

    async def count_by_status(self) -> Dict[str, int]:
        rows = await self.collection.aggregate([
            {"$group": {"_id": "$status", "count": {"$sum": 1}}}
        ]).to_list(10)
        return {row["_id"]: row["count"] for row in rows}

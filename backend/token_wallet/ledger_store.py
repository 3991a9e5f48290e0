"""
Token Ledger Store

Persistence for user_tokens (balances) and token_transactions (log).

CRITICAL: every balance mutation is a single-document conditional update.
Consumption and resets are guarded by the row version (compare-and-set);
credits are an atomic $inc, optionally guarded by a credit reference so a
given reference can be applied at most once.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional, Dict, Any, List

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .models import TokenLedger, TokenTransaction
from .quota_policy import next_daily_reset

logger = logging.getLogger(__name__)

_NO_ID = {"_id": 0}


class TokenLedgerStore:
    """Data access for the token ledger collections."""

    def __init__(self, db):
        self.db = db

    async def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.user_tokens.find_one({"user_id": user_id}, _NO_ID)

    async def get_or_create(self, user_id: str, plan: str, now: datetime) -> Dict[str, Any]:
        """
        Get the ledger row, creating it lazily on first touch.

        Uses upsert with $setOnInsert so concurrent creators converge on one row.
        """
        ledger = await self.get(user_id)
        if ledger:
            return ledger

        ledger_doc = TokenLedger(
            user_id=user_id,
            plan=plan,
            daily_reset_at=next_daily_reset(now).isoformat(),
            created_at=now.isoformat(),
            updated_at=now.isoformat()
        ).model_dump()

        await self.db.user_tokens.update_one(
            {"user_id": user_id},
            {"$setOnInsert": ledger_doc},
            upsert=True
        )
        logger.info(f"Created token ledger for user {user_id} (plan={plan})")

        return await self.get(user_id)

    async def compare_and_set(
        self,
        user_id: str,
        expected_version: int,
        fields: Dict[str, Any],
        now: datetime
    ) -> bool:
        """
        Write fields only if the row is still at expected_version.

        Returns False when a concurrent writer got there first.
        """
        result = await self.db.user_tokens.update_one(
            {"user_id": user_id, "version": expected_version},
            {
                "$set": {**fields, "updated_at": now.isoformat()},
                "$inc": {"version": 1}
            }
        )
        return result.modified_count > 0

    async def increment_purchased(
        self,
        user_id: str,
        amount: int,
        now: datetime,
        credit_ref: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Atomically add to purchased_balance.

        With credit_ref, the increment and the "credited" marker land in the
        same update; returns None if that reference was already applied.
        """
        query = {"user_id": user_id}
        update = {
            "$inc": {"purchased_balance": amount, "version": 1},
            "$set": {"updated_at": now.isoformat()}
        }
        if credit_ref:
            query["credited_refs"] = {"$ne": credit_ref}
            update["$push"] = {"credited_refs": credit_ref}

        # No projection: some drivers re-read AFTER documents with the original
        # filter, which the update itself has just invalidated
        ledger = await self.db.user_tokens.find_one_and_update(
            query,
            update,
            return_document=ReturnDocument.AFTER
        )
        if ledger:
            ledger.pop("_id", None)
        return ledger

    async def write_transaction(
        self,
        user_id: str,
        source: str,
        tokens_total: int,
        daily_tokens: int,
        purchased_tokens: int,
        now: datetime,
        request_id: Optional[str] = None,
        details: Optional[Dict] = None
    ):
        """
        Append an immutable transaction entry.

        The balance mutation has already committed, so a failed log write
        is reported and not raised.
        """
        entry = TokenTransaction(
            user_id=user_id,
            source=source,
            tokens_total=tokens_total,
            daily_tokens=daily_tokens,
            purchased_tokens=purchased_tokens,
            request_id=request_id or str(uuid.uuid4()),
            timestamp=now.isoformat(),
            details=details or {}
        ).model_dump()

        try:
            await self.db.token_transactions.insert_one(entry)
        except PyMongoError as e:
            logger.warning(f"Failed to write token transaction for user {user_id}: {e}")

    async def get_transactions(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Recent transaction entries for a user, newest first."""
        cursor = self.db.token_transactions.find(
            {"user_id": user_id},
            _NO_ID
        ).sort("timestamp", -1).limit(limit)

        return await cursor.to_list(length=limit)

    async def get_totals(self) -> Dict[str, int]:
        """Aggregate token movement across all users (admin)."""
        totals = {"ledgers": await self.db.user_tokens.count_documents({})}

        pipeline = [
            {"$group": {"_id": "$source", "total": {"$sum": "$tokens_total"}}}
        ]
        rows = await self.db.token_transactions.aggregate(pipeline).to_list(10)
        for row in rows:
            totals[f"{row['_id']}_tokens"] = abs(row["total"])

        return totals

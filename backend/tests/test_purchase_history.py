"""
Purchase history, receipt numbering and stats tests.
"""

from datetime import datetime, timezone

import pytest

from token_wallet.purchase_history import PurchaseHistoryStore


def completed_purchase(order_id, user_id="user_1", token_amount=100, amount_minor=2500):
    return {
        "order_id": order_id,
        "user_id": user_id,
        "token_amount": token_amount,
        "amount_minor": amount_minor,
        "currency": "INR"
    }


@pytest.fixture
def history(db):
    return PurchaseHistoryStore(db)


class TestReceiptNumbers:

    @pytest.mark.asyncio
    async def test_sequential_within_month(self, history):
        now = datetime(2024, 3, 15, tzinfo=timezone.utc)

        first = await history.next_receipt_number(now)
        second = await history.next_receipt_number(now)

        assert first == "DISC-202403-0001"
        assert second == "DISC-202403-0002"

    @pytest.mark.asyncio
    async def test_new_month_restarts_sequence(self, history):
        await history.next_receipt_number(datetime(2024, 3, 31, tzinfo=timezone.utc))

        receipt = await history.next_receipt_number(datetime(2024, 4, 1, tzinfo=timezone.utc))

        assert receipt == "DISC-202404-0001"


class TestRecordPurchase:

    @pytest.mark.asyncio
    async def test_record_fields(self, history):
        row = await history.record_purchase(completed_purchase("ord_1"), "pay_1", "card")

        assert row["order_id"] == "ord_1"
        assert row["payment_id"] == "pay_1"
        assert row["amount_major"] == 25.0
        assert row["payment_provider"] == "razorpay"
        assert row["status"] == "completed"
        assert row["receipt_number"].startswith("DISC-")

    @pytest.mark.asyncio
    async def test_record_is_idempotent_per_order(self, history, db):
        first = await history.record_purchase(completed_purchase("ord_1"), "pay_1")
        second = await history.record_purchase(completed_purchase("ord_1"), "pay_1")

        assert second["receipt_number"] == first["receipt_number"]
        assert await db.purchase_history.count_documents({}) == 1
        counter = await db.receipt_counters.find_one({})
        assert counter["last_seq"] == 1

    @pytest.mark.asyncio
    async def test_history_newest_first_with_pagination(self, history, db):
        for i in range(3):
            await history.record_purchase(completed_purchase(f"ord_{i}"), f"pay_{i}")
            await db.purchase_history.update_one(
                {"order_id": f"ord_{i}"},
                {"$set": {"purchased_at": f"2024-03-1{i}T00:00:00+00:00"}}
            )
        await history.record_purchase(completed_purchase("ord_other", user_id="user_2"), "pay_x")

        page = await history.get_user_history("user_1", limit=2, offset=0)
        rest = await history.get_user_history("user_1", limit=2, offset=2)

        assert [row["order_id"] for row in page] == ["ord_2", "ord_1"]
        assert [row["order_id"] for row in rest] == ["ord_0"]


class TestStats:

    @pytest.mark.asyncio
    async def test_empty_stats(self, history):
        stats = await history.get_user_stats("nobody")

        assert stats.total_purchases == 0
        assert stats.most_used_payment_method == "unknown"
        assert stats.last_purchase_date is None

    @pytest.mark.asyncio
    async def test_stats_aggregate(self, history):
        await history.record_purchase(completed_purchase("ord_1", token_amount=100, amount_minor=2500), "p1", "upi")
        await history.record_purchase(completed_purchase("ord_2", token_amount=40, amount_minor=1000), "p2", "upi")
        await history.record_purchase(completed_purchase("ord_3", token_amount=20, amount_minor=500), "p3", "card")

        stats = await history.get_user_stats("user_1")

        assert stats.total_purchases == 3
        assert stats.total_tokens == 160
        assert stats.total_spent == 40.0
        assert stats.average_purchase == 13.33
        assert stats.most_used_payment_method == "upi"
        assert stats.last_purchase_date is not None

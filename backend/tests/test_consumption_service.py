"""
Token consumption and crediting tests.

Tests for:
1. Daily allotment consumed before purchased balance (spill-over)
2. Insufficient tokens leaves the ledger untouched
3. Compare-and-set retry when a concurrent writer moves the row
4. Lazy daily reset, persisted on read
5. Unlimited plan bypass
6. Exactly-once credit by reference
7. Input validation and store failure wrapping
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from pymongo.errors import PyMongoError

from conftest import FixedClock
from token_wallet.config import UNLIMITED_TOKENS
from token_wallet.consumption_service import ConsumptionService
from token_wallet.errors import WalletError
from token_wallet.models import TokenOperationContext


async def seed_ledger(service, user_id="user_1", plan="standard", used=0, purchased=0):
    await service.store.get_or_create(user_id, plan, service.clock())
    await service.db.user_tokens.update_one(
        {"user_id": user_id},
        {"$set": {"daily_tokens_used": used, "purchased_balance": purchased}}
    )


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def service(db, clock):
    return ConsumptionService(db, clock=clock)


# ==================== CONSUMPTION ====================

class TestConsume:

    @pytest.mark.asyncio
    async def test_spills_from_daily_into_purchased(self, service, db):
        await seed_ledger(service, used=18, purchased=10)

        result = await service.consume_tokens("user_1", "standard", 5)

        assert result.success
        assert result.daily_tokens_used == 2
        assert result.purchased_tokens_used == 3
        assert result.available_tokens == 0
        assert result.purchased_tokens == 7
        assert result.total_tokens == 7

        ledger = await db.user_tokens.find_one({"user_id": "user_1"})
        assert ledger["daily_tokens_used"] == 20
        assert ledger["purchased_balance"] == 7

    @pytest.mark.asyncio
    async def test_daily_only_when_enough_remains(self, service, db):
        await seed_ledger(service, used=5, purchased=10)

        result = await service.consume_tokens("user_1", "standard", 10)

        assert result.success
        assert result.purchased_tokens_used == 0
        ledger = await db.user_tokens.find_one({"user_id": "user_1"})
        assert ledger["daily_tokens_used"] == 15
        assert ledger["purchased_balance"] == 10

    @pytest.mark.asyncio
    async def test_first_touch_creates_ledger(self, service, db):
        result = await service.consume_tokens("new_user", "free", 3)

        assert result.success
        assert result.available_tokens == 5
        ledger = await db.user_tokens.find_one({"user_id": "new_user"})
        assert ledger["daily_tokens_used"] == 3
        assert ledger["version"] == 1

    @pytest.mark.asyncio
    async def test_insufficient_leaves_ledger_untouched(self, service, db):
        await seed_ledger(service, used=18, purchased=2)
        before = await db.user_tokens.find_one({"user_id": "user_1"}, {"_id": 0})

        result = await service.consume_tokens("user_1", "standard", 5)

        assert not result.success
        assert result.error_code == "INSUFFICIENT_TOKENS"
        assert result.total_tokens == 4
        after = await db.user_tokens.find_one({"user_id": "user_1"}, {"_id": 0})
        assert after == before
        assert await db.token_transactions.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_usage_transaction_written(self, service, db):
        await seed_ledger(service, used=18, purchased=10)
        context = TokenOperationContext(language="hi", feature_name="study_generation")

        await service.consume_tokens("user_1", "standard", 5, context)

        entry = await db.token_transactions.find_one({"user_id": "user_1"})
        assert entry["source"] == "usage"
        assert entry["tokens_total"] == -5
        assert entry["daily_tokens"] == -2
        assert entry["purchased_tokens"] == -3
        assert entry["details"]["feature_name"] == "study_generation"
        assert entry["details"]["user_plan"] == "standard"

    @pytest.mark.asyncio
    async def test_concurrent_consumers_never_double_spend(self, service, db):
        await seed_ledger(service, used=15, purchased=0)

        results = await asyncio.gather(
            service.consume_tokens("user_1", "standard", 5),
            service.consume_tokens("user_1", "standard", 5)
        )

        assert sorted(r.success for r in results) == [False, True]
        ledger = await db.user_tokens.find_one({"user_id": "user_1"})
        assert ledger["daily_tokens_used"] == 20
        assert ledger["purchased_balance"] == 0

    @pytest.mark.asyncio
    async def test_lost_compare_and_set_recomputes(self, service, db):
        await seed_ledger(service, used=10, purchased=4)
        real_cas = service.store.compare_and_set
        calls = []

        async def racing_cas(user_id, expected_version, fields, now):
            if not calls:
                # Another instance consumes 8 between our read and our write
                await db.user_tokens.update_one(
                    {"user_id": user_id},
                    {"$inc": {"daily_tokens_used": 8, "version": 1}}
                )
            calls.append(expected_version)
            return await real_cas(user_id, expected_version, fields, now)

        service.store.compare_and_set = racing_cas

        result = await service.consume_tokens("user_1", "standard", 5)

        assert len(calls) == 2
        assert result.success
        assert result.daily_tokens_used == 2
        assert result.purchased_tokens_used == 3
        ledger = await db.user_tokens.find_one({"user_id": "user_1"})
        assert ledger["daily_tokens_used"] == 20
        assert ledger["purchased_balance"] == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_report_failure(self, service, db):
        await seed_ledger(service, used=0, purchased=0)
        service.store.compare_and_set = AsyncMock(return_value=False)

        result = await service.consume_tokens("user_1", "standard", 5)

        assert not result.success
        assert result.error_code == "INSUFFICIENT_TOKENS"
        assert "retry" in result.error_message
        ledger = await db.user_tokens.find_one({"user_id": "user_1"})
        assert ledger["daily_tokens_used"] == 0


# ==================== DAILY RESET ====================

class TestDailyReset:

    @pytest.mark.asyncio
    async def test_consume_after_boundary_starts_fresh_window(self, service, db, clock):
        await seed_ledger(service, used=20, purchased=0)
        clock.now = clock.now + timedelta(days=1)

        result = await service.consume_tokens("user_1", "standard", 5)

        assert result.success
        assert result.available_tokens == 15
        ledger = await db.user_tokens.find_one({"user_id": "user_1"})
        assert ledger["daily_tokens_used"] == 5

    @pytest.mark.asyncio
    async def test_read_persists_due_reset(self, service, db, clock):
        await seed_ledger(service, used=20, purchased=3)
        clock.now = clock.now + timedelta(days=1)

        balance = await service.get_user_tokens("user_1", "standard")

        assert balance.available_tokens == 20
        assert balance.daily_tokens_used == 0
        assert balance.total_tokens == 23
        ledger = await db.user_tokens.find_one({"user_id": "user_1"})
        assert ledger["daily_tokens_used"] == 0
        assert ledger["daily_reset_at"] == balance.daily_reset_at
        assert ledger["purchased_balance"] == 3

    @pytest.mark.asyncio
    async def test_read_before_boundary_does_not_write(self, service, db):
        await seed_ledger(service, used=12, purchased=0)
        before = await db.user_tokens.find_one({"user_id": "user_1"})

        balance = await service.get_user_tokens("user_1", "standard")

        assert balance.available_tokens == 8
        after = await db.user_tokens.find_one({"user_id": "user_1"})
        assert after["version"] == before["version"]


# ==================== UNLIMITED PLAN ====================

class TestUnlimitedPlan:

    @pytest.mark.asyncio
    async def test_consume_bypasses_ledger(self, service, db):
        result = await service.consume_tokens("admin_1", "premium", 50)

        assert result.success
        assert result.available_tokens == UNLIMITED_TOKENS
        assert await db.user_tokens.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_balance_reports_sentinel(self, service, db):
        balance = await service.get_user_tokens("admin_1", "premium")

        assert balance.is_unlimited
        assert balance.total_tokens == UNLIMITED_TOKENS
        assert not balance.can_purchase_tokens
        assert await db.user_tokens.count_documents({}) == 0


# ==================== CREDITS ====================

class TestCredits:

    @pytest.mark.asyncio
    async def test_credit_adds_to_purchased(self, service, db):
        await seed_ledger(service, purchased=5)

        result = await service.add_purchased_tokens("user_1", "standard", 100)

        assert result.success
        assert result.new_purchased_balance == 105
        assert not result.already_applied

    @pytest.mark.asyncio
    async def test_credit_ref_applies_once(self, service, db):
        first = await service.add_purchased_tokens("user_1", "standard", 100, credit_ref="order_1")
        second = await service.add_purchased_tokens("user_1", "standard", 100, credit_ref="order_1")

        assert first.new_purchased_balance == 100
        assert not first.already_applied
        assert second.already_applied
        assert second.new_purchased_balance == 100
        ledger = await db.user_tokens.find_one({"user_id": "user_1"})
        assert ledger["credited_refs"] == ["order_1"]
        assert await db.token_transactions.count_documents({"source": "purchase"}) == 1

    @pytest.mark.asyncio
    async def test_store_increment_returns_updated_ledger(self, service):
        await seed_ledger(service, purchased=5)

        ledger = await service.store.increment_purchased("user_1", 10, service.clock(), "order_1")

        assert "_id" not in ledger
        assert ledger["purchased_balance"] == 15
        assert ledger["credited_refs"] == ["order_1"]
        assert await service.store.increment_purchased("user_1", 10, service.clock(), "order_1") is None

    @pytest.mark.asyncio
    async def test_distinct_refs_both_apply(self, service):
        await service.add_purchased_tokens("user_1", "standard", 10, credit_ref="order_1")
        result = await service.add_purchased_tokens("user_1", "standard", 20, credit_ref="order_2")

        assert result.new_purchased_balance == 30

    @pytest.mark.asyncio
    async def test_credit_does_not_touch_daily_usage(self, service, db):
        await seed_ledger(service, used=20)

        await service.add_purchased_tokens("user_1", "standard", 10)

        ledger = await db.user_tokens.find_one({"user_id": "user_1"})
        assert ledger["daily_tokens_used"] == 20


# ==================== VALIDATION & ERRORS ====================

class TestValidation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cost", [0, -1, 1001, True, 2.5])
    async def test_invalid_cost(self, service, cost):
        with pytest.raises(WalletError) as exc:
            await service.consume_tokens("user_1", "standard", cost)
        assert exc.value.code == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_invalid_plan(self, service):
        with pytest.raises(WalletError) as exc:
            await service.consume_tokens("user_1", "gold", 5)
        assert exc.value.code == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("identifier", ["", "   ", None])
    async def test_invalid_identifier(self, service, identifier):
        with pytest.raises(WalletError) as exc:
            await service.get_user_tokens(identifier, "standard")
        assert exc.value.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, 10001])
    async def test_invalid_purchase_amount(self, service, amount):
        with pytest.raises(WalletError) as exc:
            await service.add_purchased_tokens("user_1", "standard", amount)
        assert exc.value.code == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_store_failure_wrapped(self, service):
        service.store.get_or_create = AsyncMock(side_effect=PyMongoError("connection refused"))

        with pytest.raises(WalletError) as exc:
            await service.consume_tokens("user_1", "standard", 5)

        assert exc.value.code == "TOKEN_SERVICE_ERROR"
        assert exc.value.status_code == 500

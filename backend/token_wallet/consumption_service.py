"""
Token Consumption Service

Core ledger operations:
- Atomic consumption (daily allotment first, then purchased balance)
- Atomic crediting of purchased tokens
- Balance snapshots
- Lazy daily reset, applied on every touch (read or consume)

CRITICAL: no read-modify-write is split across round trips without a guard.
Consumption reads the row, computes the new state and commits it with a
versioned compare-and-set; a lost race re-reads and recomputes.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional, Dict, Any

from pymongo.errors import PyMongoError

from .config import CAS_MAX_ATTEMPTS, MAX_TOKEN_COST, PURCHASE_CONFIG, UNLIMITED_TOKENS
from .errors import WalletError
from .ledger_store import TokenLedgerStore
from .models import TokenBalance, TokenConsumptionResult, TokenCreditResult, TokenOperationContext
from .quota_policy import (
    can_purchase_tokens,
    get_daily_limit,
    is_reset_due,
    is_unlimited_plan,
    is_valid_plan,
    next_daily_reset
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConsumptionService:
    """Debit, credit and read operations against the token ledger."""

    def __init__(self, db, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.store = TokenLedgerStore(db)
        self.clock = clock or _utcnow

    # ==================== READS ====================

    async def get_user_tokens(self, user_id: str, plan: str) -> TokenBalance:
        """
        Current balance for a user.

        Persists a due daily reset before returning, so a read right after
        the boundary never reports yesterday's usage.
        """
        self._validate_identifier(user_id)
        self._validate_plan(plan)

        try:
            if is_unlimited_plan(plan):
                ledger = await self.store.get(user_id)
                return self._unlimited_balance(plan, ledger)

            now = self.clock()
            ledger = await self._load_current(user_id, plan, now)
        except PyMongoError as e:
            logger.error(f"Failed to get tokens for user {user_id}: {e}")
            raise WalletError("TOKEN_SERVICE_ERROR", "Failed to retrieve token information") from e

        return self._balance_from_ledger(plan, ledger)

    async def _load_current(self, user_id: str, plan: str, now: datetime) -> Dict[str, Any]:
        """Read the ledger row, committing a due reset first."""
        for _ in range(CAS_MAX_ATTEMPTS):
            ledger = await self.store.get_or_create(user_id, plan, now)
            if not is_reset_due(ledger.get("daily_reset_at"), now):
                return ledger

            reset_fields = {
                "daily_tokens_used": 0,
                "daily_reset_at": next_daily_reset(now).isoformat(),
                "plan": plan
            }
            if await self.store.compare_and_set(user_id, ledger["version"], reset_fields, now):
                logger.info(f"Applied daily token reset for user {user_id}")
                return {**ledger, **reset_fields, "version": ledger["version"] + 1}

        # Row kept moving under us; report the reset view without persisting it
        ledger = await self.store.get(user_id)
        if is_reset_due(ledger.get("daily_reset_at"), now):
            ledger = {**ledger, "daily_tokens_used": 0, "daily_reset_at": next_daily_reset(now).isoformat()}
        return ledger

    # ==================== CONSUMPTION ====================

    async def consume_tokens(
        self,
        identifier: str,
        plan: str,
        cost: int,
        context: Optional[TokenOperationContext] = None
    ) -> TokenConsumptionResult:
        """
        Atomically deduct cost tokens.

        Daily allotment is consumed first, the remainder spills into the
        purchased balance. Two concurrent calls can never both succeed when
        only one cost's worth of tokens remains.

        Returns:
            TokenConsumptionResult; success=False with INSUFFICIENT_TOKENS
            leaves the ledger untouched.
        """
        self._validate_identifier(identifier)
        self._validate_plan(plan)
        self._validate_cost(cost)

        if is_unlimited_plan(plan):
            return TokenConsumptionResult(
                success=True,
                available_tokens=UNLIMITED_TOKENS,
                purchased_tokens=0,
                daily_limit=UNLIMITED_TOKENS,
                total_tokens=UNLIMITED_TOKENS
            )

        try:
            return await self._consume(identifier, plan, cost, context)
        except PyMongoError as e:
            logger.error(f"Failed to consume tokens for {identifier}: {e}")
            raise WalletError("TOKEN_SERVICE_ERROR", "Failed to process token consumption") from e

    async def _consume(
        self,
        identifier: str,
        plan: str,
        cost: int,
        context: Optional[TokenOperationContext]
    ) -> TokenConsumptionResult:
        daily_limit = get_daily_limit(plan)
        daily_remaining = 0
        purchased = 0

        for attempt in range(CAS_MAX_ATTEMPTS):
            now = self.clock()
            ledger = await self.store.get_or_create(identifier, plan, now)

            used = ledger.get("daily_tokens_used", 0)
            reset_at = ledger.get("daily_reset_at")
            if is_reset_due(reset_at, now):
                used = 0
                reset_at = next_daily_reset(now).isoformat()

            daily_remaining = max(daily_limit - used, 0)
            purchased = ledger.get("purchased_balance", 0)

            if daily_remaining + purchased < cost:
                return self._insufficient(daily_remaining, purchased, daily_limit)

            from_daily = min(cost, daily_remaining)
            from_purchased = cost - from_daily

            committed = await self.store.compare_and_set(
                identifier,
                ledger["version"],
                {
                    "plan": plan,
                    "daily_tokens_used": used + from_daily,
                    "daily_reset_at": reset_at,
                    "purchased_balance": purchased - from_purchased
                },
                now
            )

            if not committed:
                logger.warning(f"Race condition in token consumption for {identifier}, retrying (attempt {attempt + 1})")
                continue

            await self.store.write_transaction(
                user_id=identifier,
                source="usage",
                tokens_total=-cost,
                daily_tokens=-from_daily,
                purchased_tokens=-from_purchased,
                now=now,
                details=self._context_details(plan, context)
            )

            remaining_daily = daily_remaining - from_daily
            remaining_purchased = purchased - from_purchased
            return TokenConsumptionResult(
                success=True,
                available_tokens=remaining_daily,
                purchased_tokens=remaining_purchased,
                daily_limit=daily_limit,
                total_tokens=remaining_daily + remaining_purchased,
                daily_tokens_used=from_daily,
                purchased_tokens_used=from_purchased
            )

        return self._insufficient(
            daily_remaining,
            purchased,
            daily_limit,
            "Token deduction failed after retry. Please try again."
        )

    # ==================== CREDITS ====================

    async def add_purchased_tokens(
        self,
        user_id: str,
        plan: str,
        amount: int,
        context: Optional[TokenOperationContext] = None,
        credit_ref: Optional[str] = None,
        source: str = "purchase"
    ) -> TokenCreditResult:
        """
        Atomically add tokens to the purchased balance.

        Not idempotent by itself. Passing credit_ref (the order id) makes the
        increment conditional on that reference not having been applied yet.
        """
        self._validate_identifier(user_id)
        self._validate_plan(plan)
        self._validate_purchase_amount(amount)

        now = self.clock()
        try:
            await self.store.get_or_create(user_id, plan, now)
            ledger = await self.store.increment_purchased(user_id, amount, now, credit_ref)

            if ledger is None:
                current = await self.store.get(user_id)
                logger.info(f"Credit {credit_ref} already applied for user {user_id}, skipping")
                return TokenCreditResult(
                    success=True,
                    new_purchased_balance=current.get("purchased_balance", 0),
                    already_applied=True
                )
        except PyMongoError as e:
            logger.error(f"Failed to add purchased tokens for user {user_id}: {e}")
            raise WalletError("TOKEN_SERVICE_ERROR", "Failed to add purchased tokens") from e

        details = self._context_details(plan, context)
        if credit_ref:
            details["order_id"] = credit_ref
        await self.store.write_transaction(
            user_id=user_id,
            source=source,
            tokens_total=amount,
            daily_tokens=0,
            purchased_tokens=amount,
            now=now,
            request_id=credit_ref,
            details=details
        )

        logger.info(f"Credited {amount} tokens to user {user_id} (source={source})")
        return TokenCreditResult(success=True, new_purchased_balance=ledger["purchased_balance"])

    async def get_transactions(self, user_id: str, limit: int = 50) -> list:
        return await self.store.get_transactions(user_id, limit)

    # ==================== HELPERS ====================

    def _insufficient(
        self,
        daily_remaining: int,
        purchased: int,
        daily_limit: int,
        message: str = "Insufficient tokens"
    ) -> TokenConsumptionResult:
        return TokenConsumptionResult(
            success=False,
            available_tokens=daily_remaining,
            purchased_tokens=purchased,
            daily_limit=daily_limit,
            total_tokens=daily_remaining + purchased,
            error_code="INSUFFICIENT_TOKENS",
            error_message=message
        )

    def _balance_from_ledger(self, plan: str, ledger: Dict[str, Any]) -> TokenBalance:
        daily_limit = get_daily_limit(plan)
        used = ledger.get("daily_tokens_used", 0)
        available = max(daily_limit - used, 0)
        purchased = ledger.get("purchased_balance", 0)
        return TokenBalance(
            available_tokens=available,
            purchased_tokens=purchased,
            daily_limit=daily_limit,
            daily_tokens_used=used,
            daily_reset_at=ledger.get("daily_reset_at"),
            total_tokens=available + purchased,
            plan=plan,
            is_unlimited=False,
            can_purchase_tokens=can_purchase_tokens(plan)
        )

    def _unlimited_balance(self, plan: str, ledger: Optional[Dict[str, Any]]) -> TokenBalance:
        purchased = (ledger or {}).get("purchased_balance", 0)
        return TokenBalance(
            available_tokens=UNLIMITED_TOKENS,
            purchased_tokens=purchased,
            daily_limit=UNLIMITED_TOKENS,
            daily_tokens_used=0,
            daily_reset_at=None,
            total_tokens=UNLIMITED_TOKENS,
            plan=plan,
            is_unlimited=True,
            can_purchase_tokens=can_purchase_tokens(plan)
        )

    def _context_details(self, plan: str, context: Optional[TokenOperationContext]) -> Dict[str, Any]:
        details = {"user_plan": plan, "operation_id": str(uuid.uuid4())}
        if context:
            details.update(context.model_dump(exclude_none=True))
        return details

    def _validate_identifier(self, identifier: str):
        if not identifier or not isinstance(identifier, str) or not identifier.strip():
            raise WalletError("VALIDATION_ERROR", "Invalid user identifier provided")

    def _validate_plan(self, plan: str):
        if not is_valid_plan(plan):
            raise WalletError("VALIDATION_ERROR", f"Invalid user plan provided: {plan}")

    def _validate_cost(self, cost: int):
        if not isinstance(cost, int) or isinstance(cost, bool) or cost < 1 or cost > MAX_TOKEN_COST:
            raise WalletError(
                "VALIDATION_ERROR",
                f"Token cost must be a positive integer between 1 and {MAX_TOKEN_COST}"
            )

    def _validate_purchase_amount(self, amount: int):
        low, high = PURCHASE_CONFIG["min_purchase"], PURCHASE_CONFIG["max_purchase"]
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < low or amount > high:
            raise WalletError(
                "VALIDATION_ERROR",
                f"Token purchase amount must be between {low} and {high}"
            )
